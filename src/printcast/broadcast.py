"""Broadcast lifecycle manager — remote broadcast identity plus a self-healing encoder.

State machine for one broadcast::

    NOT_STARTED -> STARTING -> WAITING_FOR_INGESTION -> LIVE -> STOPPING -> STOPPED
                                                         |  ^
                                                         v  |
                                                       DEGRADED

A failed remote create returns to ``NOT_STARTED``.  An encoder that fails
to launch right after a successful create leaves the broadcast
``DEGRADED`` with its identity intact; the health monitor keeps trying
to launch it and only :meth:`stop_broadcast` clears the identity.  A
stop that arrives mid-start wins: the start ends the remote broadcast
and stops whatever encoder it launched.

While a broadcast is active a health-monitor thread probes the encoder
every ``health_interval`` seconds.  After ``failure_threshold``
consecutive dead probes the encoder is relaunched against the same
ingest address.  The remote resource is never touched by a repair, so
the broadcast id survives any number of local encoder crashes.  Failed
repairs are retried on every following tick without limit.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from printcast.encoder import EncoderHandle, FfmpegEncoder
from printcast.errors import (
    BroadcastAlreadyActiveError,
    BroadcastError,
    BroadcastNotActiveError,
    EncoderError,
)
from printcast.events import EventBus, EventType, emit
from printcast.platforms.base import BroadcastPlatform, validate_privacy

logger = logging.getLogger(__name__)


class BroadcastState(enum.Enum):
    """Lifecycle state of the managed broadcast."""

    NOT_STARTED = "not_started"
    STARTING = "starting"
    WAITING_FOR_INGESTION = "waiting_for_ingestion"
    LIVE = "live"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


_TERMINAL_STATES = frozenset({BroadcastState.STOPPING, BroadcastState.STOPPED})


@dataclass
class BroadcastSession:
    """Identity and runtime bookkeeping of one broadcast.

    ``broadcast_id`` and ``ingest_address`` are fixed for the session's
    lifetime; ``encoder`` changes on every repair.
    """

    broadcast_id: str
    ingest_address: str
    stream_id: Optional[str] = None
    encoder: Optional[EncoderHandle] = None
    state: BroadcastState = BroadcastState.STARTING
    failure_count: int = 0
    waiting_for_ingestion: bool = False
    went_live: bool = False
    repairs: int = 0
    started_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "broadcast_id": self.broadcast_id,
            "stream_id": self.stream_id,
            "state": self.state.value,
            "encoder_pid": self.encoder.pid if self.encoder else None,
            "failure_count": self.failure_count,
            "waiting_for_ingestion": self.waiting_for_ingestion,
            "went_live": self.went_live,
            "repairs": self.repairs,
            "started_at": self.started_at,
            "last_error": self.last_error,
        }


@dataclass
class BroadcastStatus:
    """Point-in-time view returned by :meth:`BroadcastManager.status`."""

    state: BroadcastState
    broadcast_id: Optional[str] = None
    encoder_alive: bool = False
    encoder_pid: Optional[int] = None
    failure_count: int = 0
    repairs: int = 0
    waiting_for_ingestion: bool = False
    started_at: Optional[float] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "broadcast_id": self.broadcast_id,
            "encoder_alive": self.encoder_alive,
            "encoder_pid": self.encoder_pid,
            "failure_count": self.failure_count,
            "repairs": self.repairs,
            "waiting_for_ingestion": self.waiting_for_ingestion,
            "started_at": self.started_at,
            "last_error": self.last_error,
        }


class BroadcastManager:
    """Owns the active broadcast, its encoder process and its health monitor.

    Args:
        platform: Remote broadcast platform client.
        encoder: Encoder with ``start``/``is_alive``/``stop``.
        source_url: Camera feed the encoder reads.
        health_interval: Seconds between encoder health probes.
        failure_threshold: Consecutive failed probes before a repair.
        ingestion_timeout: Seconds to keep trying to go live after start.
        ingestion_poll_interval: Seconds between go-live attempts.
        stop_timeout: Seconds to wait for the encoder to exit on stop.
        event_bus: Optional EventBus for broadcast events.
        clock: Monotonic clock for the ingestion deadline.
    """

    def __init__(
        self,
        platform: BroadcastPlatform,
        encoder: FfmpegEncoder,
        source_url: str,
        *,
        health_interval: float = 10.0,
        failure_threshold: int = 3,
        ingestion_timeout: float = 120.0,
        ingestion_poll_interval: float = 5.0,
        stop_timeout: float = 5.0,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._platform = platform
        self._encoder = encoder
        self._source_url = source_url
        self._health_interval = health_interval
        self._failure_threshold = max(1, failure_threshold)
        self._ingestion_timeout = ingestion_timeout
        self._ingestion_poll_interval = ingestion_poll_interval
        self._stop_timeout = stop_timeout
        self._event_bus = event_bus
        self._clock = clock

        self._lock = threading.Lock()
        # Serializes encoder relaunches so a forced and a timed repair
        # never both spawn a process.
        self._repair_lock = threading.Lock()
        self._state = BroadcastState.NOT_STARTED
        self._session: BroadcastSession | None = None
        self._cancel = threading.Event()
        # Set by a stop that lands while create_broadcast is in flight.
        self._stop_requested = False
        self._monitor_thread: threading.Thread | None = None
        self._waiter_thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> BroadcastState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        """True from a successful create until :meth:`stop_broadcast` finishes."""
        with self._lock:
            return self._session is not None

    @property
    def broadcast_id(self) -> str | None:
        with self._lock:
            return self._session.broadcast_id if self._session else None

    @property
    def session(self) -> BroadcastSession | None:
        with self._lock:
            return self._session

    def status(self) -> BroadcastStatus:
        with self._lock:
            session = self._session
            state = self._state
        if session is None:
            return BroadcastStatus(state=state)
        return BroadcastStatus(
            state=state,
            broadcast_id=session.broadcast_id,
            encoder_alive=self._encoder.is_alive(session.encoder),
            encoder_pid=session.encoder.pid if session.encoder else None,
            failure_count=session.failure_count,
            repairs=session.repairs,
            waiting_for_ingestion=session.waiting_for_ingestion,
            started_at=session.started_at,
            last_error=session.last_error,
        )

    def _set_state(self, session: BroadcastSession, state: BroadcastState) -> None:
        """Caller holds the lock."""
        session.state = state
        if self._session is session:
            self._state = state

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start_broadcast(self) -> str:
        """Create the remote broadcast and launch the encoder.

        Returns the broadcast id.

        Raises:
            BroadcastAlreadyActiveError: A broadcast is already active.
            BroadcastError: Remote creation failed (including
                :class:`~printcast.errors.BroadcastAuthError` and
                :class:`~printcast.errors.BroadcastQuotaError`); the manager
                is back in ``NOT_STARTED``.
            BroadcastNotActiveError: :meth:`stop_broadcast` ran while the
                broadcast was being created or its encoder launched.  The
                remote broadcast is ended and no encoder is left running.
            EncoderError: The encoder failed to launch after the remote
                broadcast was created; the broadcast stays registered
                (``DEGRADED``) and the health monitor keeps relaunching it
                until :meth:`stop_broadcast`.
        """
        with self._lock:
            if self._session is not None or self._state is BroadcastState.STARTING:
                active = self._session.broadcast_id if self._session else "(starting)"
                raise BroadcastAlreadyActiveError(f"Broadcast {active} is already active ({self._state.value})")
            self._state = BroadcastState.STARTING
            self._stop_requested = False

        logger.info("Creating %s broadcast", self._platform.name)
        try:
            created = self._platform.create_broadcast()
        except Exception as exc:
            with self._lock:
                self._state = BroadcastState.NOT_STARTED
                self._stop_requested = False
            logger.error("Broadcast creation failed: %s", exc)
            emit(self._event_bus, EventType.BROADCAST_FAILED, {"stage": "create", "error": str(exc)}, source="broadcast")
            raise

        session = BroadcastSession(
            broadcast_id=created.broadcast_id,
            ingest_address=created.ingest_address,
            stream_id=created.stream_id,
        )
        with self._lock:
            aborted = self._stop_requested
            self._stop_requested = False
            if aborted:
                session.state = BroadcastState.STOPPING
                self._state = BroadcastState.STOPPING
            else:
                self._session = session
                self._state = BroadcastState.STARTING
                self._cancel = threading.Event()
        if aborted:
            raise self._end_aborted(session)

        try:
            handle = self._encoder.start(session.ingest_address, self._source_url)
        except EncoderError as exc:
            with self._lock:
                session.last_error = str(exc)
                current = self._session is session and session.state not in _TERMINAL_STATES
                if current:
                    self._set_state(session, BroadcastState.DEGRADED)
                    # check_health relaunches a missing encoder once the threshold is hit.
                    self._start_monitor(session, self._cancel)
            logger.error(
                "Encoder failed to start for broadcast %s; the health monitor will retry: %s",
                session.broadcast_id,
                exc,
            )
            emit(
                self._event_bus,
                EventType.BROADCAST_FAILED,
                {"stage": "encoder", "broadcast_id": session.broadcast_id, "error": str(exc)},
                source="broadcast",
            )
            raise

        with self._lock:
            raced_stop = self._session is not session or session.state in _TERMINAL_STATES
            if not raced_stop:
                session.encoder = handle
                session.waiting_for_ingestion = True
                self._set_state(session, BroadcastState.WAITING_FOR_INGESTION)
                self._start_waiter(session, self._cancel)
                self._start_monitor(session, self._cancel)
        if raced_stop:
            logger.info("Broadcast %s was stopped while its encoder launched", session.broadcast_id)
            self._encoder.stop(handle, self._stop_timeout)
            raise BroadcastNotActiveError(f"Broadcast {session.broadcast_id} was stopped while starting")

        logger.info("Broadcast %s started; waiting for ingestion", session.broadcast_id)
        emit(self._event_bus, EventType.BROADCAST_STARTED, session.to_dict(), source="broadcast")
        return session.broadcast_id

    def _end_aborted(self, session: BroadcastSession) -> BroadcastNotActiveError:
        """End a broadcast whose stop arrived while it was being created."""
        error: Exception | None = None
        try:
            self._platform.end_broadcast(session.broadcast_id)
        except Exception as exc:
            error = exc
            logger.error("Failed to end remote broadcast %s: %s", session.broadcast_id, exc)
        with self._lock:
            session.state = BroadcastState.STOPPED
            self._state = BroadcastState.STOPPED
        logger.info("Broadcast %s stopped before its encoder launched", session.broadcast_id)
        emit(
            self._event_bus,
            EventType.BROADCAST_STOPPED,
            {"broadcast_id": session.broadcast_id, "repairs": 0, "error": str(error) if error else None},
            source="broadcast",
        )
        return BroadcastNotActiveError(f"Broadcast {session.broadcast_id} was stopped while starting", cause=error)

    def stop_broadcast(self) -> bool:
        """Stop the encoder, end the remote broadcast and clear identity.

        Idempotent: returns False when nothing is active.  A stop that
        arrives while the remote broadcast is still being created is
        recorded and carried out by :meth:`start_broadcast` once the
        create returns.

        Raises:
            BroadcastError: The remote end call failed.  Local cleanup has
                already happened and the identity is cleared.
        """
        with self._lock:
            session = self._session
            if session is None:
                if self._state is BroadcastState.STARTING and not self._stop_requested:
                    self._stop_requested = True
                    logger.info("Stop requested while the broadcast is being created")
                    return True
                return False
            if session.state is BroadcastState.STOPPING:
                return False
            self._set_state(session, BroadcastState.STOPPING)
            cancel = self._cancel
            threads = (self._monitor_thread, self._waiter_thread)

        cancel.set()
        for thread in threads:
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=self._stop_timeout)

        with self._repair_lock:
            self._encoder.stop(session.encoder, self._stop_timeout)

        error: Exception | None = None
        try:
            self._platform.end_broadcast(session.broadcast_id)
        except Exception as exc:
            error = exc
            logger.error("Failed to end remote broadcast %s: %s", session.broadcast_id, exc)

        with self._lock:
            session.waiting_for_ingestion = False
            session.state = BroadcastState.STOPPED
            self._session = None
            self._state = BroadcastState.STOPPED
            self._monitor_thread = None
            self._waiter_thread = None

        logger.info("Broadcast %s stopped", session.broadcast_id)
        emit(
            self._event_bus,
            EventType.BROADCAST_STOPPED,
            {"broadcast_id": session.broadcast_id, "repairs": session.repairs, "error": str(error) if error else None},
            source="broadcast",
        )
        if error is not None:
            raise error
        return True

    def shutdown(self) -> None:
        """Stop any active broadcast, logging rather than raising."""
        try:
            self.stop_broadcast()
        except BroadcastError as exc:
            logger.warning("Broadcast shutdown incomplete: %s", exc)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _start_waiter(self, session: BroadcastSession, cancel: threading.Event) -> None:
        self._waiter_thread = threading.Thread(
            target=self._wait_for_ingestion,
            args=(session, cancel),
            name="printcast-broadcast-ingestion",
            daemon=True,
        )
        self._waiter_thread.start()

    def _start_monitor(self, session: BroadcastSession, cancel: threading.Event) -> None:
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop,
            args=(session, cancel),
            name="printcast-broadcast-health",
            daemon=True,
        )
        self._monitor_thread.start()

    def _wait_for_ingestion(self, session: BroadcastSession, cancel: threading.Event) -> None:
        """Retry the go-live transition until it succeeds or times out."""
        deadline = self._clock() + self._ingestion_timeout
        attempt = 0
        while not cancel.is_set():
            attempt += 1
            try:
                if self._platform.transition_to_live(session.broadcast_id):
                    with self._lock:
                        if session.state in _TERMINAL_STATES:
                            return
                        session.waiting_for_ingestion = False
                        session.went_live = True
                        if session.state is BroadcastState.WAITING_FOR_INGESTION:
                            self._set_state(session, BroadcastState.LIVE)
                    logger.info("Broadcast %s is live (attempt %d)", session.broadcast_id, attempt)
                    emit(self._event_bus, EventType.BROADCAST_LIVE, session.to_dict(), source="broadcast")
                    return
                logger.debug("Ingestion not active yet for %s (attempt %d)", session.broadcast_id, attempt)
            except BroadcastError as exc:
                logger.warning("Go-live attempt %d for %s failed: %s", attempt, session.broadcast_id, exc)
                with self._lock:
                    session.last_error = str(exc)
            except Exception:
                logger.exception("Unexpected error while waiting for ingestion on %s", session.broadcast_id)

            if self._clock() >= deadline:
                with self._lock:
                    session.waiting_for_ingestion = False
                    session.last_error = f"ingestion not active after {self._ingestion_timeout:.0f}s"
                logger.warning(
                    "Broadcast %s did not go live within %.0fs; call ensure_healthy() to retry",
                    session.broadcast_id,
                    self._ingestion_timeout,
                )
                emit(
                    self._event_bus,
                    EventType.BROADCAST_FAILED,
                    {"stage": "ingestion", "broadcast_id": session.broadcast_id},
                    source="broadcast",
                )
                return
            cancel.wait(self._ingestion_poll_interval)

    # ------------------------------------------------------------------
    # Health monitor
    # ------------------------------------------------------------------

    def _monitor_loop(self, session: BroadcastSession, cancel: threading.Event) -> None:
        """Health-check timer — runs in daemon thread."""
        while not cancel.wait(self._health_interval):
            try:
                self.check_health()
            except Exception:
                logger.exception("Broadcast health check error")

    def check_health(self, *, force_repair: bool = False) -> bool:
        """Probe the encoder once.

        Returns True when it is alive.  A dead probe increments the
        failure counter and repairs once the threshold is reached, or
        immediately when *force_repair* is set.
        """
        with self._lock:
            session = self._session
            if session is None or session.state in _TERMINAL_STATES:
                return True
            handle = session.encoder

        if self._encoder.is_alive(handle):
            with self._lock:
                if session.failure_count:
                    logger.info("Encoder for %s healthy again", session.broadcast_id)
                session.failure_count = 0
                if session.state is BroadcastState.DEGRADED and session.encoder is handle:
                    self._set_state(session, BroadcastState.LIVE)
            return True

        with self._lock:
            if self._session is not session or session.state in _TERMINAL_STATES:
                return False
            session.failure_count += 1
            failures = session.failure_count
            newly_degraded = session.state is BroadcastState.LIVE
            if newly_degraded:
                self._set_state(session, BroadcastState.DEGRADED)

        rc = handle.returncode if handle is not None else None
        logger.warning(
            "Encoder health check failed for %s (%d/%d, rc=%s)",
            session.broadcast_id,
            failures,
            self._failure_threshold,
            rc,
        )
        if newly_degraded:
            emit(
                self._event_bus,
                EventType.BROADCAST_DEGRADED,
                {"broadcast_id": session.broadcast_id, "returncode": rc},
                source="broadcast",
            )
        if force_repair or failures >= self._failure_threshold:
            self._repair(session)
        return False

    def _repair(self, session: BroadcastSession) -> bool:
        """Relaunch the encoder against the same ingest address."""
        with self._repair_lock:
            with self._lock:
                if self._session is not session or session.state in _TERMINAL_STATES:
                    return False
                old = session.encoder
            if self._encoder.is_alive(old):
                return True

            logger.info("Repairing encoder for broadcast %s", session.broadcast_id)
            self._encoder.stop(old, self._stop_timeout)
            try:
                new = self._encoder.start(session.ingest_address, self._source_url)
            except EncoderError as exc:
                with self._lock:
                    session.last_error = str(exc)
                logger.error(
                    "Encoder repair failed for %s; retrying on next health check: %s",
                    session.broadcast_id,
                    exc,
                )
                return False

            with self._lock:
                raced_stop = self._session is not session or session.state in _TERMINAL_STATES
                if not raced_stop:
                    session.encoder = new
                    session.failure_count = 0
                    session.repairs += 1
                    session.last_error = None
                    self._set_state(
                        session,
                        BroadcastState.LIVE if session.went_live else BroadcastState.WAITING_FOR_INGESTION,
                    )
                    # First successful launch after a failed start: nobody is waiting to go live yet.
                    if not session.went_live and not session.waiting_for_ingestion:
                        session.waiting_for_ingestion = True
                        self._start_waiter(session, self._cancel)
            if raced_stop:
                self._encoder.stop(new, self._stop_timeout)
                return False

        logger.info(
            "Encoder for broadcast %s relaunched (pid=%d, repairs=%d)",
            session.broadcast_id,
            new.pid,
            session.repairs,
        )
        emit(
            self._event_bus,
            EventType.BROADCAST_REPAIRED,
            {"broadcast_id": session.broadcast_id, "encoder_pid": new.pid, "repairs": session.repairs},
            source="broadcast",
        )
        return True

    def ensure_healthy(self) -> bool:
        """Run one health check now and repair immediately if needed.

        Also restarts the go-live waiter when an earlier attempt timed out.

        Raises:
            BroadcastNotActiveError: No broadcast is active.
        """
        with self._lock:
            session = self._session
            if session is None:
                raise BroadcastNotActiveError("No active broadcast to repair")
            cancel = self._cancel
        healthy = self.check_health(force_repair=True) or self._encoder.is_alive(session.encoder)

        with self._lock:
            restart_waiter = (
                not session.went_live
                and not session.waiting_for_ingestion
                and session.encoder is not None
                and session.state not in _TERMINAL_STATES
            )
            if restart_waiter:
                session.waiting_for_ingestion = True
        if restart_waiter:
            self._start_waiter(session, cancel)
        return healthy

    # ------------------------------------------------------------------
    # Privacy
    # ------------------------------------------------------------------

    def _require_id(self) -> str:
        broadcast_id = self.broadcast_id
        if broadcast_id is None:
            raise BroadcastNotActiveError("No active broadcast")
        return broadcast_id

    def get_privacy(self) -> str:
        return self._platform.get_privacy(self._require_id())

    def set_privacy(self, value: str) -> str:
        """Validate and apply *value*; returns the normalized value."""
        privacy = validate_privacy(value)
        self._platform.set_privacy(self._require_id(), privacy)
        return privacy
