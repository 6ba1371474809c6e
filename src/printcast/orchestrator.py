"""Print orchestrator — maps printer state transitions to timelapse and broadcast actions.

The orchestrator receives one :class:`~printcast.poller.StateChange` per
poll tick, in tick order, and decides when a print job starts, changes
or truly ends:

============================  ==============================  =========================================
previous                      current                         action
============================  ==============================  =========================================
not printing                  printing / paused               start timelapse session, start broadcast
printing                      printing, same file             forward progress to the timelapse manager
printing                      printing, different file        stop old session, start new session
printing                      idle / complete / error         end the job once ``idle_finalize_delay``
                                                              has passed since the last active tick
any                           telemetry unavailable           end the job once ``offline_grace_period``
                                                              has passed since the last good poll
any                           offline                         as above, measured from last active tick
============================  ==============================  =========================================

It is the only component that decides a job has ended.  Last-layer
finalization belongs to the timelapse manager; the orchestrator forwards
progress and never evaluates the last-layer predicate itself.

Errors from manager calls are logged with their reason and never raised
back into the poller.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Optional

from printcast.errors import (
    AssemblyError,
    BroadcastAlreadyActiveError,
    BroadcastError,
    EncoderError,
    TimelapseError,
)
from printcast.events import EventBus, EventType, emit
from printcast.printers.base import JobPhase, PrinterState, same_job
from printcast.timelapse import FinalizeStatus, StopReason

if TYPE_CHECKING:
    from printcast.broadcast import BroadcastManager
    from printcast.poller import StateChange, StatePoller
    from printcast.timelapse import TimelapseManager

logger = logging.getLogger(__name__)


@dataclass
class ActiveJob:
    """What the orchestrator knows about the job currently printing.

    :param key: Timelapse session key, fixed at job start.
    :param filename: Print file name; adopted later if it was missing.
    :param started_at: Orchestrator clock value at job start.
    :param timelapse: A timelapse session was started for this job.
    :param broadcast: A broadcast is running on behalf of this job.
    :param timelapse_done: The session was finalized (last layer) or
        failed; no more progress is forwarded.
    :param holding: Why the job end is currently being held, if it is.
    """

    key: str
    filename: Optional[str]
    started_at: float
    timelapse: bool = False
    broadcast: bool = False
    timelapse_done: bool = False
    holding: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class PrintOrchestrator:
    """Drives the timelapse and broadcast managers from printer state changes.

    Args:
        timelapse: Timelapse manager, or ``None`` to disable timelapses.
        broadcast: Broadcast manager, or ``None`` to disable broadcasting.
        timelapse_enabled: Start a session when a print starts.
        broadcast_enabled: Start a broadcast when a print starts.
        end_stream_after_print: Stop the broadcast when the job ends.
        offline_grace_period: Seconds of telemetry loss (or ``offline``
            phase) tolerated before the job counts as ended.
        idle_finalize_delay: Seconds a non-printing phase must persist
            before the job counts as ended.
        event_bus: Optional EventBus for ``print.*`` events.
        clock: Monotonic clock used for every grace period.
    """

    def __init__(
        self,
        timelapse: TimelapseManager | None,
        broadcast: BroadcastManager | None,
        *,
        timelapse_enabled: bool = True,
        broadcast_enabled: bool = True,
        end_stream_after_print: bool = True,
        offline_grace_period: float = 600.0,
        idle_finalize_delay: float = 20.0,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timelapse = timelapse
        self._broadcast = broadcast
        self._timelapse_enabled = timelapse_enabled and timelapse is not None
        self._broadcast_enabled = broadcast_enabled and broadcast is not None
        self._end_stream_after_print = end_stream_after_print
        self._offline_grace_period = offline_grace_period
        self._idle_finalize_delay = idle_finalize_delay
        self._event_bus = event_bus
        self._clock = clock

        # Poller dispatch is already serialized; this guards manual calls.
        self._handle_lock = threading.Lock()
        self._job: ActiveJob | None = None
        self._last_online_at: float | None = None
        self._last_active_at: float | None = None
        self._jobs_completed = 0

    # ------------------------------------------------------------------
    # Wiring / status
    # ------------------------------------------------------------------

    def attach(self, poller: StatePoller) -> None:
        """Register :meth:`handle_change` with *poller*."""
        poller.subscribe(self.handle_change)

    @property
    def active_job(self) -> ActiveJob | None:
        return self._job

    def status(self) -> dict[str, Any]:
        now = self._clock()
        job = self._job
        return {
            "job": job.to_dict() if job else None,
            "seconds_since_online": now - self._last_online_at if self._last_online_at is not None else None,
            "seconds_since_active": now - self._last_active_at if self._last_active_at is not None else None,
            "offline_grace_period": self._offline_grace_period,
            "idle_finalize_delay": self._idle_finalize_delay,
            "jobs_completed": self._jobs_completed,
        }

    # ------------------------------------------------------------------
    # Notification handler
    # ------------------------------------------------------------------

    def handle_change(self, change: StateChange) -> None:
        """Apply the decision table to one poll tick.  Never raises."""
        with self._handle_lock:
            try:
                self._handle(change, self._clock())
            except Exception:
                logger.exception("Orchestrator failed to handle tick %d", change.tick)

    def _handle(self, change: StateChange, now: float) -> None:
        current = change.current
        if current is None:
            self._hold_or_end(
                now,
                since=self._last_online_at,
                grace=self._offline_grace_period,
                reason=StopReason.TELEMETRY_LOST,
                holding="telemetry unavailable",
            )
            return

        self._last_online_at = now
        if current.phase is JobPhase.OFFLINE:
            self._hold_or_end(
                now,
                since=self._last_active_at,
                grace=self._offline_grace_period,
                reason=StopReason.TELEMETRY_LOST,
                holding="printer offline",
            )
            return

        if current.is_active:
            self._last_active_at = now
            job = self._job
            if job is None:
                self._begin_job(current, now)
            elif self._is_job_change(job, current):
                self._change_job(job, current, now)
            else:
                self._continue_job(job, current)
            return

        self._hold_or_end(
            now,
            since=self._last_active_at,
            grace=self._idle_finalize_delay,
            reason=StopReason.JOB_ENDED,
            holding=f"printer {current.phase.value}",
        )

    @staticmethod
    def _is_job_change(job: ActiveJob, current: PrinterState) -> bool:
        # A missing name on either side never counts as a change.
        if not job.filename or not current.filename:
            return False
        return not same_job(job.filename, current.filename)

    def _hold_or_end(
        self,
        now: float,
        *,
        since: float | None,
        grace: float,
        reason: StopReason,
        holding: str,
    ) -> None:
        job = self._job
        if job is None:
            return
        reference = since if since is not None else job.started_at
        elapsed = now - reference
        if elapsed >= grace:
            logger.info("%s for %.0fs (grace %.0fs); ending job %s", holding.capitalize(), elapsed, grace, job.key)
            self._end_job(job, reason)
            return
        if job.holding != holding:
            job.holding = holding
            logger.info("Holding job %s: %s (%.0fs of %.0fs grace)", job.key, holding, elapsed, grace)

    # ------------------------------------------------------------------
    # Job transitions
    # ------------------------------------------------------------------

    def _begin_job(self, current: PrinterState, now: float, *, start_broadcast: bool = True) -> ActiveJob:
        job = ActiveJob(key=current.job_key, filename=current.filename, started_at=now)
        self._job = job
        logger.info("Print started: %s (%s)", current.filename or "(unnamed job)", current.phase.value)
        emit(self._event_bus, EventType.PRINT_STARTED, {"job_key": job.key, "filename": job.filename}, source="orchestrator")

        if self._timelapse_enabled:
            try:
                self._timelapse.start_session(job.key, current.filename)
                job.timelapse = True
            except (TimelapseError, OSError) as exc:
                logger.error("Could not start timelapse for %s: %s", job.key, exc)
                emit(
                    self._event_bus,
                    EventType.TIMELAPSE_FAILED,
                    {"job_key": job.key, "stage": "start", "error": str(exc)},
                    source="orchestrator",
                )
            if job.timelapse:
                self._forward_progress(job, current)

        if start_broadcast and self._broadcast_enabled:
            self._start_broadcast(job)
        return job

    def _continue_job(self, job: ActiveJob, current: PrinterState) -> None:
        job.holding = None
        if not job.filename and current.filename:
            job.filename = current.filename
            logger.info("Job %s identified as %s", job.key, current.filename)
        self._forward_progress(job, current)

    def _change_job(self, old: ActiveJob, current: PrinterState, now: float) -> None:
        logger.info("Job changed from %s to %s", old.filename, current.filename)
        self._finish_timelapse(old, StopReason.JOB_CHANGED)
        self._job = None
        self._jobs_completed += 1
        emit(
            self._event_bus,
            EventType.PRINT_ENDED,
            {"job_key": old.key, "filename": old.filename, "reason": StopReason.JOB_CHANGED.value},
            source="orchestrator",
        )
        # The broadcast covers the printer, not the file; keep it running.
        new = self._begin_job(current, now, start_broadcast=False)
        new.broadcast = old.broadcast

    def _end_job(self, job: ActiveJob, reason: StopReason) -> None:
        self._finish_timelapse(job, reason)
        if job.broadcast and self._end_stream_after_print:
            try:
                self._broadcast.stop_broadcast()
            except BroadcastError as exc:
                logger.error("Failed to stop broadcast at end of %s: %s", job.key, exc)
        self._job = None
        self._jobs_completed += 1
        logger.info("Print ended: %s (%s)", job.filename or job.key, reason.value)
        emit(
            self._event_bus,
            EventType.PRINT_ENDED,
            {"job_key": job.key, "filename": job.filename, "reason": reason.value},
            source="orchestrator",
        )

    # ------------------------------------------------------------------
    # Manager calls
    # ------------------------------------------------------------------

    def _forward_progress(self, job: ActiveJob, current: PrinterState) -> None:
        if not job.timelapse or job.timelapse_done:
            return
        self._timelapse.notify_phase(job.key, current.phase)
        try:
            result = self._timelapse.notify_progress(
                job.key,
                current.current_layer,
                current.total_layers,
                progress=current.progress,
                remaining_seconds=current.remaining_seconds,
            )
        except AssemblyError as exc:
            # Retried once more at job end rather than on every tick.
            job.timelapse_done = True
            logger.error("Last-layer timelapse assembly failed for %s: %s", job.key, exc)
            return
        if result.status in (FinalizeStatus.FINALIZED, FinalizeStatus.ALREADY_FINALIZED):
            job.timelapse_done = True
        elif result.status is FinalizeStatus.NO_SESSION:
            logger.warning("Timelapse session %s disappeared; no longer forwarding progress", job.key)
            job.timelapse_done = True

    def _finish_timelapse(self, job: ActiveJob, reason: StopReason) -> None:
        if not job.timelapse:
            return
        try:
            result = self._timelapse.stop_session(job.key, reason)
        except AssemblyError as exc:
            logger.error("Timelapse for %s could not be assembled, abandoning it: %s", job.key, exc)
            self._timelapse.abandon_session(job.key)
            return
        if result.status is FinalizeStatus.FINALIZED:
            logger.info("Timelapse for %s finalized (%s): %s", job.key, reason.value, result.video_path or "no frames")

    def _start_broadcast(self, job: ActiveJob) -> None:
        if self._broadcast.is_active:
            logger.info("Reusing active broadcast %s for %s", self._broadcast.broadcast_id, job.key)
            job.broadcast = True
            return
        try:
            broadcast_id = self._broadcast.start_broadcast()
        except BroadcastAlreadyActiveError:
            job.broadcast = True
            return
        except EncoderError as exc:
            # The remote broadcast exists and the health monitor keeps relaunching
            # the encoder; ending the job must clean it up.
            job.broadcast = True
            logger.error("Broadcast for %s created but encoder failed to start: %s", job.key, exc)
            return
        except BroadcastError as exc:
            logger.error("Could not start broadcast for %s: %s", job.key, exc)
            return
        job.broadcast = True
        logger.info("Broadcast %s started for %s", broadcast_id, job.key)
