"""Printer state poller — periodic telemetry with ordered change notifications.

A single daemon thread queries the configured
:class:`~printcast.printers.base.TelemetrySource` on a fixed interval
(shortened near the end of a print), compares each snapshot against the
last one it emitted, and hands exactly one :class:`StateChange` per tick
to its subscribers, synchronously and in tick order.

Telemetry failures are reported as "unavailable" (``current is None``).
The poller never decides that the printer is offline or that a job has
ended; that inference belongs to the orchestrator's grace periods.

Each query runs on a one-worker executor and is bounded by ``timeout``.
A query that is still in flight from an earlier tick makes the current
tick a failure instead of queueing behind it, so a hung HTTP call can
never stall the loop.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from printcast.events import EventBus, EventType, emit
from printcast.printers.base import PrinterState, TelemetryError, TelemetrySource

logger = logging.getLogger(__name__)

# Near-completion thresholds that switch the loop to the fast interval.
_FAST_POLL_REMAINING_SECONDS = 120.0
_FAST_POLL_PROGRESS = 95.0
_FAST_POLL_LAYERS_LEFT = 5


@dataclass(frozen=True)
class StateChange:
    """One tick's notification.

    :param previous: Last successfully fetched snapshot before this tick,
        or ``None`` on the first tick.
    :param current: This tick's snapshot, or ``None`` when telemetry was
        unavailable.
    :param changed: Aspects that changed meaningfully (``phase``,
        ``filename``, ``layer``, ``progress``, ``availability``).  Empty
        for a tick that only confirms the status quo.
    :param tick: Monotonic tick counter, starting at 1.
    :param error: Failure description when telemetry was unavailable.
    """

    previous: Optional[PrinterState]
    current: Optional[PrinterState]
    changed: frozenset[str] = field(default_factory=frozenset)
    tick: int = 0
    error: Optional[str] = None

    @property
    def telemetry_available(self) -> bool:
        return self.current is not None

    @property
    def is_meaningful(self) -> bool:
        return bool(self.changed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick": self.tick,
            "previous": self.previous.to_dict() if self.previous else None,
            "current": self.current.to_dict() if self.current else None,
            "changed": sorted(self.changed),
            "error": self.error,
        }


StateChangeHandler = Callable[[StateChange], None]


def is_near_completion(state: PrinterState | None) -> bool:
    """True when an active job is close enough to the end for fast polling."""
    if state is None or not state.is_active:
        return False
    if state.remaining_seconds is not None and 0 < state.remaining_seconds <= _FAST_POLL_REMAINING_SECONDS:
        return True
    if state.progress >= _FAST_POLL_PROGRESS:
        return True
    if state.total_layers and state.current_layer is not None:
        return state.total_layers - state.current_layer <= _FAST_POLL_LAYERS_LEFT
    return False


class StatePoller:
    """Background poller that turns telemetry into ordered notifications.

    Lifecycle::

        poller = StatePoller(source, interval=10.0)
        poller.subscribe(orchestrator.handle_change)
        poller.start()
        ...
        poller.stop()

    Args:
        source: Telemetry source to query each tick.
        interval: Seconds between ticks.
        fast_interval: Seconds between ticks while the job is near its
            end.  ``None`` or a value >= *interval* disables it.
        timeout: Upper bound in seconds on one telemetry query.
        progress_noise: Progress deltas (percentage points) below this
            do not count as a change.
        event_bus: Optional EventBus for state/telemetry events.
    """

    def __init__(
        self,
        source: TelemetrySource,
        *,
        interval: float = 10.0,
        fast_interval: float | None = 2.0,
        timeout: float = 5.0,
        progress_noise: float = 0.5,
        event_bus: EventBus | None = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._source = source
        self._interval = interval
        self._fast_interval = fast_interval
        self._timeout = timeout
        self._progress_noise = progress_noise
        self._event_bus = event_bus

        self._subscribers: list[StateChangeHandler] = []
        self._subscribers_lock = threading.Lock()
        # Serializes ticks so notifications are delivered in tick order even
        # when poll_once() is also called from outside the loop.
        self._tick_lock = threading.Lock()

        self._executor: concurrent.futures.ThreadPoolExecutor | None = None
        self._pending: concurrent.futures.Future[PrinterState] | None = None

        self._last_state: PrinterState | None = None
        self._available: bool | None = None
        self._tick_count = 0

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, handler: StateChangeHandler) -> None:
        """Register *handler* to receive every :class:`StateChange`."""
        with self._subscribers_lock:
            if handler not in self._subscribers:
                self._subscribers.append(handler)

    def unsubscribe(self, handler: StateChangeHandler) -> None:
        with self._subscribers_lock:
            self._subscribers = [h for h in self._subscribers if h != handler]

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_state(self) -> PrinterState | None:
        """Most recent successfully fetched snapshot."""
        return self._last_state

    @property
    def telemetry_available(self) -> bool | None:
        """Availability as of the last tick, ``None`` before the first."""
        return self._available

    def next_interval(self) -> float:
        """Delay before the next tick, shortened near job completion."""
        if (
            self._fast_interval
            and self._fast_interval < self._interval
            and self._available
            and is_near_completion(self._last_state)
        ):
            return self._fast_interval
        return self._interval

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def poll_once(self) -> StateChange:
        """Run one tick synchronously and dispatch its notification."""
        with self._tick_lock:
            self._tick_count += 1
            current, error = self._fetch()
            previous = self._last_state

            if current is None:
                changed = frozenset({"availability"}) if self._available is not False else frozenset()
                if self._available is not False:
                    logger.warning("Printer telemetry unavailable: %s", error)
                    emit(
                        self._event_bus,
                        EventType.PRINTER_TELEMETRY_LOST,
                        {"error": error, "last_state": previous.to_dict() if previous else None},
                        source="poller",
                    )
                else:
                    logger.debug("Printer telemetry still unavailable: %s", error)
                self._available = False
            else:
                changed = current.differs_from(previous, self._progress_noise)
                if self._available is False:
                    logger.info("Printer telemetry restored (%s)", current.phase.value)
                    changed = changed | {"availability"}
                self._available = True
                self._last_state = current
                if changed:
                    logger.debug(
                        "Printer state changed (%s): %s %.1f%% layer %s/%s",
                        ",".join(sorted(changed)),
                        current.phase.value,
                        current.progress,
                        current.current_layer,
                        current.total_layers,
                    )
                    emit(
                        self._event_bus,
                        EventType.PRINTER_STATE_CHANGED,
                        {
                            "changed": sorted(changed),
                            "previous": previous.to_dict() if previous else None,
                            "current": current.to_dict(),
                        },
                        source="poller",
                    )

            change = StateChange(
                previous=previous,
                current=current,
                changed=frozenset(changed),
                tick=self._tick_count,
                error=error,
            )
            self._dispatch(change)
            return change

    def _fetch(self) -> tuple[PrinterState | None, str | None]:
        """Run one bounded telemetry query.

        Returns ``(state, None)`` on success or ``(None, reason)`` on any
        failure, including a query still running from an earlier tick.
        """
        if self._pending is not None and not self._pending.done():
            return None, f"previous telemetry query still running after {self._timeout}s"

        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix="printcast-telemetry",
            )
        future = self._executor.submit(self._source.fetch_state)
        self._pending = future
        try:
            state = future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError:
            return None, f"telemetry query exceeded {self._timeout}s"
        except TelemetryError as exc:
            return None, str(exc)
        except Exception as exc:
            logger.exception("Unexpected telemetry failure from %s", self._source.name)
            return None, f"unexpected telemetry failure: {exc}"
        self._pending = None
        return state, None

    def _dispatch(self, change: StateChange) -> None:
        with self._subscribers_lock:
            handlers = list(self._subscribers)
        for handler in handlers:
            try:
                handler(change)
            except Exception:
                logger.exception("State change handler %r failed on tick %d", handler, change.tick)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the polling thread."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="printcast-poller",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "State poller started (source=%s, interval=%.1fs, timeout=%.1fs)",
            self._source.name,
            self._interval,
            self._timeout,
        )

    def stop(self) -> None:
        """Signal the loop to exit and wait up to one tick's timeout."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._timeout + 1.0)
            if self._thread.is_alive():
                logger.warning("State poller thread did not exit within %.1fs", self._timeout + 1.0)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            self._pending = None
        logger.info("State poller stopped")

    def _run_loop(self) -> None:
        """Main loop — runs in daemon thread."""
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("State poller tick error")
            self._stop_event.wait(self.next_interval())
