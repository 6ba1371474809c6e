"""Timelapse session manager — per-job frame capture with single-authority finalization.

The manager owns an explicit registry of sessions keyed by job key.  Each
session captures a still frame on its own daemon thread every ``period``
seconds and is finalized (frames assembled into an MP4) exactly once.

Two callers can end a session:

* :meth:`TimelapseManager.notify_progress` when the last-layer predicate
  first becomes true (remaining time, progress or layer count).
* :meth:`TimelapseManager.stop_session` when the orchestrator decides the
  job changed or ended.

Both go through the same guarded finalize path, so whichever arrives
second gets ``ALREADY_FINALIZED`` instead of a second, truncated video.

On-disk layout::

    <root>/<job_key>[_N]/frame_000000.jpg
    <root>/<job_key>[_N]/timelapse_metadata.json
    <root>/<job_key>[_N]/<job_key>[_N].mp4
"""

from __future__ import annotations

import contextlib
import enum
import json
import logging
import os
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

from printcast.errors import AssemblyError, CaptureError, SessionAlreadyActiveError
from printcast.events import EventBus, EventType, emit
from printcast.printers.base import JobPhase
from printcast.video import FRAME_GLOB, frame_name

logger = logging.getLogger(__name__)

METADATA_FILE = "timelapse_metadata.json"


class FrameSource(Protocol):
    def capture_frame(self) -> bytes: ...


class Assembler(Protocol):
    def assemble(self, frames_dir: str | Path, output_path: str | Path, fps: int = 30) -> str: ...


# ---------------------------------------------------------------------------
# Enums / results
# ---------------------------------------------------------------------------


class StopReason(enum.Enum):
    """Why a session stopped capturing."""

    LAST_LAYER = "last_layer"
    JOB_CHANGED = "job_changed"
    JOB_ENDED = "job_ended"
    TELEMETRY_LOST = "telemetry_lost"
    MANUAL = "manual"
    SHUTDOWN = "shutdown"


class FinalizeStatus(enum.Enum):
    """Outcome of a finalize-capable call."""

    FINALIZED = "finalized"
    ALREADY_FINALIZED = "already_finalized"
    NOT_READY = "not_ready"
    NO_SESSION = "no_session"
    FAILED = "failed"


@dataclass
class FinalizeResult:
    """Result of :meth:`notify_progress`, :meth:`stop_session` and friends."""

    status: FinalizeStatus
    job_key: str
    video_path: Optional[str] = None
    frame_count: int = 0
    error: Optional[str] = None

    @property
    def finalized_now(self) -> bool:
        return self.status is FinalizeStatus.FINALIZED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class TimelapseSession:
    """State of one job's timelapse.

    ``stopped`` and ``finalized`` only ever go from False to True.
    """

    job_key: str
    filename: Optional[str]
    output_dir: str
    created_at: float
    last_frame_at: Optional[float] = None
    frame_count: int = 0
    stopped: bool = False
    finalized: bool = False
    paused: bool = False
    capture_enabled: bool = True
    video_path: Optional[str] = None
    stop_reason: Optional[str] = None

    @property
    def folder_name(self) -> str:
        return os.path.basename(self.output_dir)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TimelapseInfo:
    """A timelapse folder on disk, as reported by :meth:`list_timelapses`."""

    name: str
    path: str
    frame_count: int
    video_path: Optional[str] = None
    filename: Optional[str] = None
    created_at: Optional[float] = None
    active: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _Entry:
    """Registry entry: the session plus its capture thread plumbing."""

    session: TimelapseSession
    stop_event: threading.Event = field(default_factory=threading.Event)
    wake: threading.Event = field(default_factory=threading.Event)
    finalize_lock: threading.Lock = field(default_factory=threading.Lock)
    write_lock: threading.Lock = field(default_factory=threading.Lock)
    thread: Optional[threading.Thread] = None
    logged_waiting: bool = False


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class TimelapseManager:
    """Owns timelapse sessions, their capture timers and their finalization.

    Args:
        frame_source: Object with ``capture_frame() -> bytes``.
        assembler: Object with ``assemble(frames_dir, output_path, fps)``.
        root_dir: Folder that holds one sub-folder per session.
        period: Seconds between frames.
        fps: Frame rate of the assembled video.
        last_layer_offset: Finalize once ``current >= total - offset``.
        last_layer_remaining_seconds: Finalize once remaining time is at
            or below this.
        last_layer_progress_percent: Finalize once progress reaches this.
        start_after_layer1: Hold capture until the printer reports
            layer 1 so bed probing and purge lines are skipped.
        capture_timeout: Upper bound used when joining a capture thread.
        event_bus: Optional EventBus for timelapse events.
        clock: Wall-clock source for session timestamps.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        assembler: Assembler,
        root_dir: str | Path,
        *,
        period: float = 60.0,
        fps: int = 30,
        last_layer_offset: int = 1,
        last_layer_remaining_seconds: float = 30.0,
        last_layer_progress_percent: float = 98.5,
        start_after_layer1: bool = True,
        capture_timeout: float = 10.0,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if period <= 0:
            raise ValueError("period must be positive")
        self._frame_source = frame_source
        self._assembler = assembler
        self._root = Path(root_dir).expanduser()
        self._period = period
        self._fps = fps
        self._last_layer_offset = max(0, last_layer_offset)
        self._last_layer_remaining_seconds = last_layer_remaining_seconds
        self._last_layer_progress_percent = last_layer_progress_percent
        self._start_after_layer1 = start_after_layer1
        self._capture_timeout = capture_timeout
        self._event_bus = event_bus
        self._clock = clock

        self._lock = threading.Lock()
        self._sessions: dict[str, _Entry] = {}
        # Sessions already finalized, so late callers get ALREADY_FINALIZED.
        self._finalized: dict[str, TimelapseSession] = {}

    @property
    def root_dir(self) -> Path:
        return self._root

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_session(self, job_key: str) -> TimelapseSession | None:
        """Return the live or finalized session for *job_key*, if any."""
        with self._lock:
            entry = self._sessions.get(job_key)
            if entry is not None:
                return entry.session
            return self._finalized.get(job_key)

    def active_sessions(self) -> list[TimelapseSession]:
        """Sessions that have not been finalized yet."""
        with self._lock:
            return [e.session for e in self._sessions.values()]

    def is_last_layer(
        self,
        current_layer: int | None,
        total_layers: int | None,
        progress: float | None = None,
        remaining_seconds: float | None = None,
    ) -> bool:
        """Evaluate the last-layer predicate.

        True when any one signal fires: remaining time at or below the
        threshold, progress at or above the threshold, or the current
        layer within ``last_layer_offset`` of the total.
        """
        if remaining_seconds is not None and remaining_seconds <= self._last_layer_remaining_seconds:
            return True
        if progress is not None and progress >= self._last_layer_progress_percent:
            return True
        if current_layer is not None and total_layers:
            return current_layer >= max(0, total_layers - self._last_layer_offset)
        return False

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self, job_key: str, filename: str | None = None) -> TimelapseSession:
        """Create a session for *job_key* and start its capture timer.

        Returns the existing session when one is already running for the
        same key.

        Raises:
            SessionAlreadyActiveError: A non-finalized session exists for a
                different job key.
            OSError: The session folder could not be created.
        """
        with self._lock:
            for key, existing in self._sessions.items():
                if key == job_key:
                    return existing.session
                raise SessionAlreadyActiveError(key, job_key)

            output_dir = self._allocate_dir(job_key)
            session = TimelapseSession(
                job_key=job_key,
                filename=filename,
                output_dir=str(output_dir),
                created_at=self._clock(),
                capture_enabled=not self._start_after_layer1,
            )
            entry = _Entry(session=session)
            self._sessions[job_key] = entry
            self._finalized.pop(job_key, None)
            self._write_metadata(session)

            entry.thread = threading.Thread(
                target=self._capture_loop,
                args=(entry,),
                name=f"printcast-timelapse-{job_key}",
                daemon=True,
            )
            entry.thread.start()

        logger.info(
            "Timelapse session %s started in %s (period=%.0fs, wait_for_layer1=%s)",
            job_key,
            output_dir,
            self._period,
            self._start_after_layer1,
        )
        emit(self._event_bus, EventType.TIMELAPSE_STARTED, session.to_dict(), source="timelapse")
        return session

    def notify_progress(
        self,
        job_key: str,
        current_layer: int | None,
        total_layers: int | None,
        *,
        progress: float | None = None,
        remaining_seconds: float | None = None,
    ) -> FinalizeResult:
        """Feed progress for *job_key*; finalize on the first last-layer match.

        Enables capture once layer 1 is reached.  Exactly one call ever
        returns ``FINALIZED`` for a session; later calls return
        ``ALREADY_FINALIZED``.

        Raises:
            AssemblyError: Finalization failed.  The session stays
                registered, stopped but not finalized, so a later call
                retries.
        """
        with self._lock:
            entry = self._sessions.get(job_key)
            if entry is None:
                return self._missing_result(job_key)
            session = entry.session

            if not session.capture_enabled:
                if current_layer is not None and current_layer >= 1:
                    session.capture_enabled = True
                    entry.wake.set()
                    logger.info("Starting frame capture at layer %d for %s", current_layer, job_key)
                elif not entry.logged_waiting:
                    entry.logged_waiting = True
                    logger.info(
                        "Waiting for layer >= 1 before capturing frames for %s (current: %s)",
                        job_key,
                        current_layer if current_layer is not None else "n/a",
                    )

            ready = self.is_last_layer(current_layer, total_layers, progress, remaining_seconds)
            retry = session.stopped and not session.finalized
            if not ready and not retry:
                return FinalizeResult(FinalizeStatus.NOT_READY, job_key, frame_count=session.frame_count)

        if ready and not retry:
            logger.info(
                "Last layer detected for %s (layer %s/%s, progress %s, remaining %s) - finalizing",
                job_key,
                current_layer if current_layer is not None else "n/a",
                total_layers if total_layers is not None else "n/a",
                f"{progress:.1f}%" if progress is not None else "n/a",
                f"{remaining_seconds:.0f}s" if remaining_seconds is not None else "n/a",
            )
            # One last frame of the finished part before the timer stops.
            self._capture_tick(entry)
        return self._finalize(entry, StopReason.LAST_LAYER)

    def notify_phase(self, job_key: str, phase: JobPhase) -> None:
        """Suspend capture while the job is paused; resume otherwise."""
        with self._lock:
            entry = self._sessions.get(job_key)
            if entry is None:
                return
            paused = phase is JobPhase.PAUSED
            if entry.session.paused != paused:
                entry.session.paused = paused
                logger.info("Timelapse %s capture %s", job_key, "paused" if paused else "resumed")

    def stop_session(self, job_key: str, reason: StopReason | str = StopReason.MANUAL) -> FinalizeResult:
        """Stop capture for *job_key* and finalize it if not done already.

        Idempotent: returns ``ALREADY_FINALIZED`` when the session was
        finalized earlier (for example by the last-layer path) and
        ``NO_SESSION`` for unknown keys.

        Raises:
            AssemblyError: Finalization failed; the session can be retried.
        """
        with self._lock:
            entry = self._sessions.get(job_key)
            if entry is None:
                return self._missing_result(job_key)
        return self._finalize(entry, reason)

    def abandon_session(self, job_key: str) -> bool:
        """Stop capture and drop the session without assembling a video.

        Frames already written stay on disk.  Returns False when there is
        no such session.
        """
        with self._lock:
            entry = self._sessions.pop(job_key, None)
            if entry is None:
                return False
            entry.session.stopped = True
            entry.session.stop_reason = entry.session.stop_reason or "abandoned"
        self._halt_capture(entry)
        logger.info("Timelapse session %s abandoned with %d frames", job_key, entry.session.frame_count)
        return True

    def stop_all(self, reason: StopReason | str = StopReason.MANUAL) -> list[FinalizeResult]:
        """Finalize every active session, continuing past failures."""
        with self._lock:
            keys = list(self._sessions)
        results: list[FinalizeResult] = []
        for key in keys:
            try:
                results.append(self.stop_session(key, reason))
            except AssemblyError as exc:
                logger.error("Failed to finalize timelapse %s: %s", key, exc)
                results.append(FinalizeResult(FinalizeStatus.FAILED, key, error=str(exc)))
        return results

    def shutdown(self, *, finalize: bool = False) -> None:
        """Stop every capture timer; optionally finalize the sessions."""
        if finalize:
            self.stop_all(StopReason.SHUTDOWN)
            return
        with self._lock:
            keys = list(self._sessions)
        for key in keys:
            self.abandon_session(key)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_timelapses(self) -> list[TimelapseInfo]:
        """Describe every timelapse folder under the root, newest first."""
        with self._lock:
            active_dirs = {e.session.output_dir for e in self._sessions.values()}
        return scan_timelapses(self._root, active_dirs=active_dirs)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _missing_result(self, job_key: str) -> FinalizeResult:
        """Result for a key with no live session.  Caller holds the lock."""
        done = self._finalized.get(job_key)
        if done is not None:
            return FinalizeResult(
                FinalizeStatus.ALREADY_FINALIZED,
                job_key,
                video_path=done.video_path,
                frame_count=done.frame_count,
            )
        return FinalizeResult(FinalizeStatus.NO_SESSION, job_key)

    def _allocate_dir(self, job_key: str) -> Path:
        """Create ``<root>/<job_key>``, suffixing ``_N`` if it exists."""
        self._root.mkdir(parents=True, exist_ok=True)
        candidate = self._root / job_key
        suffix = 0
        while candidate.exists():
            suffix += 1
            candidate = self._root / f"{job_key}_{suffix}"
        candidate.mkdir(parents=True)
        return candidate

    def _write_metadata(self, session: TimelapseSession) -> None:
        path = Path(session.output_dir) / METADATA_FILE
        payload = {
            "session_name": session.folder_name,
            "job_key": session.job_key,
            "filename": session.filename,
            "created_at": session.created_at,
            "frame_count": session.frame_count,
            "stop_reason": session.stop_reason,
            "video_path": session.video_path,
        }
        try:
            with path.open("w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
        except OSError as exc:
            logger.warning("Could not write timelapse metadata %s: %s", path, exc)

    def _capture_loop(self, entry: _Entry) -> None:
        """Capture timer — runs in the session's daemon thread."""
        while not entry.stop_event.is_set():
            try:
                self._capture_tick(entry)
            except Exception:
                logger.exception("Timelapse capture tick error for %s", entry.session.job_key)
            entry.wake.wait(self._period)
            entry.wake.clear()

    def _capture_tick(self, entry: _Entry) -> bool:
        """Capture and store one frame.  Returns True if a frame was written.

        The frame file is written outside the manager lock; ``write_lock``
        keeps frame numbers contiguous when the timer and a last-layer
        tick race.  A stop that lands before the commit discards the file.
        """
        session = entry.session
        with self._lock:
            if session.stopped or not session.capture_enabled or session.paused:
                return False

        try:
            frame = self._frame_source.capture_frame()
        except CaptureError as exc:
            logger.warning("Frame capture failed for %s: %s", session.job_key, exc)
            return False

        with entry.write_lock:
            with self._lock:
                if session.stopped:
                    logger.debug("Discarding frame for stopped session %s", session.job_key)
                    return False
                index = session.frame_count

            path = os.path.join(session.output_dir, frame_name(index))
            try:
                with open(path, "wb") as fh:
                    fh.write(frame)
            except OSError as exc:
                logger.warning("Could not write frame %s: %s", path, exc)
                return False

            with self._lock:
                committed = not session.stopped
                if committed:
                    session.frame_count = index + 1
                    session.last_frame_at = self._clock()
            if not committed:
                logger.debug("Discarding frame for stopped session %s", session.job_key)
                with contextlib.suppress(OSError):
                    os.remove(path)
                return False

        logger.debug("Captured frame %d for %s", index, session.job_key)
        emit(
            self._event_bus,
            EventType.TIMELAPSE_FRAME_CAPTURED,
            {"job_key": session.job_key, "frame": index, "path": path},
            source="timelapse",
        )
        return True

    def _halt_capture(self, entry: _Entry) -> None:
        entry.stop_event.set()
        entry.wake.set()
        thread = entry.thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._capture_timeout + 1.0)
            if thread.is_alive():
                logger.warning("Capture thread for %s still busy after stop", entry.session.job_key)

    def _finalize(self, entry: _Entry, reason: StopReason | str) -> FinalizeResult:
        """Stop capture and assemble the video exactly once."""
        reason_value = reason.value if isinstance(reason, StopReason) else str(reason)
        session = entry.session

        # Held across assembly so concurrent finalizers wait for the first.
        with entry.finalize_lock:
            with self._lock:
                if session.finalized:
                    return FinalizeResult(
                        FinalizeStatus.ALREADY_FINALIZED,
                        session.job_key,
                        video_path=session.video_path,
                        frame_count=session.frame_count,
                    )
                session.stopped = True
                if session.stop_reason is None:
                    session.stop_reason = reason_value

            self._halt_capture(entry)

            # A write still in flight either commits or removes its file first.
            with entry.write_lock, self._lock:
                frame_count = session.frame_count

            video_path: str | None = None
            if frame_count > 0:
                output = Path(session.output_dir) / f"{session.folder_name}.mp4"
                try:
                    video_path = self._assembler.assemble(session.output_dir, output, self._fps)
                except AssemblyError as exc:
                    logger.error("Timelapse %s assembly failed (%d frames): %s", session.job_key, frame_count, exc)
                    emit(
                        self._event_bus,
                        EventType.TIMELAPSE_FAILED,
                        {"job_key": session.job_key, "error": str(exc), "frame_count": frame_count},
                        source="timelapse",
                    )
                    raise
            else:
                logger.info("Timelapse %s has no frames; skipping video assembly", session.job_key)

            with self._lock:
                session.finalized = True
                session.video_path = video_path
                if self._sessions.get(session.job_key) is entry:
                    del self._sessions[session.job_key]
                self._finalized[session.job_key] = session

        self._write_metadata(session)
        logger.info(
            "Timelapse %s finalized (%s, %d frames) -> %s",
            session.job_key,
            session.stop_reason,
            frame_count,
            video_path or "no video",
        )
        emit(self._event_bus, EventType.TIMELAPSE_FINALIZED, session.to_dict(), source="timelapse")
        return FinalizeResult(
            FinalizeStatus.FINALIZED,
            session.job_key,
            video_path=video_path,
            frame_count=frame_count,
        )


def _read_metadata(folder: Path) -> dict[str, Any]:
    path = folder / METADATA_FILE
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        return data if isinstance(data, dict) else {}
    except (OSError, ValueError):
        logger.debug("Unreadable timelapse metadata %s", path, exc_info=True)
        return {}


def scan_timelapses(root: str | Path, *, active_dirs: Iterable[str] = ()) -> list[TimelapseInfo]:
    """Describe every timelapse folder under *root*, newest first.

    Folders whose path is in *active_dirs* are flagged as still recording.
    """
    root = Path(root).expanduser()
    if not root.is_dir():
        return []
    active = {os.path.abspath(d) for d in active_dirs}

    infos: list[TimelapseInfo] = []
    for folder in root.iterdir():
        if not folder.is_dir():
            continue
        metadata = _read_metadata(folder)
        video = folder / f"{folder.name}.mp4"
        infos.append(
            TimelapseInfo(
                name=folder.name,
                path=str(folder),
                frame_count=sum(1 for _ in folder.glob(FRAME_GLOB)),
                video_path=str(video) if video.is_file() else None,
                filename=metadata.get("filename"),
                created_at=metadata.get("created_at") or folder.stat().st_mtime,
                active=os.path.abspath(folder) in active,
            )
        )
    infos.sort(key=lambda i: i.created_at or 0.0, reverse=True)
    return infos
