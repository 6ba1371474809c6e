"""Shared fixtures and fakes for the printcast test suite.

The fakes stand in for the external boundaries (printer telemetry, the
webcam, ffmpeg, and the broadcast platform) so the orchestration core can
be exercised deterministically without network access or subprocesses.
"""

from __future__ import annotations

import itertools
import os
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Optional

import pytest

from printcast.errors import AssemblyError, BroadcastError, CaptureError, EncoderError, TelemetryError
from printcast.events import EventBus
from printcast.platforms.base import BroadcastPlatform, CreatedBroadcast
from printcast.printers.base import JobPhase, PrinterState, TelemetrySource

# Smallest payload the snapshot client accepts as an image.
JPEG = b"\xff\xd8" + b"\x00" * 200 + b"\xff\xd9"


def make_state(
    phase: JobPhase = JobPhase.PRINTING,
    filename: Optional[str] = "benchy.gcode",
    progress: float = 0.0,
    current_layer: Optional[int] = None,
    total_layers: Optional[int] = None,
    remaining_seconds: Optional[float] = None,
) -> PrinterState:
    return PrinterState(
        phase=phase,
        filename=filename,
        progress=progress,
        current_layer=current_layer,
        total_layers=total_layers,
        remaining_seconds=remaining_seconds,
        captured_at=1_700_000_000.0,
        raw_state=phase.value,
    )


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll *predicate* until it is true or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


class FakeTelemetry(TelemetrySource):
    """Returns scripted states; an exception instance in the script is raised."""

    def __init__(self, script: Iterable[Any] = ()) -> None:
        self._script = list(script)
        self._index = 0
        self.calls = 0

    @property
    def name(self) -> str:
        return "fake"

    def push(self, *items: Any) -> None:
        self._script.extend(items)

    def fetch_state(self) -> PrinterState:
        self.calls += 1
        if not self._script:
            raise TelemetryError("no scripted state")
        item = self._script[min(self._index, len(self._script) - 1)]
        self._index += 1
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item()
        return item


# ---------------------------------------------------------------------------
# Frames / assembly
# ---------------------------------------------------------------------------


class FakeFrameSource:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0
        self._lock = threading.Lock()

    def capture_frame(self) -> bytes:
        with self._lock:
            self.calls += 1
            n = self.calls
        if self.fail:
            raise CaptureError("camera unavailable")
        return JPEG[:-2] + n.to_bytes(4, "big") + b"\xff\xd9"


class FakeAssembler:
    """Records calls; writes the list of frame files into the output path."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, str, int]] = []
        self.frames_seen: list[list[str]] = []

    def assemble(self, frames_dir: Any, output_path: Any, fps: int = 30) -> str:
        self.calls.append((str(frames_dir), str(output_path), fps))
        if self.fail:
            raise AssemblyError("ffmpeg exited with code 1")
        frames = sorted(p.name for p in Path(frames_dir).glob("frame_*.jpg"))
        self.frames_seen.append(frames)
        Path(output_path).write_text("\n".join(frames), encoding="utf-8")
        return str(output_path)


# ---------------------------------------------------------------------------
# Encoder
# ---------------------------------------------------------------------------


class FakeHandle:
    _pids = itertools.count(4000)

    def __init__(self, ingest_address: str, source_url: str) -> None:
        self.ingest_address = ingest_address
        self.source_url = source_url
        self.pid = next(self._pids)
        self.alive = True
        self.stopped = False

    @property
    def returncode(self) -> Optional[int]:
        return None if self.alive else 1


class FakeEncoder:
    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.fail_starts = 0
        self.stop_calls = 0

    def start(self, ingest_address: str, source_url: str) -> FakeHandle:
        if self.fail_starts > 0:
            self.fail_starts -= 1
            raise EncoderError("Failed to launch ffmpeg (ffmpeg): No such file or directory")
        handle = FakeHandle(ingest_address, source_url)
        self.handles.append(handle)
        return handle

    def is_alive(self, handle: Optional[FakeHandle]) -> bool:
        return handle is not None and handle.alive

    def stop(self, handle: Optional[FakeHandle], timeout: float = 5.0) -> None:
        self.stop_calls += 1
        if handle is not None:
            handle.alive = False
            handle.stopped = True

    @property
    def current(self) -> Optional[FakeHandle]:
        return self.handles[-1] if self.handles else None


# ---------------------------------------------------------------------------
# Platform
# ---------------------------------------------------------------------------


class FakePlatform(BroadcastPlatform):
    def __init__(self) -> None:
        self.created: list[str] = []
        self.ended: list[str] = []
        self.transitions = 0
        self.ingestion_ready = True
        self.create_error: Optional[Exception] = None
        self.end_error: Optional[Exception] = None
        self.privacy: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "fake"

    def create_broadcast(self) -> CreatedBroadcast:
        if self.create_error is not None:
            raise self.create_error
        broadcast_id = f"bc-{len(self.created) + 1}"
        self.created.append(broadcast_id)
        self.privacy[broadcast_id] = "unlisted"
        return CreatedBroadcast(broadcast_id, f"rtmp://ingest.example/live2/key-{broadcast_id}", f"st-{broadcast_id}")

    def transition_to_live(self, broadcast_id: str) -> bool:
        self.transitions += 1
        return self.ingestion_ready

    def end_broadcast(self, broadcast_id: str) -> None:
        self.ended.append(broadcast_id)
        if self.end_error is not None:
            raise self.end_error

    def get_privacy(self, broadcast_id: str) -> str:
        if broadcast_id not in self.privacy:
            raise BroadcastError("not found", status_code=404)
        return self.privacy[broadcast_id]

    def set_privacy(self, broadcast_id: str, value: str) -> None:
        self.privacy[broadcast_id] = value


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus(max_history=500)


@pytest.fixture()
def frame_source() -> FakeFrameSource:
    return FakeFrameSource()


@pytest.fixture()
def assembler() -> FakeAssembler:
    return FakeAssembler()


@pytest.fixture()
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture()
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep tests away from the developer's real config, logs and env."""
    for name in list(os.environ):
        if name.startswith("PRINTCAST_") or name == "FFMPEG_LOGLEVEL":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
