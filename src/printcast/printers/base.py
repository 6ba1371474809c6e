"""Printer telemetry interface for printcast.

Every telemetry backend must subclass :class:`TelemetrySource` and return
a normalized :class:`PrinterState` snapshot so that the poller and the
orchestrator never see controller-specific payloads.
"""

from __future__ import annotations

import enum
import re
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any

from printcast.errors import TelemetryError

__all__ = [
    "JobPhase",
    "PrinterState",
    "TelemetryError",
    "TelemetrySource",
    "job_key",
    "same_job",
]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class JobPhase(enum.Enum):
    """Lifecycle phase of the printer's current job."""

    IDLE = "idle"
    PRINTING = "printing"
    PAUSED = "paused"
    COMPLETE = "complete"
    ERROR = "error"
    OFFLINE = "offline"


_ACTIVE_PHASES = frozenset({JobPhase.PRINTING, JobPhase.PAUSED})
_DONE_PHASES = frozenset({JobPhase.IDLE, JobPhase.COMPLETE, JobPhase.ERROR})


# ---------------------------------------------------------------------------
# Job key
# ---------------------------------------------------------------------------

_EXTENSION_RE = re.compile(r"\.[A-Za-z0-9]{1,6}$")
_UNSAFE_RE = re.compile(r"[^\w]+")
_REPEATED_UNDERSCORE_RE = re.compile(r"_{2,}")


def job_key(filename: str | None) -> str:
    """Derive a filesystem-safe job key from a print file name.

    Directory components and the extension are dropped, ``&`` becomes
    ``and``, and every other non-word character becomes ``_``.  An empty
    result maps to ``"unknown"``.

    >>> job_key("parts/Benchy (0.2mm) v2.gcode")
    'Benchy_0_2mm_v2'
    """
    if not filename:
        return "unknown"
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _EXTENSION_RE.sub("", name)
    name = name.replace("&", "and")
    name = _UNSAFE_RE.sub("_", name)
    name = _REPEATED_UNDERSCORE_RE.sub("_", name).strip("_")
    return name or "unknown"


def same_job(a: str | None, b: str | None) -> bool:
    """Case-insensitive file name comparison used for job-change detection."""
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PrinterState:
    """Immutable snapshot of the printer's job telemetry.

    ``progress`` is always 0--100.  Backends derive it from layer counts
    when the controller does not report it directly.
    """

    phase: JobPhase
    filename: str | None = None
    progress: float = 0.0
    current_layer: int | None = None
    total_layers: int | None = None
    remaining_seconds: float | None = None
    captured_at: float = field(default_factory=time.time)
    raw_state: str = ""

    @property
    def is_active(self) -> bool:
        """True while a job is printing or paused."""
        return self.phase in _ACTIVE_PHASES

    @property
    def is_done(self) -> bool:
        """True when the controller reports no running job."""
        return self.phase in _DONE_PHASES

    @property
    def job_key(self) -> str:
        return job_key(self.filename)

    def differs_from(
        self,
        other: PrinterState | None,
        progress_noise: float = 0.5,
    ) -> frozenset[str]:
        """Return the aspects that changed meaningfully since *other*.

        Compares by value.  Progress deltas below *progress_noise*
        percentage points are ignored.  An empty set means the two
        snapshots describe the same situation.
        """
        if other is None:
            return frozenset({"phase", "filename", "layer", "progress"})
        changed: set[str] = set()
        if self.phase != other.phase:
            changed.add("phase")
        if (self.filename or "").lower() != (other.filename or "").lower():
            changed.add("filename")
        if self.current_layer != other.current_layer or self.total_layers != other.total_layers:
            changed.add("layer")
        if abs(self.progress - other.progress) >= progress_noise:
            changed.add("progress")
        return frozenset(changed)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dictionary."""
        data = asdict(self)
        data["phase"] = self.phase.value
        data["job_key"] = self.job_key
        return data


# ---------------------------------------------------------------------------
# Abstract telemetry source
# ---------------------------------------------------------------------------


class TelemetrySource(ABC):
    """A polled data source that reports the printer's job status."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier for logs, e.g. ``"moonraker"``."""

    @abstractmethod
    def fetch_state(self) -> PrinterState:
        """Query the controller once and return a normalized snapshot.

        Raises:
            TelemetryError: On timeout, connection failure, HTTP error or
                a malformed payload.  Implementations never translate a
                failure into an ``offline`` snapshot.
        """
