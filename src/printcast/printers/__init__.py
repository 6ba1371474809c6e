"""Printer telemetry package.

Re-exports the public API from the base module so consumers can write::

    from printcast.printers import PrinterState, TelemetrySource, ...
"""

from __future__ import annotations

from printcast.printers.base import (
    JobPhase,
    PrinterState,
    TelemetryError,
    TelemetrySource,
    job_key,
    same_job,
)
from printcast.printers.moonraker import MoonrakerTelemetry

__all__ = [
    "JobPhase",
    "MoonrakerTelemetry",
    "PrinterState",
    "TelemetryError",
    "TelemetrySource",
    "job_key",
    "same_job",
]
