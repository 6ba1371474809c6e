"""Exception hierarchy shared by every printcast component.

Directly-invoked operations (starting a session, starting a broadcast,
assembling a video) raise these to their caller.  Background loops catch
them, log, and carry on with the next tick.
"""

from __future__ import annotations


class PrintcastError(Exception):
    """Base exception for all printcast errors.

    Carries an optional *cause* so callers can inspect the underlying
    transport or subprocess failure without parsing the message.
    """

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


# ---------------------------------------------------------------------------
# Telemetry / capture
# ---------------------------------------------------------------------------


class TelemetryError(PrintcastError):
    """The printer status query failed (timeout, connection, HTTP, payload)."""


class CaptureError(PrintcastError):
    """A still frame could not be fetched from the camera."""


# ---------------------------------------------------------------------------
# Timelapse
# ---------------------------------------------------------------------------


class TimelapseError(PrintcastError):
    """Base class for timelapse session failures."""


class SessionAlreadyActiveError(TimelapseError):
    """A non-finalized session exists for a different job key."""

    def __init__(self, active_key: str, requested_key: str) -> None:
        super().__init__(
            f"Timelapse session {active_key!r} is still active; "
            f"stop or abandon it before starting {requested_key!r}."
        )
        self.active_key = active_key
        self.requested_key = requested_key


class AssemblyError(TimelapseError):
    """Frame-to-video assembly failed."""


# ---------------------------------------------------------------------------
# Broadcast / encoder
# ---------------------------------------------------------------------------


class EncoderError(PrintcastError):
    """The encoder subprocess could not be launched."""


class BroadcastError(PrintcastError):
    """A remote broadcast platform call failed.

    *status_code* and *reasons* carry the platform's HTTP status and
    machine-readable error reasons when the failure came from the API.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reasons: tuple[str, ...] = (),
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.reasons = reasons


class BroadcastAuthError(BroadcastError):
    """The platform rejected or lacks credentials for a privileged call."""


class BroadcastQuotaError(BroadcastError):
    """The platform refused the call because an API quota was exhausted."""


class BroadcastAlreadyActiveError(BroadcastError):
    """``start_broadcast`` was called while a broadcast is still active."""


class BroadcastNotActiveError(BroadcastError):
    """An operation that needs an active broadcast was called without one."""
