"""Remote broadcast platform interface.

A platform creates a live broadcast resource with an ingest address,
flips it to live once the platform sees the encoder's stream, ends it,
and exposes its privacy setting.  Every call is privileged; platforms
check their credentials before each one and raise
:class:`~printcast.errors.BroadcastAuthError` when they are missing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any

from printcast.errors import BroadcastAuthError, BroadcastError, BroadcastQuotaError

__all__ = [
    "PRIVACY_VALUES",
    "BroadcastAuthError",
    "BroadcastError",
    "BroadcastPlatform",
    "BroadcastQuotaError",
    "CreatedBroadcast",
    "validate_privacy",
]

PRIVACY_VALUES: tuple[str, ...] = ("public", "unlisted", "private")


def validate_privacy(value: str) -> str:
    """Normalize and validate a privacy value.

    Raises:
        ValueError: If *value* is not one of :data:`PRIVACY_VALUES`.
    """
    normalized = (value or "").strip().lower()
    if normalized not in PRIVACY_VALUES:
        raise ValueError(f"Invalid privacy {value!r}. Must be one of: {', '.join(PRIVACY_VALUES)}")
    return normalized


@dataclass(frozen=True)
class CreatedBroadcast:
    """Identity of a freshly created remote broadcast."""

    broadcast_id: str
    ingest_address: str
    stream_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class BroadcastPlatform(ABC):
    """Authenticated RPC surface of a live-video platform."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier for logs, e.g. ``"youtube"``."""

    @abstractmethod
    def create_broadcast(self) -> CreatedBroadcast:
        """Create a broadcast and its ingest endpoint."""

    @abstractmethod
    def transition_to_live(self, broadcast_id: str) -> bool:
        """Ask the platform to go live.

        Returns False while ingestion is not yet active (the caller polls
        again later) and True once the broadcast is live or going live.
        """

    @abstractmethod
    def end_broadcast(self, broadcast_id: str) -> None:
        """End the broadcast.  Ending an already-ended one is not an error."""

    @abstractmethod
    def get_privacy(self, broadcast_id: str) -> str:
        """Return the broadcast's privacy value."""

    @abstractmethod
    def set_privacy(self, broadcast_id: str, value: str) -> None:
        """Change the broadcast's privacy value."""
