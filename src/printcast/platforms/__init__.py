"""Remote broadcast platforms.

Re-exports the public API so consumers can write::

    from printcast.platforms import BroadcastPlatform, YouTubeLivePlatform
"""

from __future__ import annotations

from printcast.platforms.base import (
    PRIVACY_VALUES,
    BroadcastAuthError,
    BroadcastError,
    BroadcastPlatform,
    BroadcastQuotaError,
    CreatedBroadcast,
    validate_privacy,
)
from printcast.platforms.oauth import RefreshingToken
from printcast.platforms.youtube import YouTubeLivePlatform

__all__ = [
    "PRIVACY_VALUES",
    "BroadcastAuthError",
    "BroadcastError",
    "BroadcastPlatform",
    "BroadcastQuotaError",
    "CreatedBroadcast",
    "RefreshingToken",
    "YouTubeLivePlatform",
    "validate_privacy",
]
