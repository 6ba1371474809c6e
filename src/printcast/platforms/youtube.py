"""YouTube Live platform client over the YouTube Data API v3.

Uses plain :mod:`requests` against the REST endpoints with an OAuth 2.0
bearer token.  Pass either a token string or a zero-argument callable
that returns the current token (or ``None`` when not signed in), such
as :class:`~printcast.platforms.oauth.RefreshingToken`, which refreshes
expired tokens through google-auth.

Call surface:

* ``liveBroadcasts.insert`` + ``liveStreams.insert`` + ``liveBroadcasts.bind``
  to create a broadcast and its RTMP ingest address.
* ``liveStreams.list`` to see whether ingestion is active, then
  ``liveBroadcasts.transition`` to go live.
* ``liveBroadcasts.transition`` (``complete``) or ``liveBroadcasts.delete``
  to end it.
* ``liveBroadcasts.list`` / ``liveBroadcasts.update`` for privacy.
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable
from typing import Any, Union

import requests
from requests.exceptions import RequestException

from printcast.platforms.base import (
    BroadcastAuthError,
    BroadcastError,
    BroadcastPlatform,
    BroadcastQuotaError,
    CreatedBroadcast,
    validate_privacy,
)

logger = logging.getLogger(__name__)

_API_BASE = "https://www.googleapis.com/youtube/v3"

_QUOTA_REASONS = frozenset({"quotaExceeded", "rateLimitExceeded", "dailyLimitExceeded", "userRateLimitExceeded"})
_AUTH_REASONS = frozenset({"authError", "unauthorized", "insufficientPermissions", "liveStreamingNotEnabled"})
# Transition errors that mean "already where you want it".
_ALREADY_TRANSITIONED = frozenset({"redundantTransition", "invalidTransition"})
_LIVE_LIFECYCLES = frozenset({"live", "liveStarting"})
_ENDED_LIFECYCLES = frozenset({"complete", "revoked"})

TokenProvider = Union[str, Callable[[], Union[str, None]], None]


def _error_reasons(response: requests.Response) -> tuple[str, ...]:
    try:
        body = response.json()
    except ValueError:
        return ()
    errors = (body.get("error") or {}).get("errors") if isinstance(body, dict) else None
    if not isinstance(errors, list):
        return ()
    return tuple(str(e.get("reason")) for e in errors if isinstance(e, dict) and e.get("reason"))


class YouTubeLivePlatform(BroadcastPlatform):
    """:class:`BroadcastPlatform` backed by the YouTube Data API.

    Args:
        token: OAuth access token, or a callable returning one.
        title: Broadcast title.
        description: Broadcast description.
        privacy: Initial privacy (``public``, ``unlisted`` or ``private``).
        timeout: Per-request timeout in seconds.
        base_url: API root, overridable for tests.
    """

    def __init__(
        self,
        token: TokenProvider,
        *,
        title: str = "3D print live",
        description: str = "",
        privacy: str = "unlisted",
        timeout: float = 15.0,
        base_url: str = _API_BASE,
    ) -> None:
        self._token = token
        self._title = title
        self._description = description
        self._privacy = validate_privacy(privacy)
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._session = requests.Session()
        self._stream_ids: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "youtube"

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _current_token(self) -> str:
        token = self._token() if callable(self._token) else self._token
        if not token:
            raise BroadcastAuthError("Not authenticated with YouTube: no OAuth access token available.")
        return token

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> requests.Response:
        """Issue one authenticated request; only transport errors raise here."""
        headers = {"Authorization": f"Bearer {self._current_token()}"}
        try:
            return self._session.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json,
                headers=headers,
                timeout=self._timeout,
            )
        except RequestException as exc:
            raise BroadcastError(f"Failed to reach YouTube API ({method} {path}): {exc}", cause=exc) from exc

    def _raise_for(self, response: requests.Response, action: str) -> None:
        if response.ok:
            return
        reasons = _error_reasons(response)
        detail = f"YouTube {action} failed (HTTP {response.status_code}"
        detail += f", {', '.join(reasons)})" if reasons else ")"
        if response.status_code == 401 or _AUTH_REASONS.intersection(reasons):
            raise BroadcastAuthError(
                f"{detail}. Re-authenticate with YouTube.",
                status_code=response.status_code,
                reasons=reasons,
            )
        if _QUOTA_REASONS.intersection(reasons) or response.status_code == 429:
            raise BroadcastQuotaError(
                f"{detail}. The YouTube API quota is exhausted; try again later.",
                status_code=response.status_code,
                reasons=reasons,
            )
        raise BroadcastError(f"{detail}: {response.text[:200]}", status_code=response.status_code, reasons=reasons)

    def _call(self, method: str, path: str, action: str, **kwargs: Any) -> dict[str, Any]:
        response = self._send(method, path, **kwargs)
        self._raise_for(response, action)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as exc:
            raise BroadcastError(f"YouTube {action} returned invalid JSON", cause=exc) from exc
        return data if isinstance(data, dict) else {}

    def _broadcast(self, broadcast_id: str, part: str) -> dict[str, Any]:
        data = self._call("GET", "/liveBroadcasts", "liveBroadcasts.list", params={"part": part, "id": broadcast_id})
        items = data.get("items") or []
        if not items:
            raise BroadcastError(f"YouTube broadcast {broadcast_id} not found", status_code=404)
        return items[0]

    # ------------------------------------------------------------------
    # BroadcastPlatform
    # ------------------------------------------------------------------

    def create_broadcast(self) -> CreatedBroadcast:
        """Insert a broadcast and an RTMP stream, then bind them."""
        start = datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
        broadcast = self._call(
            "POST",
            "/liveBroadcasts",
            "liveBroadcasts.insert",
            params={"part": "snippet,status,contentDetails"},
            json={
                "snippet": {"title": self._title, "description": self._description, "scheduledStartTime": start},
                "status": {"privacyStatus": self._privacy, "selfDeclaredMadeForKids": False},
                "contentDetails": {"enableAutoStart": False, "enableAutoStop": False, "latencyPreference": "low"},
            },
        )
        broadcast_id = broadcast.get("id")
        if not broadcast_id:
            raise BroadcastError("YouTube liveBroadcasts.insert returned no broadcast id")

        try:
            stream = self._call(
                "POST",
                "/liveStreams",
                "liveStreams.insert",
                params={"part": "snippet,cdn,contentDetails,status"},
                json={
                    "snippet": {"title": f"{self._title} stream"},
                    "cdn": {"ingestionType": "rtmp", "resolution": "variable", "frameRate": "variable"},
                    "contentDetails": {"isReusable": False},
                },
            )
            stream_id = stream.get("id")
            ingestion = (stream.get("cdn") or {}).get("ingestionInfo") or {}
            address = ingestion.get("ingestionAddress")
            stream_name = ingestion.get("streamName")
            if not stream_id or not address or not stream_name:
                raise BroadcastError("YouTube liveStreams.insert returned no ingestion info")

            self._call(
                "POST",
                "/liveBroadcasts/bind",
                "liveBroadcasts.bind",
                params={"id": broadcast_id, "part": "id,contentDetails", "streamId": stream_id},
            )
        except BroadcastError:
            self._discard(broadcast_id)
            raise

        self._stream_ids[broadcast_id] = stream_id
        logger.info("Created YouTube broadcast %s (privacy=%s)", broadcast_id, self._privacy)
        return CreatedBroadcast(
            broadcast_id=broadcast_id,
            ingest_address=f"{address.rstrip('/')}/{stream_name}",
            stream_id=stream_id,
        )

    def _discard(self, broadcast_id: str) -> None:
        """Best-effort delete of a half-created broadcast."""
        try:
            self._raise_for(
                self._send("DELETE", "/liveBroadcasts", params={"id": broadcast_id}),
                "liveBroadcasts.delete",
            )
        except BroadcastError as exc:
            logger.warning("Could not delete incomplete broadcast %s: %s", broadcast_id, exc)

    def ingestion_active(self, broadcast_id: str) -> bool:
        """True once YouTube reports the bound stream as ``active``."""
        item = self._broadcast(broadcast_id, "id,contentDetails")
        stream_id = (item.get("contentDetails") or {}).get("boundStreamId") or self._stream_ids.get(broadcast_id)
        if not stream_id:
            return False
        data = self._call("GET", "/liveStreams", "liveStreams.list", params={"part": "status", "id": stream_id})
        items = data.get("items") or []
        status = ((items[0].get("status") or {}).get("streamStatus")) if items else None
        logger.debug("Stream %s status: %s", stream_id, status)
        return status == "active"

    def transition_to_live(self, broadcast_id: str) -> bool:
        life = (self._broadcast(broadcast_id, "id,status").get("status") or {}).get("lifeCycleStatus")
        if life in _LIVE_LIFECYCLES:
            logger.debug("Broadcast %s already %s; skipping transition", broadcast_id, life)
            return True
        if not self.ingestion_active(broadcast_id):
            return False

        response = self._send(
            "POST",
            "/liveBroadcasts/transition",
            params={"broadcastStatus": "live", "id": broadcast_id, "part": "id,status"},
        )
        reasons = _error_reasons(response) if not response.ok else ()
        if _ALREADY_TRANSITIONED.intersection(reasons):
            logger.info("Transition of %s returned %s; treating as live", broadcast_id, ", ".join(reasons))
            return True
        if "errorStreamInactive" in reasons:
            return False
        self._raise_for(response, "liveBroadcasts.transition")
        logger.info("Broadcast %s transitioned to live", broadcast_id)
        return True

    def end_broadcast(self, broadcast_id: str) -> None:
        try:
            life = (self._broadcast(broadcast_id, "id,status").get("status") or {}).get("lifeCycleStatus")
        except BroadcastError as exc:
            if exc.status_code == 404:
                logger.info("Broadcast %s no longer exists; nothing to end", broadcast_id)
                self._stream_ids.pop(broadcast_id, None)
                return
            raise
        if life in _ENDED_LIFECYCLES:
            self._stream_ids.pop(broadcast_id, None)
            return

        if life in _LIVE_LIFECYCLES or life == "testing":
            response = self._send(
                "POST",
                "/liveBroadcasts/transition",
                params={"broadcastStatus": "complete", "id": broadcast_id, "part": "id,status"},
            )
            if not _ALREADY_TRANSITIONED.intersection(_error_reasons(response) if not response.ok else ()):
                self._raise_for(response, "liveBroadcasts.transition")
        else:
            # Never went live: a completed transition is invalid, delete instead.
            response = self._send("DELETE", "/liveBroadcasts", params={"id": broadcast_id})
            if response.status_code != 404:
                self._raise_for(response, "liveBroadcasts.delete")
        self._stream_ids.pop(broadcast_id, None)
        logger.info("Ended YouTube broadcast %s", broadcast_id)

    def get_privacy(self, broadcast_id: str) -> str:
        status = self._broadcast(broadcast_id, "id,status").get("status") or {}
        privacy = status.get("privacyStatus")
        if not privacy:
            raise BroadcastError(f"YouTube broadcast {broadcast_id} has no privacy status")
        return str(privacy)

    def set_privacy(self, broadcast_id: str, value: str) -> None:
        privacy = validate_privacy(value)
        item = self._broadcast(broadcast_id, "id,status")
        current = item.get("status") or {}
        # Only writable status fields; lifecycle fields are read-only.
        status: dict[str, Any] = {"privacyStatus": privacy}
        if "selfDeclaredMadeForKids" in current:
            status["selfDeclaredMadeForKids"] = current["selfDeclaredMadeForKids"]
        self._call(
            "PUT",
            "/liveBroadcasts",
            "liveBroadcasts.update",
            params={"part": "status"},
            json={"id": broadcast_id, "status": status},
        )
        logger.info("Broadcast %s privacy set to %s", broadcast_id, privacy)
