"""Klipper/Moonraker telemetry source for printcast.

Implements :class:`~printcast.printers.base.TelemetrySource` by querying
the `Moonraker HTTP API <https://moonraker.readthedocs.io/en/latest/web_api/>`_
via :mod:`requests`.  Only the read-only status and webcam endpoints are
used; printcast never sends commands to the printer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from typing import Any

import requests
from requests.exceptions import ConnectionError as ReqConnectionError
from requests.exceptions import RequestException, Timeout

from printcast.printers.base import JobPhase, PrinterState, TelemetryError, TelemetrySource

logger = logging.getLogger(__name__)

# HTTP status codes eligible for automatic retry.
_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({502, 503, 504})

_STATUS_QUERY = "/printer/objects/query?print_stats&virtual_sdcard&display_status"

# Mapping from ``print_stats.state`` (and a few aliases seen on forks and
# other front-ends) to the canonical :class:`JobPhase`.
_STATE_MAP: dict[str, JobPhase] = {
    "printing": JobPhase.PRINTING,
    "resuming": JobPhase.PRINTING,
    "resumed": JobPhase.PRINTING,
    "finishing": JobPhase.PRINTING,
    "heating": JobPhase.PRINTING,
    "preheating": JobPhase.PRINTING,
    "paused": JobPhase.PAUSED,
    "pausing": JobPhase.PAUSED,
    "standby": JobPhase.IDLE,
    "ready": JobPhase.IDLE,
    "idle": JobPhase.IDLE,
    "cancelled": JobPhase.IDLE,
    "canceled": JobPhase.IDLE,
    "complete": JobPhase.COMPLETE,
    "completed": JobPhase.COMPLETE,
    "success": JobPhase.COMPLETE,
    "error": JobPhase.ERROR,
    "shutdown": JobPhase.OFFLINE,
    "disconnected": JobPhase.OFFLINE,
    "startup": JobPhase.OFFLINE,
}

# Layer counters live in ``print_stats.info``; slicer macros and forks use
# a handful of spellings.
_CURRENT_LAYER_KEYS = ("current_layer", "CURRENT_LAYER", "currentLayer", "layer")
_TOTAL_LAYER_KEYS = ("total_layer", "TOTAL_LAYER", "total_layers", "total_layer_count", "layer_count")
_REMAINING_KEYS = ("time_remaining", "remaining_time", "eta_seconds")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _safe_get(data: Any, *keys: str, default: Any = None) -> Any:
    """Walk nested dicts safely, returning *default* on any miss or type error."""
    current = data
    for key in keys:
        if not isinstance(current, dict):
            return default
        current = current.get(key, default)
    return current


def _first_number(data: Any, keys: Iterable[str]) -> float | None:
    """Return the first numeric value found under any of *keys*."""
    if not isinstance(data, dict):
        return None
    for key in keys:
        value = data.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def _map_phase(state_string: str | None) -> JobPhase:
    """Translate a ``print_stats.state`` string to a :class:`JobPhase`."""
    if not state_string:
        return JobPhase.IDLE
    mapped = _STATE_MAP.get(state_string.strip().lower())
    if mapped is None:
        logger.debug("Unknown Moonraker print state %r, treating as idle", state_string)
        return JobPhase.IDLE
    return mapped


def _normalize_progress(value: float | None) -> float | None:
    """Moonraker reports 0..1 fractions; some proxies report 0..100."""
    if value is None:
        return None
    if value <= 1.0:
        value *= 100.0
    return max(0.0, min(100.0, value))


def parse_print_stats(status: dict[str, Any], *, captured_at: float | None = None) -> PrinterState:
    """Build a :class:`PrinterState` from a ``result.status`` object.

    Progress falls back to ``current_layer / total_layers`` and remaining
    time falls back to an estimate from elapsed print duration.
    """
    print_stats = status.get("print_stats") or {}
    info = print_stats.get("info") or {}

    raw_state = str(print_stats.get("state") or "")
    filename = print_stats.get("filename") or None

    current = _first_number(info, _CURRENT_LAYER_KEYS)
    total = _first_number(info, _TOTAL_LAYER_KEYS)
    current_layer = int(current) if current is not None else None
    total_layers = int(total) if total is not None and total > 0 else None

    progress = None
    for source in (print_stats, status.get("virtual_sdcard"), status.get("display_status")):
        progress = _normalize_progress(_first_number(source, ("progress",)))
        if progress is not None:
            break
    if progress is None and current_layer is not None and total_layers:
        progress = max(0.0, min(100.0, current_layer / total_layers * 100.0))

    remaining = _first_number(info, _REMAINING_KEYS)
    if remaining is None:
        remaining = _first_number(print_stats, _REMAINING_KEYS)
    if remaining is None and progress:
        elapsed = _first_number(print_stats, ("print_duration",))
        if elapsed:
            remaining = max(0.0, elapsed / (progress / 100.0) - elapsed)

    return PrinterState(
        phase=_map_phase(raw_state),
        filename=filename,
        progress=round(progress or 0.0, 2),
        current_layer=current_layer,
        total_layers=total_layers,
        remaining_seconds=remaining,
        captured_at=captured_at if captured_at is not None else time.time(),
        raw_state=raw_state,
    )


# ---------------------------------------------------------------------------
# Telemetry source
# ---------------------------------------------------------------------------


class MoonrakerTelemetry(TelemetrySource):
    """:class:`TelemetrySource` backed by the Moonraker HTTP API.

    Args:
        host: Base URL of the Moonraker instance, e.g.
            ``"http://klipper.local"`` or ``"http://192.168.1.50:7125"``.
        api_key: Optional API key, sent on every request under
            *api_key_header*.
        timeout: Per-request timeout in seconds.
        retries: Maximum number of attempts for transient failures
            (connection errors and HTTP 502/503/504).
        api_key_header: Header name for *api_key*.
        clock: Wall-clock source for ``captured_at``.

    Raises:
        ValueError: If *host* is empty.

    Example::

        source = MoonrakerTelemetry("http://klipper.local:7125")
        state = source.fetch_state()
        print(state.phase, state.progress)
    """

    def __init__(
        self,
        host: str,
        api_key: str | None = None,
        timeout: float = 5.0,
        retries: int = 2,
        verify_ssl: bool = True,
        *,
        api_key_header: str = "X-Api-Key",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not host:
            raise ValueError("host must not be empty")

        self._host: str = host.rstrip("/")
        self._api_key: str | None = api_key or None
        self._timeout = timeout
        self._retries: int = max(retries, 1)
        self._clock = clock

        self._session: requests.Session = requests.Session()
        if self._api_key:
            self._session.headers.update({api_key_header: self._api_key})
        self._session.verify = verify_ssl

    @property
    def name(self) -> str:  # noqa: D401
        """Human-readable identifier for this source."""
        return "moonraker"

    @property
    def host(self) -> str:
        return self._host

    # ------------------------------------------------------------------
    # Internal HTTP helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        """Build a fully-qualified URL from a relative API path."""
        return f"{self._host}{path}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Execute an HTTP request with exponential-backoff retry logic.

        Returns the :class:`requests.Response` on success (2xx).

        Raises:
            TelemetryError: On non-retryable HTTP errors, connection
                failures, timeouts, or when all retry attempts are exhausted.
        """
        url = self._url(path)
        last_exc: Exception | None = None

        for attempt in range(self._retries):
            try:
                response = self._session.request(method, url, timeout=self._timeout, **kwargs)

                if response.ok:
                    return response

                # Non-retryable HTTP error -- raise immediately.
                if response.status_code not in _RETRYABLE_STATUS_CODES:
                    body = response.text[:300]
                    if len(response.text) > 300:
                        body += " (truncated)"
                    raise TelemetryError(
                        f"Moonraker returned HTTP {response.status_code} for {method} {path}: {body}",
                    )

                last_exc = TelemetryError(
                    f"Moonraker returned HTTP {response.status_code} "
                    f"for {method} {path} "
                    f"(attempt {attempt + 1}/{self._retries})"
                )

            except Timeout as exc:
                last_exc = TelemetryError(
                    f"{method} {path} timed out after {self._timeout}s. "
                    f"Printer may be offline or overloaded. "
                    f"(attempt {attempt + 1}/{self._retries})",
                    cause=exc,
                )
            except ReqConnectionError as exc:
                last_exc = TelemetryError(
                    f"Could not connect to Moonraker at {self._host} (attempt {attempt + 1}/{self._retries})",
                    cause=exc,
                )
            except RequestException as exc:
                raise TelemetryError(
                    f"Request error for {method} {path}: {exc}",
                    cause=exc,
                ) from exc

            # Short backoff: the poller already bounds the whole call.
            if attempt < self._retries - 1:
                backoff = 0.5 * 2**attempt
                logger.debug(
                    "Retrying %s %s in %.1fs (attempt %d/%d)",
                    method,
                    path,
                    backoff,
                    attempt + 1,
                    self._retries,
                )
                time.sleep(backoff)

        assert last_exc is not None
        raise last_exc

    def _get_json(self, path: str, **kwargs: Any) -> dict[str, Any]:
        """Shorthand: GET *path* and return the parsed JSON body.

        Raises :class:`TelemetryError` if the response body is not valid JSON.
        """
        response = self._request("GET", path, **kwargs)
        try:
            payload = response.json()
        except ValueError as exc:
            raise TelemetryError(
                f"Invalid JSON in response from GET {path}",
                cause=exc,
            ) from exc
        if not isinstance(payload, dict):
            raise TelemetryError(f"Unexpected payload type from GET {path}: {type(payload).__name__}")
        return payload

    # ------------------------------------------------------------------
    # TelemetrySource
    # ------------------------------------------------------------------

    def fetch_state(self) -> PrinterState:
        """Query ``print_stats`` and friends and return a normalized snapshot."""
        payload = self._get_json(_STATUS_QUERY)
        status = _safe_get(payload, "result", "status")
        if not isinstance(status, dict) or not isinstance(status.get("print_stats"), dict):
            raise TelemetryError("Moonraker status response is missing result.status.print_stats")
        return parse_print_stats(status, captured_at=self._clock())

    # ------------------------------------------------------------------
    # Webcam discovery
    # ------------------------------------------------------------------

    def _first_webcam(self) -> dict[str, Any] | None:
        payload = self._get_json("/server/webcams/list")
        webcams = _safe_get(payload, "result", "webcams", default=[])
        if not isinstance(webcams, list) or not webcams:
            return None
        cam = webcams[0]
        return cam if isinstance(cam, dict) else None

    def _absolute(self, url: str) -> str:
        if url.startswith("/"):
            return f"{self._host}{url}"
        return url

    def get_webcam_snapshot_url(self) -> str | None:
        """Discover the first webcam's snapshot URL via ``/server/webcams/list``.

        Falls back to deriving a snapshot URL from the stream URL.  Returns
        ``None`` when no webcam is configured.

        Raises:
            TelemetryError: If Moonraker cannot be queried.
        """
        cam = self._first_webcam()
        if cam is None:
            return None
        snapshot_url = cam.get("snapshot_url") or cam.get("urlSnapshot")
        if not snapshot_url:
            stream_url = cam.get("stream_url") or cam.get("urlStream")
            if not stream_url:
                return None
            snapshot_url = stream_url.replace("action=stream", "action=snapshot")
        return self._absolute(snapshot_url)

    def get_webcam_stream_url(self) -> str | None:
        """Discover the first webcam's MJPEG stream URL, or ``None``."""
        try:
            cam = self._first_webcam()
        except TelemetryError:
            logger.debug("Webcam stream URL discovery failed", exc_info=True)
            return None
        if cam is None:
            return None
        stream_url = cam.get("stream_url") or cam.get("urlStream")
        return self._absolute(stream_url) if stream_url else None

    def __repr__(self) -> str:
        return f"<MoonrakerTelemetry host={self._host!r}>"
