"""Still-frame capture from the printer webcam.

Fetches a single JPEG either from a snapshot endpoint or, when only an
MJPEG stream is available, by reading the stream until the first
complete frame (``FFD8`` ... ``FFD9``) arrives.  Used by the timelapse
manager on its capture timer and by ``printcast snapshot``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

import requests
from requests.exceptions import ConnectionError as ReqConnectionError
from requests.exceptions import RequestException, Timeout

from printcast.errors import CaptureError

logger = logging.getLogger(__name__)

_MAX_FRAME_SIZE: int = 10 * 1024 * 1024  # 10MB max frame size
_MIN_FRAME_SIZE: int = 100  # anything smaller is an error page, not an image
_JPEG_START = b"\xff\xd8"
_JPEG_END = b"\xff\xd9"


def extract_first_jpeg(chunks: Iterable[bytes], max_size: int = _MAX_FRAME_SIZE) -> bytes | None:
    """Return the first complete JPEG found in an MJPEG byte stream.

    Returns ``None`` if the stream ends first.  Raises :class:`CaptureError`
    when the buffered frame grows past *max_size*.
    """
    buf = bytearray()
    in_frame = False

    for chunk in chunks:
        if not chunk:
            continue
        buf.extend(chunk)

        if not in_frame:
            start = buf.find(_JPEG_START)
            if start == -1:
                # Keep last byte in case marker is split
                if len(buf) > 1:
                    buf = buf[-1:]
                continue
            buf = buf[start:]
            in_frame = True

        end = buf.find(_JPEG_END, len(_JPEG_START))
        if end != -1:
            return bytes(buf[: end + 2])

        if len(buf) > max_size:
            raise CaptureError(f"MJPEG frame exceeded {max_size} bytes without an end marker")

    return None


class SnapshotClient:
    """Fetches single frames from a webcam URL.

    Args:
        url: Snapshot URL (``?action=snapshot``) or MJPEG stream URL.
        timeout: Per-request timeout in seconds.
        max_frame_size: Upper bound on a single frame in bytes.
        session: Optional shared :class:`requests.Session`.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        *,
        max_frame_size: int = _MAX_FRAME_SIZE,
        session: requests.Session | None = None,
    ) -> None:
        if not url:
            raise ValueError("snapshot url must not be empty")
        self._url = url
        self._timeout = timeout
        self._max_frame_size = max_frame_size
        self._session = session or requests.Session()

    @property
    def url(self) -> str:
        return self._url

    def capture_frame(self) -> bytes:
        """Fetch one still image.

        Raises:
            CaptureError: On timeout, connection failure, non-2xx status,
                or an empty/undersized/oversized payload.
        """
        try:
            response = self._session.get(self._url, timeout=self._timeout, stream=True)
        except Timeout as exc:
            raise CaptureError(
                f"Webcam snapshot timed out after {self._timeout}s. "
                "Check that the webcam service is running and accessible.",
                cause=exc,
            ) from exc
        except ReqConnectionError as exc:
            raise CaptureError(
                f"Webcam snapshot failed: could not connect to {self._url}.",
                cause=exc,
            ) from exc
        except RequestException as exc:
            raise CaptureError(f"Webcam snapshot failed: {exc}", cause=exc) from exc

        try:
            if not response.ok:
                raise CaptureError(
                    f"Webcam snapshot failed (HTTP {response.status_code}). Check that the webcam service is running."
                )
            content_type = response.headers.get("Content-Type", "").lower()
            if content_type.startswith("multipart/"):
                frame = extract_first_jpeg(
                    response.iter_content(chunk_size=4096),
                    max_size=self._max_frame_size,
                )
                if frame is None:
                    raise CaptureError("MJPEG stream ended before a complete frame was received")
            else:
                frame = response.content
        except RequestException as exc:
            raise CaptureError(f"Webcam snapshot read failed: {exc}", cause=exc) from exc
        finally:
            response.close()

        if not frame or len(frame) < _MIN_FRAME_SIZE:
            raise CaptureError(f"Webcam returned an empty or truncated image ({len(frame or b'')} bytes)")
        if len(frame) > self._max_frame_size:
            raise CaptureError(f"Webcam image exceeds {self._max_frame_size} bytes")
        return frame

    def __repr__(self) -> str:
        return f"<SnapshotClient url={self._url!r}>"
