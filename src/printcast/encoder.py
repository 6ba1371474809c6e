"""ffmpeg live encoder — webcam MJPEG in, RTMP/FLV out.

The broadcast manager treats the encoder as a black box with three
operations: :meth:`FfmpegEncoder.start`, :meth:`FfmpegEncoder.is_alive`
and :meth:`FfmpegEncoder.stop`.  Each start spawns a fresh ffmpeg process
and returns a new :class:`EncoderHandle`; the ingest address is reused
as-is across restarts.

Configure via environment variables:
    FFMPEG_LOGLEVEL   — ffmpeg ``-loglevel`` (default ``error``)
    PRINTCAST_FFMPEG  — ffmpeg binary (default: ``ffmpeg`` on PATH)
"""

from __future__ import annotations

import collections
import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from printcast.errors import EncoderError

logger = logging.getLogger(__name__)

_VALID_LOGLEVELS = frozenset({"quiet", "panic", "fatal", "error", "warning", "info", "verbose", "debug", "trace"})
_STDERR_TAIL_LINES = 50


def _ffmpeg_loglevel() -> str:
    level = os.environ.get("FFMPEG_LOGLEVEL", "error").strip().lower()
    if level not in _VALID_LOGLEVELS:
        logger.warning("Invalid FFMPEG_LOGLEVEL=%r, using 'error'", level)
        return "error"
    return level


@dataclass
class EncoderHandle:
    """A running (or exited) encoder process."""

    process: subprocess.Popen
    ingest_address: str
    source_url: str
    started_at: float = field(default_factory=time.time)
    stderr_tail: collections.deque = field(default_factory=lambda: collections.deque(maxlen=_STDERR_TAIL_LINES))

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll()

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "returncode": self.returncode,
            "started_at": self.started_at,
            "source_url": self.source_url,
        }


class FfmpegEncoder:
    """Launches ffmpeg to push the webcam feed to an RTMP ingest address.

    Args:
        ffmpeg_path: ffmpeg binary name or path.
        fps: Output frame rate.
        bitrate_kbps: Target video bitrate.
        width: Output width; height follows *height*.
        height: Output height.
    """

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        *,
        fps: int = 30,
        bitrate_kbps: int = 800,
        width: int = 640,
        height: int = 480,
    ) -> None:
        self._ffmpeg = ffmpeg_path or os.environ.get("PRINTCAST_FFMPEG") or "ffmpeg"
        self._fps = fps
        self._bitrate = bitrate_kbps
        self._width = width
        self._height = height

    def build_command(self, ingest_address: str, source_url: str) -> list[str]:
        """Full ffmpeg argument vector for one encoder run."""
        gop = max(2, self._fps * 2)
        base = [
            self._ffmpeg,
            "-hide_banner", "-nostats",
            "-loglevel", _ffmpeg_loglevel(),
            "-nostdin",
            "-err_detect", "ignore_err",
        ]
        if source_url.startswith("/dev/"):
            # Local V4L2 device: no reconnect flags, no synthetic audio.
            inputs = ["-re", "-f", "v4l2", "-i", source_url]
            audio = ["-an"]
        else:
            inputs = [
                "-reconnect", "1",
                "-reconnect_streamed", "1",
                "-reconnect_delay_max", "2",
                "-fflags", "+genpts",
                "-f", "mjpeg",
                "-use_wallclock_as_timestamps", "1",
                "-i", source_url,
                "-f", "lavfi",
                "-i", "anullsrc=channel_layout=stereo:sample_rate=44100",
                "-map", "0:v:0",
                "-map", "1:a:0",
            ]
            audio = ["-c:a", "aac", "-b:a", "128k", "-ar", "44100", "-ac", "2"]
        video = [
            "-vf", f"format=yuv420p,scale={self._width}:{self._height}",
            "-color_range", "tv",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-tune", "zerolatency",
            "-profile:v", "baseline",
            "-pix_fmt", "yuv420p",
            "-r", str(self._fps),
            "-g", str(gop),
            "-keyint_min", str(gop),
            "-b:v", f"{self._bitrate}k",
            "-maxrate", f"{self._bitrate}k",
            "-bufsize", f"{self._bitrate * 2}k",
        ]
        output = ["-flvflags", "no_duration_filesize", "-f", "flv", ingest_address]
        return base + inputs + video + audio + output

    def start(self, ingest_address: str, source_url: str) -> EncoderHandle:
        """Spawn ffmpeg.

        Raises:
            EncoderError: If the process could not be launched.
        """
        if not ingest_address:
            raise EncoderError("ingest address must not be empty")
        if not source_url:
            raise EncoderError("source url must not be empty")
        cmd = self.build_command(ingest_address, source_url)
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=os.name != "nt",
            )
        except OSError as exc:
            raise EncoderError(f"Failed to launch ffmpeg ({self._ffmpeg}): {exc}", cause=exc) from exc

        handle = EncoderHandle(process=process, ingest_address=ingest_address, source_url=source_url)
        if process.stderr is not None:
            threading.Thread(
                target=_drain_stderr,
                args=(handle,),
                name=f"printcast-ffmpeg-{process.pid}",
                daemon=True,
            ).start()
        logger.info("Encoder started (pid=%d, source=%s)", process.pid, source_url)
        return handle

    def is_alive(self, handle: EncoderHandle | None) -> bool:
        return handle is not None and handle.process.poll() is None

    def stop(self, handle: EncoderHandle | None, timeout: float = 5.0) -> None:
        """Terminate the process, escalating to kill after *timeout*.

        Tolerates a process that has already exited.
        """
        if handle is None:
            return
        process = handle.process
        if process.poll() is not None:
            logger.debug("Encoder pid=%d already exited with %s", process.pid, process.returncode)
            return
        try:
            process.terminate()
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Encoder pid=%d ignored SIGTERM for %.1fs, killing", process.pid, timeout)
                process.kill()
                process.wait(timeout=timeout)
        except ProcessLookupError:
            pass
        except subprocess.TimeoutExpired:
            logger.error("Encoder pid=%d did not exit after kill", process.pid)
            return
        logger.info("Encoder stopped (pid=%d, rc=%s)", process.pid, process.returncode)


def _drain_stderr(handle: EncoderHandle) -> None:
    """Keep the pipe from filling up and retain the last lines for diagnostics."""
    stream = handle.process.stderr
    if stream is None:
        return
    try:
        for line in stream:
            line = line.rstrip()
            if line:
                handle.stderr_tail.append(line)
                logger.debug("ffmpeg[%d]: %s", handle.pid, line)
    except (OSError, ValueError):
        pass
