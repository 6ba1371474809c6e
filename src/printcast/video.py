"""Frame-to-video assembly for timelapses via ffmpeg.

Frames are stored as ``frame_000000.jpg``, ``frame_000001.jpg``, ...
and stitched into an H.264 MP4.  If the sequence-pattern invocation
fails, a glob-pattern invocation is tried once before giving up.

Configure via environment variables:
    PRINTCAST_FFMPEG          — ffmpeg binary (default: ``ffmpeg`` on PATH)
    PRINTCAST_ASSEMBLY_TIMEOUT — seconds before assembly is aborted (default 600)
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import subprocess
from pathlib import Path

from printcast import parse_int_env
from printcast.errors import AssemblyError

logger = logging.getLogger(__name__)

FRAME_PATTERN = "frame_%06d.jpg"
FRAME_GLOB = "frame_*.jpg"

_DEFAULT_TIMEOUT = 600


def frame_name(index: int) -> str:
    """File name for the frame at *index* (zero-based)."""
    return FRAME_PATTERN % index


def find_ffmpeg(ffmpeg_path: str | None = None) -> str:
    """Locate the ffmpeg binary.

    Raises:
        AssemblyError: If no usable binary is found.
    """
    candidate = ffmpeg_path or os.environ.get("PRINTCAST_FFMPEG") or "ffmpeg"
    if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
        return candidate
    found = shutil.which(candidate)
    if found:
        return found
    raise AssemblyError(f"ffmpeg not found ({candidate!r}). Install ffmpeg or set PRINTCAST_FFMPEG.")


class VideoAssembler:
    """Stitches a folder of numbered JPEG frames into an MP4.

    Args:
        ffmpeg_path: Explicit ffmpeg binary; resolved lazily on first use.
        timeout: Seconds before an ffmpeg run is killed.
        crf: x264 constant rate factor.
        preset: x264 preset.
    """

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        *,
        timeout: int | None = None,
        crf: int = 18,
        preset: str = "medium",
    ) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._timeout = timeout if timeout is not None else parse_int_env("PRINTCAST_ASSEMBLY_TIMEOUT", _DEFAULT_TIMEOUT)
        self._crf = crf
        self._preset = preset

    def _encode_args(self, output_path: str) -> list[str]:
        return [
            "-c:v", "libx264",
            "-preset", self._preset,
            "-crf", str(self._crf),
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
            output_path,
        ]

    def build_command(self, ffmpeg: str, frames_dir: str, output_path: str, fps: int) -> list[str]:
        """Primary invocation using the numbered frame pattern."""
        return [
            ffmpeg, "-y",
            "-framerate", str(fps),
            "-start_number", "0",
            "-i", os.path.join(frames_dir, FRAME_PATTERN),
            *self._encode_args(output_path),
        ]

    def build_fallback_command(self, ffmpeg: str, frames_dir: str, output_path: str, fps: int) -> list[str]:
        """Fallback invocation that tolerates gaps in the numbering."""
        return [
            ffmpeg, "-y",
            "-framerate", str(fps),
            "-pattern_type", "glob",
            "-i", os.path.join(frames_dir, FRAME_GLOB),
            *self._encode_args(output_path),
        ]

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            raise AssemblyError(f"ffmpeg timed out after {self._timeout}s while assembling the timelapse.") from None
        except OSError as exc:
            raise AssemblyError(f"Failed to run ffmpeg: {exc}", cause=exc) from exc

    def assemble(self, frames_dir: str | Path, output_path: str | Path, fps: int = 30) -> str:
        """Assemble every frame in *frames_dir* into *output_path*.

        Returns the output path.

        Raises:
            AssemblyError: When ffmpeg is missing, both invocations fail,
                or the output file is missing or empty.
        """
        frames_dir = str(frames_dir)
        output_path = str(output_path)
        if fps <= 0:
            raise AssemblyError(f"fps must be positive, got {fps}")
        ffmpeg = find_ffmpeg(self._ffmpeg_path)

        result = self._run(self.build_command(ffmpeg, frames_dir, output_path, fps))
        if result.returncode != 0:
            logger.warning(
                "ffmpeg exited with code %d for %s, retrying with glob pattern",
                result.returncode,
                frames_dir,
            )
            with contextlib.suppress(OSError):
                os.unlink(output_path)
            result = self._run(self.build_fallback_command(ffmpeg, frames_dir, output_path, fps))
            if result.returncode != 0:
                stderr_snippet = (result.stderr or "").strip()[-500:]
                raise AssemblyError(f"ffmpeg exited with code {result.returncode}. stderr: {stderr_snippet}")

        if not os.path.isfile(output_path) or os.path.getsize(output_path) == 0:
            raise AssemblyError(f"ffmpeg reported success but {output_path} is missing or empty")

        logger.info("Assembled timelapse %s (%.1f MB)", output_path, os.path.getsize(output_path) / 1_048_576)
        return output_path
