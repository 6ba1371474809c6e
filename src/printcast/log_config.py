"""Log rotation and secret scrubbing for printcast.

Provides a logging filter that redacts API keys, OAuth tokens and RTMP
stream keys from log output, and a helper that installs a rotating file
handler (plus an optional console handler) with the filter attached.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".printcast", "logs")
_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_REDACTED = "***REDACTED***"

# Patterns that match sensitive values in log messages.
_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r'(api_key["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]&]+)', re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r'((?:access_|refresh_|youtube_)?token["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]&]+)', re.IGNORECASE),
     r"\1" + _REDACTED),
    (re.compile(r'((?:client_)?secret["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}{\]&]+)', re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(X-Api-Key:\s*)(\S+)", re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(Authorization:\s*Bearer\s+)(\S+)", re.IGNORECASE), r"\1" + _REDACTED),
    (re.compile(r"(Bearer\s+)([A-Za-z0-9._\-]{16,})"), r"\1" + _REDACTED),
    # The last path segment of an RTMP ingest address is the stream key.
    (re.compile(r"(rtmps?://[^\s/]+(?:/[^\s/]+)*/)([^\s/\"\x27]+)", re.IGNORECASE), r"\1" + _REDACTED),
]


class ScrubFilter(logging.Filter):
    """Logging filter that redacts secrets from log messages.

    Matches API keys, OAuth access/refresh tokens, client secrets,
    Authorization headers and RTMP stream keys and replaces their values
    with ``***REDACTED***``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg and isinstance(record.msg, str):
            record.msg = scrub(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: scrub(v) if isinstance(v, str) else v for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(scrub(a) if isinstance(a, str) else a for a in record.args)
        return True


def scrub(text: str) -> str:
    """Apply all scrub patterns to *text*."""
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: Optional[str] = None,
    console: bool = False,
) -> str:
    """Configure logging with rotation and secret scrubbing.

    :param log_dir: Directory for log files.  Reads ``PRINTCAST_LOG_DIR``,
        then falls back to ``~/.printcast/logs/``.
    :param max_bytes: Maximum log file size before rotation (default 10 MB).
    :param backup_count: Number of rotated log files to keep (default 5).
    :param level: Log level string.  Reads ``PRINTCAST_LOG_LEVEL``, then
        falls back to ``"INFO"``.
    :param console: Also log to stderr.
    :returns: Path of the log file.
    """
    log_dir = log_dir or os.environ.get("PRINTCAST_LOG_DIR") or _DEFAULT_LOG_DIR
    level = level or os.environ.get("PRINTCAST_LOG_LEVEL") or "INFO"

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "printcast.log")

    log_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)
    scrub_filter = ScrubFilter()

    root = logging.getLogger()
    root.setLevel(log_level)

    # Add rotating file handler if not already present.
    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if console and not any(type(h) is logging.StreamHandler for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(log_level)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    # Install scrub filter on all existing handlers.
    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(scrub_filter)

    # Per-request chatter from urllib3 would drown the poller's own logs.
    logging.getLogger("urllib3").setLevel(max(log_level, logging.WARNING))
    return log_path
