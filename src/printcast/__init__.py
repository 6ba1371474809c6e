"""printcast - print-driven live broadcasts and timelapses for Klipper printers."""

from __future__ import annotations

import logging
import os
from importlib.metadata import PackageNotFoundError, version

_logger = logging.getLogger(__name__)

try:
    __version__ = version("printcast")
except PackageNotFoundError:
    __version__ = "unknown"


def parse_int_env(name: str, default: int) -> int:
    """Integer from environment variable *name*; *default* when unset or invalid."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        _logger.warning("Ignoring %s=%r: not an integer, using %d", name, raw, default)
        return default
