"""Output formatting for the printcast CLI.

Provides both JSON (machine-parseable) and human-readable (Rich) output.
All public functions accept a ``json_mode`` flag:
    - ``True``  → JSON string in the ``{status, data, error}`` envelope
    - ``False`` → Rich-formatted for humans
"""

from __future__ import annotations

import json
import math
import sys
from datetime import datetime
from io import StringIO
from typing import Any, Optional, Union

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

# ---------------------------------------------------------------------------
# Generic helpers
# ---------------------------------------------------------------------------


def format_time(seconds: Optional[Union[int, float]]) -> str:
    """Convert seconds to ``Xh Ym Zs``."""
    if seconds is None or seconds < 0:
        return "N/A"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def format_bytes(size_bytes: Optional[Union[int, float]]) -> str:
    """Convert bytes to ``1.2 MB``."""
    if size_bytes is None or size_bytes < 0:
        return "N/A"
    if size_bytes == 0:
        return "0 B"
    units = ("B", "KB", "MB", "GB", "TB")
    exponent = min(int(math.log(size_bytes, 1024)), len(units) - 1)
    value = size_bytes / (1024**exponent)
    if exponent == 0:
        return f"{int(value)} B"
    return f"{value:.1f} {units[exponent]}"


def progress_bar(completion: Optional[float], width: int = 20) -> str:
    """ASCII progress bar: ``[████████░░░░] 42.3%``."""
    if completion is None:
        completion = 0.0
    completion = max(0.0, min(100.0, completion))
    filled = int(round(width * completion / 100))
    bar = "█" * filled + "░" * (width - filled)
    return f"[{bar}] {completion:.1f}%"


def _format_timestamp(value: Optional[float]) -> str:
    if value is None:
        return ""
    try:
        return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M")
    except (OSError, ValueError, TypeError, OverflowError):
        return str(value)


def _render(renderable: Any) -> str:
    """Render a Rich object to a string."""
    buf = StringIO()
    console = Console(file=buf, force_terminal=sys.stdout.isatty(), width=100)
    console.print(renderable)
    return buf.getvalue().rstrip("\n")


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


def format_response(
    status: str,
    data: Optional[dict[str, Any]] = None,
    error: Optional[dict[str, Any]] = None,
    *,
    json_mode: bool = False,
) -> str:
    """Build a standard ``{status, data, error}`` response."""
    if json_mode:
        envelope: dict[str, Any] = {"status": status}
        if data is not None:
            envelope["data"] = data
        if error is not None:
            envelope["error"] = error
        return json.dumps(envelope, indent=2, sort_keys=False, default=str)

    if status == "error" and error:
        code = error.get("code", "UNKNOWN")
        msg = error.get("message", "An unknown error occurred.")
        t = Text()
        t.append("Error", style="bold red")
        t.append(f" [{code}]: ", style="red")
        t.append(msg)
        return _render(Panel(t, title="Error", border_style="red"))

    if data:
        lines = [f"[bold]{k}:[/bold] {v}" for k, v in data.items()]
        return _render(Panel("\n".join(lines), border_style="green"))

    return f"Status: {status}"


def format_error(
    message: str,
    code: str = "ERROR",
    *,
    json_mode: bool = False,
) -> str:
    """Shortcut for a standard error response."""
    return format_response(
        "error",
        error={"code": code, "message": message},
        json_mode=json_mode,
    )


# ---------------------------------------------------------------------------
# Printer status
# ---------------------------------------------------------------------------


def format_status(state: dict[str, Any], *, json_mode: bool = False) -> str:
    """Format one printer snapshot (``PrinterState.to_dict()``)."""
    if json_mode:
        return format_response("success", data={"printer": state}, json_mode=True)

    phase = state.get("phase", "unknown")
    color = {
        "idle": "green",
        "complete": "green",
        "printing": "yellow",
        "paused": "yellow",
        "error": "red",
        "offline": "red",
    }.get(phase, "white")

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("State", f"[{color}]{phase}[/{color}]")
    if state.get("filename"):
        table.add_row("File", state["filename"])
        table.add_row("Job key", state.get("job_key", ""))
    table.add_row("Progress", progress_bar(state.get("progress")))
    if state.get("current_layer") is not None:
        total = state.get("total_layers")
        table.add_row("Layer", f"{state['current_layer']} / {total if total is not None else '?'}")
    if state.get("remaining_seconds") is not None:
        table.add_row("Time left", format_time(state["remaining_seconds"]))
    return _render(Panel(table, title="Printer Status", border_style="blue"))


# ---------------------------------------------------------------------------
# Timelapses
# ---------------------------------------------------------------------------


def format_timelapses(timelapses: list[dict[str, Any]], *, json_mode: bool = False) -> str:
    """Format ``TimelapseInfo.to_dict()`` entries."""
    if json_mode:
        return format_response(
            "success",
            data={"timelapses": timelapses, "count": len(timelapses)},
            json_mode=True,
        )

    if not timelapses:
        return _render(Panel("No timelapses found.", title="Timelapses", border_style="yellow"))

    table = Table(title="Timelapses", border_style="blue")
    table.add_column("Name", style="bold")
    table.add_column("Frames", justify="right")
    table.add_column("Video")
    table.add_column("Created")
    for info in timelapses:
        name = info.get("name", "")
        if info.get("active"):
            name += " [yellow](recording)[/yellow]"
        table.add_row(
            name,
            str(info.get("frame_count", 0)),
            "yes" if info.get("video_path") else "-",
            _format_timestamp(info.get("created_at")),
        )
    return _render(table)


# ---------------------------------------------------------------------------
# Files / config
# ---------------------------------------------------------------------------


def format_saved(path: str, size_bytes: int, *, json_mode: bool = False, label: str = "Saved") -> str:
    """Confirmation for a file written by the CLI."""
    data = {"path": path, "size_bytes": size_bytes}
    if json_mode:
        return format_response("success", data=data, json_mode=True)
    return _render(
        Panel(f"[bold]{label}:[/bold] {path} ({format_bytes(size_bytes)})", border_style="green")
    )


def format_config(config: dict[str, Any], *, source: Optional[str] = None, json_mode: bool = False) -> str:
    """Format the effective configuration (already redacted)."""
    if json_mode:
        return format_response("success", data={"source": source, "config": config}, json_mode=True)

    table = Table(title=f"Configuration ({source or 'defaults'})", border_style="blue")
    table.add_column("Setting", style="bold cyan", no_wrap=True)
    table.add_column("Value")
    for section, values in config.items():
        for key, value in values.items():
            table.add_row(f"{section}.{key}", "" if value is None else str(value))
    return _render(table)
