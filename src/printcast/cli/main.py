"""printcast CLI — run the orchestrator and inspect printer, camera and timelapses.

Every inspection subcommand supports ``--json`` for machine-parseable
output in a ``{status, data, error}`` envelope.  ``printcast run`` starts
the long-running service in the foreground.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, NoReturn

import click

from printcast.capture import SnapshotClient
from printcast.cli.output import (
    format_config,
    format_error,
    format_saved,
    format_status,
    format_timelapses,
)
from printcast.config import PrintcastConfig, load_config
from printcast.errors import AssemblyError, BroadcastError, CaptureError, TelemetryError
from printcast.log_config import configure_logging
from printcast.printers.moonraker import MoonrakerTelemetry
from printcast.service import PrintcastService
from printcast.timelapse import scan_timelapses
from printcast.video import VideoAssembler

logger = logging.getLogger(__name__)


def _fail(message: str, code: str, json_mode: bool) -> NoReturn:
    click.echo(format_error(message, code=code, json_mode=json_mode))
    sys.exit(1)


def _load_config(ctx: click.Context, json_mode: bool = False) -> PrintcastConfig:
    try:
        return load_config(ctx.obj.get("config_path"))
    except ValueError as exc:
        _fail(str(exc), "CONFIG_ERROR", json_mode)


def _repair_broadcast(service: PrintcastService) -> None:
    """Force a health check and encoder relaunch on the active broadcast."""
    if service.broadcast is None or not service.broadcast.is_active:
        logger.info("Broadcast repair requested but no broadcast is active")
        return
    try:
        healthy = service.broadcast.ensure_healthy()
    except BroadcastError as exc:
        logger.warning("Broadcast repair failed: %s", exc)
        return
    logger.info("Broadcast repair requested: encoder %s", "healthy" if healthy else "still down, retrying")


def _apply_privacy(service: PrintcastService, config_path: str | None) -> None:
    """Re-read ``broadcast.privacy`` and apply it to the active broadcast."""
    if service.broadcast is None or not service.broadcast.is_active:
        logger.info("Config reload requested but no broadcast is active")
        return
    try:
        wanted = load_config(config_path).broadcast.privacy
    except ValueError as exc:
        logger.warning("Config reload failed, privacy unchanged: %s", exc)
        return
    try:
        if service.broadcast.get_privacy() == wanted:
            logger.info("Broadcast privacy already %s", wanted)
            return
        service.broadcast.set_privacy(wanted)
    except BroadcastError as exc:
        logger.warning("Could not change broadcast privacy: %s", exc)
        return
    logger.info("Broadcast privacy set to %s", wanted)


def _telemetry(config: PrintcastConfig, json_mode: bool) -> MoonrakerTelemetry:
    if not config.printer.host:
        _fail(
            "No printer host configured. Set printer.host in the config file, "
            "export PRINTCAST_PRINTER_HOST, or pass --host.",
            "CONFIG_ERROR",
            json_mode,
        )
    return MoonrakerTelemetry(
        config.printer.host,
        api_key=config.printer.api_key,
        timeout=config.poller.timeout,
        retries=config.printer.retries,
        verify_ssl=config.printer.verify_ssl,
    )


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    envvar="PRINTCAST_CONFIG",
    type=click.Path(dir_okay=False),
    help="Config file (default ~/.printcast/config.yaml).",
)
@click.version_option(package_name="printcast")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """printcast — live broadcasts and timelapses driven by your printer."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", default=None, help="Moonraker URL (overrides config).")
@click.option("--source", "source_url", default=None, help="Camera stream URL for the broadcast.")
@click.option("--snapshot-url", default=None, help="Camera snapshot URL for timelapse frames.")
@click.option("--broadcast/--no-broadcast", "broadcast", default=None, help="Auto-broadcast each print.")
@click.option("--timelapse/--no-timelapse", "timelapse", default=None, help="Record a timelapse of each print.")
@click.option("--finalize-on-exit", is_flag=True, help="Assemble open timelapses when stopping.")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level.")
@click.pass_context
def run(
    ctx: click.Context,
    host: str | None,
    source_url: str | None,
    snapshot_url: str | None,
    broadcast: bool | None,
    timelapse: bool | None,
    finalize_on_exit: bool,
    verbose: bool,
) -> None:
    """Watch the printer and run timelapses and broadcasts until interrupted.

    Send SIGUSR1 to force a broadcast health check and encoder relaunch,
    and SIGHUP to apply the config file's broadcast privacy to the live
    broadcast.
    """
    config = _load_config(ctx)
    config.override("printer", host=host)
    config.override("stream", source_url=source_url, snapshot_url=snapshot_url)
    config.override("broadcast", enabled=broadcast)
    config.override("timelapse", enabled=timelapse)

    log_path = configure_logging(
        config.logging.dir or None,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
        level="DEBUG" if verbose else config.logging.level,
        console=True,
    )
    logger.info("Logging to %s", log_path)

    try:
        service = PrintcastService.from_config(config)
    except ValueError as exc:
        _fail(str(exc), "CONFIG_ERROR", False)

    stop_requested = threading.Event()
    repair_requested = threading.Event()
    reload_requested = threading.Event()

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal %d, shutting down", signum)
        stop_requested.set()

    def _on_repair_signal(signum: int, _frame: Any) -> None:
        repair_requested.set()

    def _on_reload_signal(signum: int, _frame: Any) -> None:
        reload_requested.set()

    signal.signal(signal.SIGTERM, _on_signal)
    if hasattr(signal, "SIGUSR1"):
        signal.signal(signal.SIGUSR1, _on_repair_signal)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, _on_reload_signal)
    service.start()
    try:
        while True:
            # Both take manager locks and make HTTP calls; never run them in a signal handler.
            if repair_requested.is_set():
                repair_requested.clear()
                _repair_broadcast(service)
            if reload_requested.is_set():
                reload_requested.clear()
                _apply_privacy(service, ctx.obj.get("config_path"))
            if stop_requested.wait(1.0):
                break
    except KeyboardInterrupt:
        click.echo("\nInterrupted.")
    finally:
        service.stop(finalize_timelapses=finalize_on_exit)


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", default=None, help="Moonraker URL (overrides config).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def status(ctx: click.Context, host: str | None, json_mode: bool) -> None:
    """Query the printer once and show its job state."""
    config = _load_config(ctx, json_mode).override("printer", host=host)
    telemetry = _telemetry(config, json_mode)
    try:
        state = telemetry.fetch_state()
    except TelemetryError as exc:
        _fail(
            f"Failed to get printer status: {exc}. Verify the printer is online and the API key is correct.",
            "TELEMETRY_ERROR",
            json_mode,
        )
    click.echo(format_status(state.to_dict(), json_mode=json_mode))


# ---------------------------------------------------------------------------
# snapshot
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("output", type=click.Path(dir_okay=False))
@click.option("--url", "snapshot_url", default=None, help="Snapshot URL (default: config or discovered).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def snapshot(ctx: click.Context, output: str, snapshot_url: str | None, json_mode: bool) -> None:
    """Capture one camera frame to OUTPUT."""
    config = _load_config(ctx, json_mode)
    url = snapshot_url or config.stream.snapshot_url
    if not url:
        try:
            url = _telemetry(config, json_mode).get_webcam_snapshot_url() or ""
        except TelemetryError as exc:
            _fail(f"Could not discover a webcam: {exc}", "TELEMETRY_ERROR", json_mode)
    if not url:
        _fail("No snapshot URL configured and no webcam found on the printer.", "NO_CAMERA", json_mode)

    try:
        frame = SnapshotClient(
            url,
            timeout=config.timelapse.capture_timeout,
            max_frame_size=config.stream.max_frame_size,
        ).capture_frame()
        path = Path(output).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(frame)
    except CaptureError as exc:
        _fail(f"Snapshot failed: {exc}", "CAPTURE_ERROR", json_mode)
    except OSError as exc:
        _fail(f"Could not write {output}: {exc}", "WRITE_ERROR", json_mode)
    click.echo(format_saved(str(path), len(frame), json_mode=json_mode))


# ---------------------------------------------------------------------------
# timelapses
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--folder", default=None, help="Timelapse root folder (overrides config).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def timelapses(ctx: click.Context, folder: str | None, json_mode: bool) -> None:
    """List recorded timelapses."""
    config = _load_config(ctx, json_mode)
    root = folder or config.timelapse.folder
    try:
        infos = scan_timelapses(root)
    except OSError as exc:
        _fail(f"Could not read {root}: {exc}", "READ_ERROR", json_mode)
    click.echo(format_timelapses([i.to_dict() for i in infos], json_mode=json_mode))


# ---------------------------------------------------------------------------
# assemble
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("folder", type=click.Path(exists=True, file_okay=False))
@click.option("--output", "-o", default=None, help="Output MP4 (default: <folder>/<folder>.mp4).")
@click.option("--fps", default=None, type=int, help="Frame rate (default: timelapse.fps).")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def assemble(ctx: click.Context, folder: str, output: str | None, fps: int | None, json_mode: bool) -> None:
    """Assemble the frames in FOLDER into a video."""
    config = _load_config(ctx, json_mode)
    frames_dir = Path(folder)
    target = Path(output) if output else frames_dir / f"{frames_dir.resolve().name}.mp4"
    try:
        video_path = VideoAssembler(config.stream.ffmpeg_path or None).assemble(
            frames_dir,
            target,
            fps=fps or config.timelapse.fps,
        )
    except AssemblyError as exc:
        _fail(f"Assembly failed: {exc}", "ASSEMBLY_ERROR", json_mode)
    click.echo(format_saved(video_path, Path(video_path).stat().st_size, json_mode=json_mode, label="Video"))


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@cli.command("config")
@click.option("--json", "json_mode", is_flag=True, help="Output JSON.")
@click.pass_context
def show_config(ctx: click.Context, json_mode: bool) -> None:
    """Show the effective configuration with secrets redacted."""
    config = _load_config(ctx, json_mode)
    click.echo(format_config(config.to_dict(redact=True), source=config.source_path, json_mode=json_mode))
    problems = config.validate()
    if problems and not json_mode:
        for problem in problems:
            click.echo(click.style(f"  Warning: {problem}", fg="yellow"), err=True)


if __name__ == "__main__":
    cli()
