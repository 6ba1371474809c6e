"""Composition root — builds and runs the poller, orchestrator and managers.

:meth:`PrintcastService.from_config` turns a :class:`PrintcastConfig`
into concrete collaborators (Moonraker telemetry, snapshot capture,
ffmpeg assembler and encoder, YouTube Live platform with a refreshing
OAuth token) and wires the poller to the orchestrator.  Tests and
embedders can pass their own collaborators instead.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from printcast.broadcast import BroadcastManager
from printcast.capture import SnapshotClient
from printcast.config import PrintcastConfig
from printcast.encoder import FfmpegEncoder
from printcast.errors import TelemetryError
from printcast.events import Event, EventBus, EventType
from printcast.orchestrator import PrintOrchestrator
from printcast.platforms.base import BroadcastPlatform
from printcast.platforms.oauth import RefreshingToken
from printcast.platforms.youtube import TokenProvider, YouTubeLivePlatform
from printcast.poller import StatePoller
from printcast.printers.base import TelemetrySource
from printcast.printers.moonraker import MoonrakerTelemetry
from printcast.timelapse import Assembler, FrameSource, TimelapseManager
from printcast.video import VideoAssembler

logger = logging.getLogger(__name__)

# Events that open an alert for their area, and those that close it.
_FAILURE_EVENTS = frozenset({EventType.BROADCAST_FAILED, EventType.BROADCAST_DEGRADED, EventType.TIMELAPSE_FAILED})
_RECOVERY_EVENTS = frozenset(
    {EventType.BROADCAST_LIVE, EventType.BROADCAST_REPAIRED, EventType.BROADCAST_STOPPED, EventType.TIMELAPSE_FINALIZED}
)
_RECENT_EVENTS_LIMIT = 20


def _discover(label: str, lookup: Any) -> str:
    try:
        url = lookup()
    except TelemetryError as exc:
        logger.warning("Could not discover webcam %s URL: %s", label, exc)
        return ""
    if url:
        logger.info("Discovered webcam %s URL: %s", label, url)
    return url or ""


class PrintcastService:
    """Owns the running printcast components.

    Args:
        poller: State poller driving the orchestrator.
        orchestrator: Decision layer; attached to *poller* here.
        timelapse: Timelapse manager, if timelapses are enabled.
        broadcast: Broadcast manager, if broadcasting is enabled.
        event_bus: Bus shared by every component.
    """

    def __init__(
        self,
        poller: StatePoller,
        orchestrator: PrintOrchestrator,
        *,
        timelapse: TimelapseManager | None = None,
        broadcast: BroadcastManager | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.poller = poller
        self.orchestrator = orchestrator
        self.timelapse = timelapse
        self.broadcast = broadcast
        self.event_bus = event_bus
        self._alerts_lock = threading.Lock()
        self._alerts: dict[str, Event] = {}
        orchestrator.attach(poller)
        if event_bus is not None:
            event_bus.subscribe(None, self._on_event)

    @classmethod
    def from_config(
        cls,
        config: PrintcastConfig,
        *,
        telemetry: TelemetrySource | None = None,
        frame_source: FrameSource | None = None,
        assembler: Assembler | None = None,
        platform: BroadcastPlatform | None = None,
        encoder: FfmpegEncoder | None = None,
        event_bus: EventBus | None = None,
    ) -> PrintcastService:
        """Build every collaborator from *config*.

        Webcam URLs that are not configured are discovered from the
        printer's webcam list.

        Raises:
            ValueError: The configuration cannot produce a working service.
        """
        bus = event_bus or EventBus()

        if telemetry is None:
            if not config.printer.host:
                raise ValueError(
                    "No printer host configured. Set printer.host in the config file, "
                    "export PRINTCAST_PRINTER_HOST, or pass --host."
                )
            telemetry = MoonrakerTelemetry(
                config.printer.host,
                api_key=config.printer.api_key,
                timeout=config.poller.timeout,
                retries=config.printer.retries,
                verify_ssl=config.printer.verify_ssl,
            )

        poller = StatePoller(
            telemetry,
            interval=config.poller.interval,
            fast_interval=config.poller.fast_interval,
            timeout=config.poller.timeout,
            progress_noise=config.poller.progress_noise,
            event_bus=bus,
        )

        timelapse: TimelapseManager | None = None
        if config.timelapse.enabled:
            if frame_source is None:
                snapshot_url = config.stream.snapshot_url
                if not snapshot_url and isinstance(telemetry, MoonrakerTelemetry):
                    snapshot_url = _discover("snapshot", telemetry.get_webcam_snapshot_url)
                if not snapshot_url:
                    raise ValueError(
                        "Timelapses are enabled but no snapshot URL is configured or discoverable. "
                        "Set stream.snapshot_url or PRINTCAST_SNAPSHOT_URL, or disable timelapse.enabled."
                    )
                frame_source = SnapshotClient(
                    snapshot_url,
                    timeout=config.timelapse.capture_timeout,
                    max_frame_size=config.stream.max_frame_size,
                )
            timelapse = TimelapseManager(
                frame_source,
                assembler or VideoAssembler(config.stream.ffmpeg_path or None),
                Path(config.timelapse.folder).expanduser(),
                period=config.timelapse.period,
                fps=config.timelapse.fps,
                last_layer_offset=config.timelapse.last_layer_offset,
                last_layer_remaining_seconds=config.timelapse.last_layer_remaining_seconds,
                last_layer_progress_percent=config.timelapse.last_layer_progress_percent,
                start_after_layer1=config.timelapse.start_after_layer1,
                capture_timeout=config.timelapse.capture_timeout,
                event_bus=bus,
            )

        broadcast: BroadcastManager | None = None
        if config.broadcast.enabled:
            if platform is None:
                token: TokenProvider = config.broadcast.youtube_token
                if config.broadcast.youtube_token_file:
                    token = RefreshingToken.from_file(config.broadcast.youtube_token_file)
                if not token:
                    raise ValueError(
                        "Auto-broadcast is enabled but no YouTube token is configured. "
                        "Set broadcast.youtube_token_file or PRINTCAST_YOUTUBE_TOKEN_FILE for a refreshable "
                        "login, or broadcast.youtube_token, or disable broadcast.enabled."
                    )
                platform = YouTubeLivePlatform(
                    token,
                    title=config.broadcast.title,
                    description=config.broadcast.description,
                    privacy=config.broadcast.privacy,
                )
            source_url = config.stream.source_url
            if not source_url and isinstance(telemetry, MoonrakerTelemetry):
                source_url = _discover("stream", telemetry.get_webcam_stream_url)
            if not source_url:
                raise ValueError(
                    "Auto-broadcast is enabled but no camera stream URL is configured or discoverable. "
                    "Set stream.source_url or PRINTCAST_STREAM_SOURCE."
                )
            broadcast = BroadcastManager(
                platform,
                encoder
                or FfmpegEncoder(
                    config.stream.ffmpeg_path or None,
                    fps=config.stream.fps,
                    bitrate_kbps=config.stream.bitrate_kbps,
                    width=config.stream.width,
                    height=config.stream.height,
                ),
                source_url,
                health_interval=config.broadcast.health_interval,
                failure_threshold=config.broadcast.health_failure_threshold,
                ingestion_timeout=config.broadcast.ingestion_timeout,
                ingestion_poll_interval=config.broadcast.ingestion_poll_interval,
                stop_timeout=config.broadcast.stop_timeout,
                event_bus=bus,
            )

        orchestrator = PrintOrchestrator(
            timelapse,
            broadcast,
            timelapse_enabled=config.timelapse.enabled,
            broadcast_enabled=config.broadcast.enabled,
            end_stream_after_print=config.broadcast.end_stream_after_print,
            offline_grace_period=config.orchestrator.offline_grace_period,
            idle_finalize_delay=config.orchestrator.idle_finalize_delay,
            event_bus=bus,
        )
        return cls(poller, orchestrator, timelapse=timelapse, broadcast=broadcast, event_bus=bus)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start polling; everything else is driven from poll ticks."""
        logger.info(
            "Starting printcast (timelapse=%s, broadcast=%s)",
            self.timelapse is not None,
            self.broadcast is not None,
        )
        self.poller.start()

    def stop(self, *, finalize_timelapses: bool = False) -> None:
        """Stop polling, capture timers and the health monitor.

        An active broadcast is ended so that no encoder outlives the
        process.  Open timelapse sessions are assembled only when
        *finalize_timelapses* is set; otherwise their frames stay on disk.
        """
        self.poller.stop()
        if self.timelapse is not None:
            self.timelapse.shutdown(finalize=finalize_timelapses)
        if self.broadcast is not None:
            self.broadcast.shutdown()
        if self.event_bus is not None:
            self.event_bus.unsubscribe(None, self._on_event)
        logger.info("printcast stopped")

    # ------------------------------------------------------------------
    # Alerts / status
    # ------------------------------------------------------------------

    def _on_event(self, event: Event) -> None:
        area = event.type.area
        failed = event.type in _FAILURE_EVENTS or (
            event.type is EventType.BROADCAST_STOPPED and event.data.get("error")
        )
        with self._alerts_lock:
            if failed:
                if area not in self._alerts:
                    logger.warning("Alert raised for %s: %s", area, event.type.value)
                self._alerts[area] = event
            elif event.type in _RECOVERY_EVENTS and self._alerts.pop(area, None) is not None:
                logger.info("Alert cleared for %s by %s", area, event.type.value)

    def alerts(self) -> list[dict[str, Any]]:
        """Latest unresolved failure per area (``broadcast``, ``timelapse``)."""
        with self._alerts_lock:
            return [e.to_dict() for e in self._alerts.values()]

    def status(self) -> dict[str, Any]:
        last = self.poller.last_state
        recent = self.event_bus.recent_events(limit=_RECENT_EVENTS_LIMIT) if self.event_bus else []
        return {
            "running": self.poller.is_running,
            "telemetry_available": self.poller.telemetry_available,
            "printer": last.to_dict() if last else None,
            "orchestrator": self.orchestrator.status(),
            "timelapse_sessions": [s.to_dict() for s in self.timelapse.active_sessions()] if self.timelapse else [],
            "broadcast": self.broadcast.status().to_dict() if self.broadcast else None,
            "alerts": self.alerts(),
            "recent_events": [e.to_dict() for e in recent],
        }
