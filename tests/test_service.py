"""Tests for printcast.service — wiring the components from configuration."""

from __future__ import annotations

import json

import pytest
import responses

from conftest import FakeTelemetry, make_state, wait_for
from printcast.broadcast import BroadcastState
from printcast.capture import SnapshotClient
from printcast.config import PrintcastConfig
from printcast.events import EventBus, EventType
from printcast.platforms.oauth import RefreshingToken
from printcast.platforms.youtube import YouTubeLivePlatform
from printcast.printers.base import JobPhase
from printcast.service import PrintcastService


@pytest.fixture
def config(tmp_path) -> PrintcastConfig:
    cfg = PrintcastConfig()
    cfg.printer.host = "http://voron.local"
    cfg.stream.source_url = "http://voron.local/webcam/?action=stream"
    cfg.stream.snapshot_url = "http://voron.local/webcam/?action=snapshot"
    cfg.timelapse.folder = str(tmp_path / "timelapses")
    cfg.timelapse.start_after_layer1 = False
    cfg.broadcast.youtube_token = "ya29.token"
    cfg.broadcast.ingestion_poll_interval = 0.01
    return cfg


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestFromConfig:
    def test_builds_real_collaborators(self, config: PrintcastConfig) -> None:
        service = PrintcastService.from_config(config)
        assert service.timelapse is not None
        assert service.broadcast is not None
        assert isinstance(service.timelapse._frame_source, SnapshotClient)
        assert isinstance(service.broadcast._platform, YouTubeLivePlatform)
        assert service.event_bus is not None

    def test_requires_host(self, config: PrintcastConfig) -> None:
        config.printer.host = ""
        with pytest.raises(ValueError, match="No printer host"):
            PrintcastService.from_config(config)

    def test_requires_token_for_broadcast(self, config: PrintcastConfig) -> None:
        config.broadcast.youtube_token = None
        with pytest.raises(ValueError, match="no YouTube token"):
            PrintcastService.from_config(config)

    def test_token_file_gives_refreshing_token(self, config: PrintcastConfig, tmp_path) -> None:
        token_file = tmp_path / "youtube_token.json"
        token_file.write_text(
            json.dumps({"refresh_token": "1//refresh", "client_id": "cid", "client_secret": "secret"}),
            encoding="utf-8",
        )
        config.broadcast.youtube_token = None
        config.broadcast.youtube_token_file = str(token_file)
        service = PrintcastService.from_config(config)
        assert isinstance(service.broadcast._platform._token, RefreshingToken)

    def test_unreadable_token_file(self, config: PrintcastConfig, tmp_path) -> None:
        config.broadcast.youtube_token_file = str(tmp_path / "absent.json")
        with pytest.raises(ValueError, match="Cannot load YouTube credentials"):
            PrintcastService.from_config(config)

    def test_disabled_features_need_nothing(self, config: PrintcastConfig) -> None:
        config.broadcast.enabled = False
        config.broadcast.youtube_token = None
        config.timelapse.enabled = False
        config.stream.snapshot_url = ""
        service = PrintcastService.from_config(config)
        assert service.timelapse is None
        assert service.broadcast is None

    def test_snapshot_url_required_with_injected_telemetry(self, config: PrintcastConfig) -> None:
        config.stream.snapshot_url = ""
        with pytest.raises(ValueError, match="no snapshot URL"):
            PrintcastService.from_config(config, telemetry=FakeTelemetry())

    def test_source_url_required(self, config: PrintcastConfig, platform) -> None:
        config.stream.source_url = ""
        with pytest.raises(ValueError, match="no camera stream URL"):
            PrintcastService.from_config(config, telemetry=FakeTelemetry(), platform=platform)

    @responses.activate
    def test_discovers_webcam_urls(self, config: PrintcastConfig) -> None:
        config.stream.source_url = ""
        config.stream.snapshot_url = ""
        responses.add(
            responses.GET,
            "http://voron.local/server/webcams/list",
            json={"result": {"webcams": [{"stream_url": "/webcam/?action=stream", "snapshot_url": ""}]}},
        )
        service = PrintcastService.from_config(config)
        assert service.timelapse._frame_source.url == "http://voron.local/webcam/?action=snapshot"
        assert service.broadcast._source_url == "http://voron.local/webcam/?action=stream"


# ---------------------------------------------------------------------------
# Running
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.fixture
    def service(self, config, frame_source, assembler, platform, encoder, event_bus) -> PrintcastService:
        return PrintcastService.from_config(
            config,
            telemetry=FakeTelemetry([make_state(JobPhase.PRINTING, progress=10.0)]),
            frame_source=frame_source,
            assembler=assembler,
            platform=platform,
            encoder=encoder,
            event_bus=event_bus,
        )

    def test_tick_starts_job(self, service: PrintcastService, platform, encoder, frame_source) -> None:
        service.poller.poll_once()

        assert service.orchestrator.active_job is not None
        assert platform.created == ["bc-1"]
        assert encoder.current.source_url == "http://voron.local/webcam/?action=stream"
        assert wait_for(lambda: frame_source.calls >= 1)
        assert wait_for(lambda: service.broadcast.state is BroadcastState.LIVE)
        service.stop()

    def test_status(self, service: PrintcastService) -> None:
        status = service.status()
        assert status["running"] is False
        assert status["printer"] is None
        assert status["timelapse_sessions"] == []
        assert status["broadcast"]["state"] == "not_started"

        service.poller.poll_once()
        status = service.status()
        assert status["telemetry_available"] is True
        assert status["printer"]["filename"] == "benchy.gcode"
        assert status["orchestrator"]["job"]["filename"] == "benchy.gcode"
        assert len(status["timelapse_sessions"]) == 1
        assert status["broadcast"]["broadcast_id"] == "bc-1"
        service.stop()

    def test_start_and_stop(self, service: PrintcastService, platform) -> None:
        service.start()
        assert service.poller.is_running
        assert wait_for(lambda: service.orchestrator.active_job is not None)
        service.stop()
        assert not service.poller.is_running
        assert platform.ended == ["bc-1"]

    def test_stop_keeps_frames_by_default(self, service: PrintcastService, assembler, frame_source) -> None:
        service.poller.poll_once()
        assert wait_for(lambda: frame_source.calls >= 1)
        service.stop()
        assert assembler.calls == []
        assert service.timelapse.active_sessions() == []

    def test_stop_can_finalize(self, service: PrintcastService, assembler, frame_source) -> None:
        service.poller.poll_once()
        assert wait_for(lambda: service.timelapse.active_sessions()[0].frame_count >= 1)
        service.stop(finalize_timelapses=True)
        assert len(assembler.calls) == 1

    def test_status_lists_recent_events(self, service: PrintcastService) -> None:
        service.poller.poll_once()
        events = service.status()["recent_events"]
        types = {e["type"] for e in events}
        assert {"print.started", "timelapse.started", "broadcast.started"} <= types
        assert events[0]["timestamp"] >= events[-1]["timestamp"]
        service.stop()


class TestAlerts:
    @pytest.fixture
    def service(self, config, frame_source, assembler, platform, encoder, event_bus) -> PrintcastService:
        return PrintcastService.from_config(
            config,
            telemetry=FakeTelemetry([make_state(JobPhase.PRINTING, progress=10.0)]),
            frame_source=frame_source,
            assembler=assembler,
            platform=platform,
            encoder=encoder,
            event_bus=event_bus,
        )

    def test_failure_raises_alert_until_recovery(self, service: PrintcastService, event_bus: EventBus) -> None:
        assert service.alerts() == []
        event_bus.publish(EventType.BROADCAST_DEGRADED, {"broadcast_id": "bc-1"}, source="broadcast")
        event_bus.publish(EventType.TIMELAPSE_FAILED, {"job_key": "benchy"}, source="timelapse")
        alerts = {a["type"] for a in service.status()["alerts"]}
        assert alerts == {"broadcast.degraded", "timelapse.failed"}

        event_bus.publish(EventType.BROADCAST_REPAIRED, {"broadcast_id": "bc-1"}, source="broadcast")
        assert [a["type"] for a in service.alerts()] == ["timelapse.failed"]

    def test_stop_with_remote_error_is_an_alert(self, service: PrintcastService, event_bus: EventBus) -> None:
        event_bus.publish(EventType.BROADCAST_STOPPED, {"broadcast_id": "bc-1", "error": "HTTP 500"}, source="broadcast")
        assert [a["type"] for a in service.alerts()] == ["broadcast.stopped"]
        event_bus.publish(EventType.BROADCAST_STOPPED, {"broadcast_id": "bc-2", "error": None}, source="broadcast")
        assert service.alerts() == []

    def test_encoder_launch_failure_reported(self, service: PrintcastService, encoder) -> None:
        encoder.fail_starts = 1
        service.poller.poll_once()
        alerts = service.alerts()
        assert alerts[0]["type"] == "broadcast.failed"
        assert alerts[0]["data"]["stage"] == "encoder"
        service.stop()

    def test_stop_unsubscribes(self, service: PrintcastService, event_bus: EventBus) -> None:
        service.stop()
        event_bus.publish(EventType.TIMELAPSE_FAILED, {"job_key": "x"}, source="timelapse")
        assert service.alerts() == []
