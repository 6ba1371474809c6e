"""Tests for printcast.broadcast — lifecycle, ingestion wait and encoder repair.

The health monitor runs on a long interval so tests drive
:meth:`BroadcastManager.check_health` directly; the ingestion waiter runs
for real against the fake platform.
"""

from __future__ import annotations

import threading

import pytest

from conftest import FakeEncoder, FakePlatform, wait_for
from printcast.broadcast import BroadcastManager, BroadcastState
from printcast.errors import (
    BroadcastAlreadyActiveError,
    BroadcastAuthError,
    BroadcastError,
    BroadcastNotActiveError,
    EncoderError,
)
from printcast.events import EventBus, EventType

SOURCE = "http://cam.local/webcam/?action=stream"


def _manager(platform: FakePlatform, encoder: FakeEncoder, event_bus: EventBus | None = None, **kwargs) -> BroadcastManager:
    kwargs.setdefault("health_interval", 3600)
    kwargs.setdefault("failure_threshold", 3)
    kwargs.setdefault("ingestion_timeout", 5)
    kwargs.setdefault("ingestion_poll_interval", 0.01)
    kwargs.setdefault("stop_timeout", 1)
    return BroadcastManager(platform, encoder, SOURCE, event_bus=event_bus, **kwargs)


@pytest.fixture()
def manager(platform: FakePlatform, encoder: FakeEncoder, event_bus: EventBus):
    mgr = _manager(platform, encoder, event_bus)
    yield mgr
    mgr.shutdown()


def _go_live(manager: BroadcastManager) -> str:
    broadcast_id = manager.start_broadcast()
    assert wait_for(lambda: manager.state is BroadcastState.LIVE)
    return broadcast_id


def _types(event_bus: EventBus) -> list[EventType]:
    return [e.type for e in reversed(event_bus.recent_events(limit=100))]


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


class TestStart:
    def test_initial_state(self, manager: BroadcastManager) -> None:
        assert manager.state is BroadcastState.NOT_STARTED
        assert not manager.is_active
        assert manager.broadcast_id is None

    def test_start_goes_live(self, manager: BroadcastManager, encoder: FakeEncoder, event_bus: EventBus) -> None:
        broadcast_id = _go_live(manager)
        assert broadcast_id == "bc-1"
        assert manager.is_active
        assert encoder.current.ingest_address == "rtmp://ingest.example/live2/key-bc-1"
        assert encoder.current.source_url == SOURCE
        session = manager.session
        assert session.went_live and not session.waiting_for_ingestion
        # The waiter thread may report LIVE before start_broadcast publishes STARTED.
        assert wait_for(
            lambda: sorted(t.value for t in _types(event_bus)) == ["broadcast.live", "broadcast.started"]
        )

    def test_second_start_rejected(self, manager: BroadcastManager, platform: FakePlatform) -> None:
        manager.start_broadcast()
        with pytest.raises(BroadcastAlreadyActiveError):
            manager.start_broadcast()
        assert platform.created == ["bc-1"]

    def test_create_failure_returns_to_not_started(
        self, manager: BroadcastManager, platform: FakePlatform, encoder: FakeEncoder, event_bus: EventBus
    ) -> None:
        platform.create_error = BroadcastAuthError("token expired", status_code=401)
        with pytest.raises(BroadcastAuthError):
            manager.start_broadcast()
        assert manager.state is BroadcastState.NOT_STARTED
        assert not manager.is_active
        assert encoder.handles == []
        failed = event_bus.recent_events(EventType.BROADCAST_FAILED)
        assert failed[0].data["stage"] == "create"

        platform.create_error = None
        assert manager.start_broadcast() == "bc-1"

    def test_encoder_failure_keeps_identity(
        self, manager: BroadcastManager, platform: FakePlatform, encoder: FakeEncoder
    ) -> None:
        encoder.fail_starts = 1
        with pytest.raises(EncoderError):
            manager.start_broadcast()
        assert manager.state is BroadcastState.DEGRADED
        assert manager.broadcast_id == "bc-1"
        assert manager.is_active
        assert "Failed to launch" in manager.status().last_error

        assert manager.stop_broadcast()
        assert platform.ended == ["bc-1"]
        assert manager.state is BroadcastState.STOPPED

    def test_failed_launch_retried_by_health_monitor(self, platform: FakePlatform, encoder: FakeEncoder) -> None:
        encoder.fail_starts = 1
        mgr = _manager(platform, encoder, health_interval=0.02, failure_threshold=1)
        try:
            with pytest.raises(EncoderError):
                mgr.start_broadcast()
            assert wait_for(lambda: len(encoder.handles) == 1)
            assert wait_for(lambda: mgr.state is BroadcastState.LIVE)
            assert mgr.broadcast_id == "bc-1"
            assert mgr.status().repairs == 1
            assert encoder.current.ingest_address == "rtmp://ingest.example/live2/key-bc-1"
        finally:
            mgr.shutdown()

    def test_restart_after_stop_creates_new_broadcast(self, manager: BroadcastManager) -> None:
        manager.start_broadcast()
        manager.stop_broadcast()
        assert manager.start_broadcast() == "bc-2"


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class TestIngestion:
    def test_waits_until_platform_ready(self, manager: BroadcastManager, platform: FakePlatform) -> None:
        platform.ingestion_ready = False
        manager.start_broadcast()
        assert wait_for(lambda: platform.transitions >= 3)
        assert manager.state is BroadcastState.WAITING_FOR_INGESTION
        assert manager.status().waiting_for_ingestion

        platform.ingestion_ready = True
        assert wait_for(lambda: manager.state is BroadcastState.LIVE)

    def test_timeout_then_ensure_healthy_retries(
        self, platform: FakePlatform, encoder: FakeEncoder, event_bus: EventBus
    ) -> None:
        platform.ingestion_ready = False
        mgr = _manager(platform, encoder, event_bus, ingestion_timeout=0.05)
        try:
            mgr.start_broadcast()
            assert wait_for(lambda: not mgr.status().waiting_for_ingestion)
            assert mgr.state is BroadcastState.WAITING_FOR_INGESTION
            assert "ingestion not active" in mgr.status().last_error
            failed = event_bus.recent_events(EventType.BROADCAST_FAILED)
            assert failed[0].data["stage"] == "ingestion"

            platform.ingestion_ready = True
            assert mgr.ensure_healthy()
            assert wait_for(lambda: mgr.state is BroadcastState.LIVE)
        finally:
            mgr.shutdown()

    def test_transition_errors_are_retried(self, manager: BroadcastManager, platform: FakePlatform) -> None:
        outcomes = iter([BroadcastError("backend error", status_code=500)])

        def flaky(broadcast_id: str) -> bool:
            platform.transitions += 1
            for exc in outcomes:
                raise exc
            return True

        platform.transition_to_live = flaky
        manager.start_broadcast()
        assert wait_for(lambda: manager.state is BroadcastState.LIVE)
        assert platform.transitions == 2


# ---------------------------------------------------------------------------
# Health / repair
# ---------------------------------------------------------------------------


class TestHealth:
    def test_alive_encoder_is_healthy(self, manager: BroadcastManager) -> None:
        _go_live(manager)
        assert manager.check_health()
        assert manager.status().failure_count == 0

    def test_no_broadcast_is_healthy(self, manager: BroadcastManager) -> None:
        assert manager.check_health()

    def test_repair_after_threshold(
        self, manager: BroadcastManager, encoder: FakeEncoder, event_bus: EventBus
    ) -> None:
        broadcast_id = _go_live(manager)
        crashed = encoder.current
        crashed.alive = False

        assert not manager.check_health()
        assert manager.state is BroadcastState.DEGRADED
        assert not manager.check_health()
        assert len(encoder.handles) == 1

        assert not manager.check_health()
        assert len(encoder.handles) == 2
        replacement = encoder.current
        assert replacement.ingest_address == crashed.ingest_address
        assert crashed.stopped
        assert manager.broadcast_id == broadcast_id
        assert manager.state is BroadcastState.LIVE
        status = manager.status()
        assert status.repairs == 1
        assert status.failure_count == 0
        assert status.encoder_pid == replacement.pid

        types = _types(event_bus)
        assert types.count(EventType.BROADCAST_DEGRADED) == 1
        assert types.count(EventType.BROADCAST_REPAIRED) == 1

    def test_recovery_without_repair(self, manager: BroadcastManager, encoder: FakeEncoder) -> None:
        _go_live(manager)
        encoder.current.alive = False
        manager.check_health()
        assert manager.state is BroadcastState.DEGRADED

        encoder.current.alive = True
        assert manager.check_health()
        assert manager.state is BroadcastState.LIVE
        assert manager.status().failure_count == 0
        assert len(encoder.handles) == 1

    def test_failed_repair_retried_next_tick(
        self, platform: FakePlatform, encoder: FakeEncoder
    ) -> None:
        mgr = _manager(platform, encoder, failure_threshold=1)
        try:
            _go_live(mgr)
            encoder.current.alive = False
            encoder.fail_starts = 1

            mgr.check_health()
            assert mgr.state is BroadcastState.DEGRADED
            assert mgr.status().repairs == 0
            assert "Failed to launch" in mgr.status().last_error

            mgr.check_health()
            assert mgr.state is BroadcastState.LIVE
            assert mgr.status().repairs == 1
            assert mgr.status().last_error is None
        finally:
            mgr.shutdown()

    def test_repair_before_live_keeps_waiting(self, manager: BroadcastManager, platform: FakePlatform, encoder: FakeEncoder) -> None:
        platform.ingestion_ready = False
        manager.start_broadcast()
        encoder.current.alive = False
        for _ in range(3):
            manager.check_health()
        assert manager.status().repairs == 1
        assert manager.state is BroadcastState.WAITING_FOR_INGESTION

    def test_ensure_healthy_repairs_immediately(self, manager: BroadcastManager, encoder: FakeEncoder) -> None:
        _go_live(manager)
        encoder.current.alive = False
        assert manager.ensure_healthy()
        assert manager.status().repairs == 1
        assert len(encoder.handles) == 2

    def test_ensure_healthy_without_broadcast(self, manager: BroadcastManager) -> None:
        with pytest.raises(BroadcastNotActiveError):
            manager.ensure_healthy()

    def test_monitor_thread_repairs(self, platform: FakePlatform, encoder: FakeEncoder) -> None:
        mgr = _manager(platform, encoder, health_interval=0.02, failure_threshold=1)
        try:
            _go_live(mgr)
            encoder.current.alive = False
            assert wait_for(lambda: mgr.status().repairs >= 1)
            assert mgr.broadcast_id == "bc-1"
        finally:
            mgr.shutdown()


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------


class TestStop:
    def test_stop(self, manager: BroadcastManager, platform: FakePlatform, encoder: FakeEncoder, event_bus: EventBus) -> None:
        _go_live(manager)
        assert manager.stop_broadcast()
        assert encoder.current.stopped
        assert platform.ended == ["bc-1"]
        assert manager.state is BroadcastState.STOPPED
        assert not manager.is_active
        stopped = event_bus.recent_events(EventType.BROADCAST_STOPPED)
        assert stopped[0].data["broadcast_id"] == "bc-1"

    def test_stop_is_idempotent(self, manager: BroadcastManager, platform: FakePlatform) -> None:
        assert not manager.stop_broadcast()
        manager.start_broadcast()
        assert manager.stop_broadcast()
        assert not manager.stop_broadcast()
        assert platform.ended == ["bc-1"]

    def test_remote_end_failure_still_clears_identity(
        self, manager: BroadcastManager, platform: FakePlatform, encoder: FakeEncoder
    ) -> None:
        manager.start_broadcast()
        platform.end_error = BroadcastError("backend error", status_code=500)
        with pytest.raises(BroadcastError):
            manager.stop_broadcast()
        assert encoder.current.stopped
        assert not manager.is_active
        assert manager.state is BroadcastState.STOPPED

    def test_shutdown_logs_instead_of_raising(self, manager: BroadcastManager, platform: FakePlatform) -> None:
        manager.start_broadcast()
        platform.end_error = BroadcastError("backend error", status_code=500)
        manager.shutdown()
        assert not manager.is_active

    def test_health_check_after_stop_does_nothing(self, manager: BroadcastManager, encoder: FakeEncoder) -> None:
        manager.start_broadcast()
        manager.stop_broadcast()
        assert manager.check_health(force_repair=True)
        assert len(encoder.handles) == 1


# ---------------------------------------------------------------------------
# Stop racing start
# ---------------------------------------------------------------------------


class _SlowEncoder(FakeEncoder):
    """Blocks inside ``start`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def start(self, ingest_address: str, source_url: str):
        self.entered.set()
        self.release.wait(5)
        return super().start(ingest_address, source_url)


class _SlowPlatform(FakePlatform):
    """Blocks inside ``create_broadcast`` until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def create_broadcast(self):
        self.entered.set()
        self.release.wait(5)
        return super().create_broadcast()


def _start_in_thread(manager: BroadcastManager) -> tuple[threading.Thread, list[Exception]]:
    errors: list[Exception] = []

    def run() -> None:
        try:
            manager.start_broadcast()
        except BroadcastError as exc:
            errors.append(exc)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread, errors


class TestStopDuringStart:
    def test_stop_while_encoder_launches(self, platform: FakePlatform, event_bus: EventBus) -> None:
        encoder = _SlowEncoder()
        mgr = _manager(platform, encoder, event_bus)
        try:
            thread, errors = _start_in_thread(mgr)
            assert encoder.entered.wait(2)
            assert mgr.stop_broadcast()
            assert platform.ended == ["bc-1"]

            encoder.release.set()
            thread.join(2)
            assert not thread.is_alive()
            assert isinstance(errors[0], BroadcastNotActiveError)
            launched = encoder.current
            assert launched.stopped and not launched.alive
            assert mgr.state is BroadcastState.STOPPED
            assert not mgr.is_active
            assert platform.transitions == 0
            assert EventType.BROADCAST_STARTED not in _types(event_bus)
        finally:
            encoder.release.set()
            mgr.shutdown()

    def test_stop_while_create_in_flight(self, encoder: FakeEncoder, event_bus: EventBus) -> None:
        platform = _SlowPlatform()
        mgr = _manager(platform, encoder, event_bus)
        try:
            thread, errors = _start_in_thread(mgr)
            assert platform.entered.wait(2)
            assert mgr.stop_broadcast()
            assert not mgr.stop_broadcast()

            platform.release.set()
            thread.join(2)
            assert not thread.is_alive()
            assert isinstance(errors[0], BroadcastNotActiveError)
            assert platform.created == ["bc-1"]
            assert platform.ended == ["bc-1"]
            assert encoder.handles == []
            assert mgr.state is BroadcastState.STOPPED
            assert not mgr.is_active
            stopped = event_bus.recent_events(EventType.BROADCAST_STOPPED)
            assert stopped[0].data["broadcast_id"] == "bc-1"

            assert mgr.start_broadcast() == "bc-2"
        finally:
            platform.release.set()
            mgr.shutdown()


# ---------------------------------------------------------------------------
# Privacy / status
# ---------------------------------------------------------------------------


class TestPrivacy:
    def test_get_and_set(self, manager: BroadcastManager, platform: FakePlatform) -> None:
        manager.start_broadcast()
        assert manager.get_privacy() == "unlisted"
        assert manager.set_privacy(" Public ") == "public"
        assert platform.privacy["bc-1"] == "public"

    def test_invalid_value(self, manager: BroadcastManager, platform: FakePlatform) -> None:
        manager.start_broadcast()
        with pytest.raises(ValueError, match="Invalid privacy"):
            manager.set_privacy("friends-only")
        assert platform.privacy["bc-1"] == "unlisted"

    def test_requires_active_broadcast(self, manager: BroadcastManager) -> None:
        with pytest.raises(BroadcastNotActiveError):
            manager.get_privacy()
        with pytest.raises(BroadcastNotActiveError):
            manager.set_privacy("private")


class TestStatus:
    def test_idle_status(self, manager: BroadcastManager) -> None:
        assert manager.status().to_dict()["state"] == "not_started"

    def test_live_status(self, manager: BroadcastManager, encoder: FakeEncoder) -> None:
        _go_live(manager)
        data = manager.status().to_dict()
        assert data["state"] == "live"
        assert data["broadcast_id"] == "bc-1"
        assert data["encoder_alive"] is True
        assert data["encoder_pid"] == encoder.current.pid
