"""Tests for printcast.encoder — command construction and process lifecycle.

``subprocess.Popen`` is mocked; no ffmpeg process is ever spawned.
"""

from __future__ import annotations

import subprocess
from unittest import mock

import pytest

from printcast.encoder import EncoderHandle, FfmpegEncoder, _ffmpeg_loglevel
from printcast.errors import EncoderError

INGEST = "rtmp://a.rtmp.youtube.com/live2/abcd-efgh"
SOURCE = "http://cam.local/webcam/?action=stream"


def _process(pid: int = 1234, poll: int | None = None) -> mock.MagicMock:
    process = mock.MagicMock(spec=subprocess.Popen)
    process.pid = pid
    process.poll.return_value = poll
    process.returncode = poll
    process.stderr = None
    return process


class TestBuildCommand:
    def test_network_source(self) -> None:
        cmd = FfmpegEncoder("ffmpeg", fps=15, bitrate_kbps=1200, width=1280, height=720).build_command(INGEST, SOURCE)
        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-i") + 1] == SOURCE
        assert "anullsrc=channel_layout=stereo:sample_rate=44100" in cmd
        assert cmd[cmd.index("-vf") + 1] == "format=yuv420p,scale=1280:720"
        assert cmd[cmd.index("-g") + 1] == "30"
        assert cmd[cmd.index("-b:v") + 1] == "1200k"
        assert cmd[cmd.index("-bufsize") + 1] == "2400k"
        assert cmd[-3:] == ["-f", "flv", INGEST]

    def test_local_device_has_no_audio(self) -> None:
        cmd = FfmpegEncoder().build_command(INGEST, "/dev/video0")
        assert cmd[cmd.index("-f") + 1] == "v4l2"
        assert "-an" in cmd
        assert "-reconnect" not in cmd

    def test_loglevel_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FFMPEG_LOGLEVEL", "Warning")
        assert _ffmpeg_loglevel() == "warning"

    def test_invalid_loglevel_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FFMPEG_LOGLEVEL", "chatty")
        assert _ffmpeg_loglevel() == "error"


class TestStart:
    def test_spawns_process(self) -> None:
        with mock.patch("printcast.encoder.subprocess.Popen", return_value=_process()) as popen:
            handle = FfmpegEncoder().start(INGEST, SOURCE)
        assert isinstance(handle, EncoderHandle)
        assert handle.pid == 1234
        assert handle.ingest_address == INGEST
        assert popen.call_args.kwargs["stdin"] is subprocess.DEVNULL

    def test_launch_failure(self) -> None:
        with mock.patch("printcast.encoder.subprocess.Popen", side_effect=FileNotFoundError("ffmpeg")):
            with pytest.raises(EncoderError, match="Failed to launch ffmpeg") as exc_info:
                FfmpegEncoder().start(INGEST, SOURCE)
        assert isinstance(exc_info.value.cause, FileNotFoundError)

    @pytest.mark.parametrize("ingest,source", [("", SOURCE), (INGEST, "")])
    def test_requires_addresses(self, ingest: str, source: str) -> None:
        with pytest.raises(EncoderError, match="must not be empty"):
            FfmpegEncoder().start(ingest, source)

    def test_each_start_is_a_new_process(self) -> None:
        encoder = FfmpegEncoder()
        with mock.patch("printcast.encoder.subprocess.Popen", side_effect=[_process(1), _process(2)]):
            first = encoder.start(INGEST, SOURCE)
            second = encoder.start(INGEST, SOURCE)
        assert (first.pid, second.pid) == (1, 2)
        assert first.ingest_address == second.ingest_address


class TestAliveAndStop:
    def test_is_alive(self) -> None:
        encoder = FfmpegEncoder()
        assert encoder.is_alive(EncoderHandle(_process(poll=None), INGEST, SOURCE))
        assert not encoder.is_alive(EncoderHandle(_process(poll=1), INGEST, SOURCE))
        assert not encoder.is_alive(None)

    def test_stop_terminates(self) -> None:
        process = _process()
        FfmpegEncoder().stop(EncoderHandle(process, INGEST, SOURCE), timeout=1.0)
        process.terminate.assert_called_once()
        process.wait.assert_called_once_with(timeout=1.0)
        process.kill.assert_not_called()

    def test_stop_escalates_to_kill(self) -> None:
        process = _process()
        process.wait.side_effect = [subprocess.TimeoutExpired("ffmpeg", 1.0), 0]
        FfmpegEncoder().stop(EncoderHandle(process, INGEST, SOURCE), timeout=1.0)
        process.kill.assert_called_once()

    def test_stop_tolerates_exited_process(self) -> None:
        process = _process(poll=0)
        FfmpegEncoder().stop(EncoderHandle(process, INGEST, SOURCE))
        process.terminate.assert_not_called()

    def test_stop_none(self) -> None:
        FfmpegEncoder().stop(None)

    def test_handle_to_dict(self) -> None:
        data = EncoderHandle(_process(pid=77), INGEST, SOURCE).to_dict()
        assert data["pid"] == 77
        assert data["returncode"] is None
        assert "ingest_address" not in data
