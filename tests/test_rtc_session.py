"""Tests for the headless session entry point."""

import asyncio
from unittest import mock
from unittest.mock import AsyncMock, MagicMock

import pytest

from vortex_mesh.mesh.stats import BandwidthStats
from vortex_mesh.rtc_session import log_session_event, run_session, run_session_async
from vortex_mesh.session import EVENT_BANDWIDTH, SessionEvent


def close_coroutine(coro):
    coro.close()


class TestRunSession:
    """Tests for run_session overrides."""

    def test_cli_values_override_config(self, config):
        with mock.patch("vortex_mesh.rtc_session.get_config", return_value=config), mock.patch(
            "vortex_mesh.rtc_session.asyncio.run", side_effect=close_coroutine
        ) as run:
            run_session("demo", "alice", threshold=0.3, denoise=False)

        assert config.noise_gate_threshold == 0.3
        assert config.denoise_enabled is False
        run.assert_called_once()

    def test_relay_url_falls_back_to_config(self, config):
        config.relay_url = "ws://configured:1"
        with mock.patch("vortex_mesh.rtc_session.get_config", return_value=config), mock.patch(
            "vortex_mesh.rtc_session.run_session_async", new=MagicMock()
        ) as run_async, mock.patch("vortex_mesh.rtc_session.asyncio.run"):
            run_session("demo", "alice", sub_room_id="general")

        run_async.assert_called_once_with("demo", "alice", "general", "ws://configured:1")

    def test_interrupt_is_handled(self, config):
        with mock.patch("vortex_mesh.rtc_session.get_config", return_value=config), mock.patch(
            "vortex_mesh.rtc_session.asyncio.run", side_effect=KeyboardInterrupt
        ), mock.patch("vortex_mesh.rtc_session.run_session_async", new=MagicMock()):
            run_session("demo", "alice")


class TestRunSessionAsync:
    """Tests for the session lifetime."""

    @pytest.mark.asyncio
    async def test_session_is_shut_down_when_stopped(self):
        relay = MagicMock()
        relay.close = AsyncMock()
        session = MagicMock()
        session.start = AsyncMock()
        session.shutdown = AsyncMock()
        session.pipeline.device_error = None
        stop = asyncio.Event()
        stop.set()

        with mock.patch(
            "vortex_mesh.rtc_session.WebSocketRelay.connect", new=AsyncMock(return_value=relay)
        ), mock.patch("vortex_mesh.rtc_session.RoomSession", return_value=session):
            await run_session_async("demo", "alice", "general", "ws://relay", stop_event=stop)

        session.start.assert_awaited_once_with("general")
        session.shutdown.assert_awaited_once()
        relay.close.assert_awaited_once()


class TestLogSessionEvent:
    def test_bandwidth_is_formatted(self, caplog):
        caplog.set_level("INFO")
        log_session_event(SessionEvent(EVENT_BANDWIDTH, None, BandwidthStats(2048, 512, 2048, 0)))
        assert "up 2.0 KB/s (2.0 KB)" in caplog.text
        assert "down 0 B/s (512 B)" in caplog.text

    def test_peer_events_name_the_peer(self, caplog):
        caplog.set_level("INFO")
        log_session_event(SessionEvent("presenter", "bob", True))
        assert "presenter [bob]: True" in caplog.text
