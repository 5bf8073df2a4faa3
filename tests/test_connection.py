"""Tests for the per-peer connection state machine."""

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import FakeTransport
from vortex_mesh.mesh.connection import ConnectionState, PeerConnection

GRACE = 0.2


@pytest.fixture
def callbacks():
    return {
        "restart": MagicMock(),
        "teardown": MagicMock(),
        "state": MagicMock(),
    }


@pytest.fixture
def conn(callbacks):
    return PeerConnection(
        "bob",
        "alice",
        FakeTransport(),
        ice_restart_grace=GRACE,
        on_restart=callbacks["restart"],
        on_teardown=callbacks["teardown"],
        on_state_change=callbacks["state"],
    )


class TestStates:
    """Tests for state tracking."""

    @pytest.mark.asyncio
    async def test_role_from_ids(self, conn):
        assert conn.is_caller
        assert not PeerConnection("alice", "bob", FakeTransport()).is_caller

    @pytest.mark.asyncio
    async def test_transport_events_drive_state(self, conn, callbacks):
        conn.transport.set_connection_state("connecting")
        conn.transport.set_connection_state("connected")
        assert conn.state == ConnectionState.CONNECTED
        states = [c.args[1] for c in callbacks["state"].call_args_list]
        assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    @pytest.mark.asyncio
    async def test_repeated_state_is_not_renotified(self, conn, callbacks):
        conn.handle_connection_state("connected")
        conn.handle_connection_state("connected")
        assert callbacks["state"].call_count == 1

    @pytest.mark.asyncio
    async def test_ice_completed_counts_as_connected(self, conn):
        conn.transport.set_ice_state("completed")
        assert conn.ice_state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_unknown_states_ignored(self, conn):
        conn.handle_connection_state("levitating")
        conn.handle_ice_state("levitating")
        assert conn.state == ConnectionState.NEW
        assert conn.ice_state == ConnectionState.NEW

    @pytest.mark.asyncio
    async def test_is_broken_checks_both_layers(self, conn):
        conn.handle_connection_state("connected")
        assert not conn.is_broken
        conn.handle_ice_state("disconnected")
        assert conn.is_broken


# =============================================================================
# ICE restart grace
# =============================================================================


class TestIceRestart:
    """Tests for the disconnect grace period."""

    @pytest.mark.asyncio
    async def test_recovery_within_grace_cancels_restart(self, conn, callbacks):
        conn.handle_connection_state("connected")
        conn.handle_connection_state("disconnected")
        await asyncio.sleep(GRACE / 2)
        conn.handle_connection_state("connected")
        await asyncio.sleep(GRACE * 1.5)

        assert conn.restart_count == 0
        callbacks["restart"].assert_not_called()

    @pytest.mark.asyncio
    async def test_still_disconnected_restarts_once(self, conn, callbacks):
        conn.handle_connection_state("connected")
        conn.handle_connection_state("disconnected")
        await asyncio.sleep(GRACE * 1.5)

        assert conn.restart_count == 1
        callbacks["restart"].assert_called_once_with(conn)
        assert not conn.is_closed

    @pytest.mark.asyncio
    async def test_both_layers_down_restarts_once(self, conn, callbacks):
        conn.handle_connection_state("connected")
        conn.handle_ice_state("connected")
        conn.handle_ice_state("disconnected")
        conn.handle_connection_state("disconnected")
        await asyncio.sleep(GRACE * 1.5)

        assert conn.restart_count == 1
        callbacks["restart"].assert_called_once()

    @pytest.mark.asyncio
    async def test_restart_allowed_again_after_recovery(self, conn, callbacks):
        conn.handle_connection_state("connected")
        conn.handle_connection_state("disconnected")
        await asyncio.sleep(GRACE * 1.5)
        conn.handle_connection_state("connected")
        conn.handle_connection_state("disconnected")
        await asyncio.sleep(GRACE * 1.5)

        assert conn.restart_count == 2

    @pytest.mark.asyncio
    async def test_async_restart_handler_is_awaited(self):
        calls = []

        async def on_restart(c):
            calls.append(c.peer_id)

        conn = PeerConnection(
            "bob", "alice", FakeTransport(), ice_restart_grace=GRACE, on_restart=on_restart
        )
        conn.handle_connection_state("disconnected")
        await asyncio.sleep(GRACE * 1.5)
        await conn.tasks.wait()
        assert calls == ["bob"]


# =============================================================================
# Teardown
# =============================================================================


class TestTeardown:
    """Tests for exactly-once teardown."""

    @pytest.mark.asyncio
    async def test_failed_tears_down(self, conn, callbacks):
        conn.handle_connection_state("connected")
        conn.handle_connection_state("failed")
        await asyncio.wait_for(conn.closed_event.wait(), timeout=1)

        assert conn.is_closed
        assert conn.transport.closed
        callbacks["teardown"].assert_called_once()
        _, reason, delete_record = callbacks["teardown"].call_args.args
        assert "failed" in reason
        assert delete_record is True

    @pytest.mark.asyncio
    async def test_ice_failed_tears_down(self, conn, callbacks):
        conn.handle_ice_state("failed")
        await asyncio.wait_for(conn.closed_event.wait(), timeout=1)
        callbacks["teardown"].assert_called_once()

    @pytest.mark.asyncio
    async def test_teardown_is_idempotent(self, conn, callbacks):
        assert await conn.teardown("first")
        assert not await conn.teardown("second")
        callbacks["teardown"].assert_called_once()
        assert conn.state == ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_concurrent_failure_paths_tear_down_once(self, conn, callbacks):
        conn.handle_connection_state("failed")
        conn.handle_ice_state("failed")
        await conn.teardown("manual")
        await conn.tasks.wait()
        callbacks["teardown"].assert_called_once()

    @pytest.mark.asyncio
    async def test_teardown_cancels_timers_and_subscriptions(self, conn, callbacks):
        subscription = MagicMock()
        conn.add_subscription(subscription)
        conn.handle_connection_state("disconnected")

        await conn.teardown("left")
        await asyncio.sleep(GRACE * 1.5)

        subscription.unsubscribe.assert_called_once()
        callbacks["restart"].assert_not_called()

    @pytest.mark.asyncio
    async def test_subscription_added_after_teardown_is_cancelled(self, conn):
        await conn.teardown()
        subscription = MagicMock()
        conn.add_subscription(subscription)
        subscription.unsubscribe.assert_called_once()

    @pytest.mark.asyncio
    async def test_events_after_teardown_ignored(self, conn, callbacks):
        await conn.teardown()
        callbacks["state"].reset_mock()
        conn.handle_connection_state("connected")
        assert conn.state == ConnectionState.CLOSED
        callbacks["state"].assert_not_called()
