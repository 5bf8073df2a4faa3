"""Per-peer connection state machine.

States: ``new -> connecting -> connected -> {disconnected -> connected |
failed | closed}``. A disconnect is given a grace period before one ICE
restart is attempted; failure or close tears the connection down exactly
once, whichever path gets there first.
"""

import asyncio
import inspect
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from vortex_mesh.mesh.transport import PeerTransport
from vortex_mesh.protocol import is_caller
from vortex_mesh.relay.base import Subscription
from vortex_mesh.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

DEFAULT_ICE_RESTART_GRACE = 3.0

# Restart timer keys: the high-level and the ICE-layer states are tracked
# independently because they can diverge.
CONNECTION_KEY = "connection"
ICE_KEY = "ice"


class ConnectionState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = {ConnectionState.FAILED, ConnectionState.CLOSED}
BROKEN_STATES = {
    ConnectionState.DISCONNECTED,
    ConnectionState.FAILED,
    ConnectionState.CLOSED,
}

# ICE-layer values mapped onto the same vocabulary
ICE_STATE_MAP = {
    "new": ConnectionState.NEW,
    "checking": ConnectionState.CONNECTING,
    "connected": ConnectionState.CONNECTED,
    "completed": ConnectionState.CONNECTED,
    "disconnected": ConnectionState.DISCONNECTED,
    "failed": ConnectionState.FAILED,
    "closed": ConnectionState.CLOSED,
}


class PeerConnection:
    """One live media connection to a remote peer.

    Attributes:
        peer_id: Remote peer id.
        local_id: Local peer id.
        is_caller: True if the local side owns the first offer.
        connection_id: Unique id written to the Call Record by the caller.
        transport: Underlying ``PeerTransport``.
        state: High-level connection state.
        ice_state: ICE-layer state, mapped onto ``ConnectionState``.
        subscriptions: Relay subscriptions cancelled on teardown.
        restart_count: ICE restarts issued over the connection's lifetime.
    """

    def __init__(
        self,
        peer_id: str,
        local_id: str,
        transport: PeerTransport,
        ice_restart_grace: float = DEFAULT_ICE_RESTART_GRACE,
        connection_id: Optional[str] = None,
        on_restart: Optional[Callable[["PeerConnection"], Any]] = None,
        on_teardown: Optional[Callable[["PeerConnection", str, bool], Any]] = None,
        on_state_change: Optional[Callable[["PeerConnection", ConnectionState], Any]] = None,
    ):
        self.peer_id = peer_id
        self.local_id = local_id
        self.is_caller = is_caller(local_id, peer_id)
        self.connection_id = connection_id or uuid.uuid4().hex
        self.transport = transport
        self.ice_restart_grace = ice_restart_grace
        self.created_at = time.monotonic()

        self.state = ConnectionState.NEW
        self.ice_state = ConnectionState.NEW
        self.subscriptions: List[Subscription] = []
        self.restart_count = 0

        # Handshake bookkeeping (dedupes at-least-once relay delivery)
        self.negotiation_lock = asyncio.Lock()
        self.local_offer_sdp: Optional[str] = None
        self.applied_offer_sdp: Optional[str] = None
        self.applied_answer_sdp: Optional[str] = None
        self.applied_candidates: set = set()
        self.pending_candidates: list = []
        self.renegotiate_token: Optional[str] = None
        self.answer_watch: Optional[Subscription] = None

        self._on_restart = on_restart
        self._on_teardown = on_teardown
        self._on_state_change = on_state_change
        self._restart_timers: Dict[str, asyncio.TimerHandle] = {}
        self._restart_issued = False
        self._route_logged = False
        self._torn_down = False
        self.closed_event = asyncio.Event()
        self.tasks = BackgroundTasks(f"conn:{peer_id}")

        transport.on("connectionstatechange", self._on_transport_connection_state)
        transport.on("iceconnectionstatechange", self._on_transport_ice_state)

    def __repr__(self) -> str:
        role = "caller" if self.is_caller else "callee"
        return f"<PeerConnection {self.peer_id} {role} {self.state.value}>"

    @property
    def is_closed(self) -> bool:
        return self._torn_down

    @property
    def is_broken(self) -> bool:
        """True if either layer reports a failed, disconnected or closed state."""
        return (
            self._torn_down
            or self.state in BROKEN_STATES
            or self.ice_state in BROKEN_STATES
        )

    def add_subscription(self, subscription: Subscription):
        """Tie a relay subscription to this connection's lifetime."""
        if self._torn_down:
            subscription.unsubscribe()
            return
        self.subscriptions.append(subscription)

    # ── transport events ─────────────────────────────────────────────────

    def _on_transport_connection_state(self):
        self.handle_connection_state(self.transport.connection_state)

    def _on_transport_ice_state(self):
        self.handle_ice_state(self.transport.ice_connection_state)

    def handle_connection_state(self, value: str):
        """Apply a high-level connection state notification."""
        if self._torn_down:
            return
        try:
            state = ConnectionState(value)
        except ValueError:
            logger.warning(f"Unknown connection state from {self.peer_id}: {value}")
            return
        if state == self.state:
            return

        previous = self.state
        self.state = state
        logger.info(f"Connection to {self.peer_id}: {previous.value} -> {state.value}")
        self._notify_state_change()
        self._apply(CONNECTION_KEY, state)

    def handle_ice_state(self, value: str):
        """Apply an ICE-layer state notification."""
        if self._torn_down:
            return
        state = ICE_STATE_MAP.get(value)
        if state is None:
            logger.warning(f"Unknown ICE state from {self.peer_id}: {value}")
            return
        if state == self.ice_state:
            return

        logger.info(f"ICE state for {self.peer_id}: {value}")
        self.ice_state = state
        if state == ConnectionState.CLOSED:
            # Follows a transport close; the high-level state drives teardown
            return
        self._apply(ICE_KEY, state)

    def _apply(self, key: str, state: ConnectionState):
        if state == ConnectionState.CONNECTED:
            self._cancel_restart_timer(key)
            if not self._any_disconnected():
                self._restart_issued = False
            self._log_route()
        elif state == ConnectionState.DISCONNECTED:
            self._arm_restart_timer(key)
        elif state in TERMINAL_STATES:
            self.tasks.spawn(self.teardown(f"{key} {state.value}"), "teardown")

    def _notify_state_change(self):
        if self._on_state_change is None:
            return
        try:
            result = self._on_state_change(self, self.state)
            if inspect.isawaitable(result):
                self.tasks.spawn(result, "state-change")
        except Exception as e:
            logger.error(f"State listener for {self.peer_id} failed: {e}")

    def _log_route(self):
        if self._route_logged:
            return
        try:
            route = self.transport.selected_route()
        except Exception as e:
            logger.debug(f"Could not inspect candidate pair for {self.peer_id}: {e}")
            return
        if route is None:
            return
        self._route_logged = True
        local_type, remote_type = route
        via = "TURN relay" if "relay" in (local_type, remote_type) else "direct P2P"
        logger.info(f"Connection to {self.peer_id} via {via} ({local_type}/{remote_type})")

    # ── ICE restart ──────────────────────────────────────────────────────

    def _any_disconnected(self) -> bool:
        return (
            self.state == ConnectionState.DISCONNECTED
            or self.ice_state == ConnectionState.DISCONNECTED
        )

    def _arm_restart_timer(self, key: str):
        if key in self._restart_timers:
            return
        loop = asyncio.get_running_loop()
        self._restart_timers[key] = loop.call_later(
            self.ice_restart_grace, self._on_grace_expired, key
        )
        logger.info(
            f"{key} to {self.peer_id} disconnected, "
            f"ICE restart in {self.ice_restart_grace}s unless it recovers"
        )

    def _cancel_restart_timer(self, key: str):
        timer = self._restart_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
            logger.info(f"{key} to {self.peer_id} recovered, ICE restart cancelled")

    def _on_grace_expired(self, key: str):
        self._restart_timers.pop(key, None)
        if self._torn_down:
            return
        still_down = (
            self.state if key == CONNECTION_KEY else self.ice_state
        ) == ConnectionState.DISCONNECTED
        if not still_down or self._restart_issued:
            return

        self._restart_issued = True
        self.restart_count += 1
        logger.warning(f"Connection to {self.peer_id} still disconnected, restarting ICE")
        if self._on_restart is not None:
            try:
                result = self._on_restart(self)
            except Exception as e:
                logger.error(f"ICE restart for {self.peer_id} failed: {e}")
                return
            if inspect.isawaitable(result):
                self.tasks.spawn(result, "ice-restart")

    # ── teardown ─────────────────────────────────────────────────────────

    async def teardown(self, reason: str = "closed", delete_record: bool = True) -> bool:
        """Release everything tied to this connection.

        Args:
            reason: Why the connection is going away (logged, passed on).
            delete_record: Whether the owner should delete the Call Record.

        Returns:
            False if the connection was already torn down.
        """
        if self._torn_down:
            return False
        self._torn_down = True
        logger.info(f"Tearing down connection to {self.peer_id}: {reason}")

        for key in list(self._restart_timers):
            self._restart_timers.pop(key).cancel()
        for subscription in self.subscriptions:
            subscription.unsubscribe()
        self.subscriptions.clear()
        if self.answer_watch is not None:
            self.answer_watch.unsubscribe()
            self.answer_watch = None

        if self.state not in TERMINAL_STATES:
            self.state = ConnectionState.CLOSED
            self._notify_state_change()

        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport for {self.peer_id}: {e}")

        if self._on_teardown is not None:
            try:
                result = self._on_teardown(self, reason, delete_record)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Teardown handler for {self.peer_id} failed: {e}")

        self.closed_event.set()
        return True
