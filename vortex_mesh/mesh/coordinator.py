"""Mesh coordinator for peer-to-peer media connections in a sub-room.

This module keeps the set of live connections equal to "every other peer
currently in my sub-room".

Key responsibilities:
- Reconcile connections against membership snapshots (latest snapshot wins)
- Tie-break connection ownership: only the smaller id ever offers
- Accept inbound calls addressed to me, remembering ones that arrive before
  membership catches up
- Attach local tracks to every connection and renegotiate when needed
- Clean up Call Records, remote streams and presenter state on teardown

Architecture:
1. Every peer writes a presence document with its sub-room
2. On each membership change, connections outside my sub-room are torn down
3. For peers with a larger id, a connection is created and an offer written
4. Peers with a smaller id call me; their Call Record shows up in my calls
   subscription (``calleeId == me``) and is answered reactively
5. Failure-triggered teardowns schedule another reconciliation so the caller
   side re-creates the connection
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from aiortc import MediaStreamTrack

from vortex_mesh.errors import RelayError
from vortex_mesh.mesh.connection import (
    DEFAULT_ICE_RESTART_GRACE,
    ConnectionState,
    PeerConnection,
)
from vortex_mesh.mesh.handshake import RECORD_REMOVED, HandshakeProtocol
from vortex_mesh.mesh.registry import ConnectionRegistry, RemoteStreamRegistry
from vortex_mesh.mesh.transport import PeerTransport
from vortex_mesh.protocol import (
    FIELD_CALLEE_ID,
    FIELD_CALLER_ID,
    FIELD_CONNECTION_ID,
    FIELD_OFFER,
    Peer,
    calls_path,
    is_caller,
    user_path,
)
from vortex_mesh.relay.base import REMOVED, DocumentChange, SignalingRelay, Subscription
from vortex_mesh.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

# Event kinds emitted to listeners
EVENT_CONNECTION_STATE = "connection_state"
EVENT_REMOTE_STREAM = "remote_stream"
EVENT_PRESENTER = "presenter"
EVENT_PEER_COUNT = "peer_count"

MeshListener = Callable[[str, Optional[str], Any], Any]
SubRoomHook = Callable[[Optional[str], Optional[str]], Awaitable[None]]


class MeshCoordinator:
    """Coordinates the full mesh of connections for one local peer.

    Attributes:
        relay: Signaling relay.
        room_id: Room id.
        local_id: Local peer id.
        handshake: Offer/answer/candidate exchange.
        connections: Live connections by peer id.
        remote_streams: Received media by peer id.
        sub_room_id: Local peer's current sub-room (None while in the lobby).
        peers: Latest membership snapshot by peer id.
        presenter_id: Peer currently sharing a screen in my sub-room.
    """

    def __init__(
        self,
        relay: SignalingRelay,
        room_id: str,
        local_id: str,
        transport_factory: Optional[Callable[[], PeerTransport]] = None,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        ice_restart_grace: float = DEFAULT_ICE_RESTART_GRACE,
    ):
        """Initialize MeshCoordinator.

        Args:
            relay: Signaling relay for Call Records and presence.
            room_id: Room id.
            local_id: Local peer id.
            transport_factory: Builds a transport per connection. Defaults to
                aiortc with ``ice_servers``.
            ice_servers: ICE server dicts for the default transport.
            ice_restart_grace: Seconds a disconnect may last before an ICE restart.
        """
        self.relay = relay
        self.room_id = room_id
        self.local_id = local_id
        self.ice_restart_grace = ice_restart_grace
        self.transport_factory = transport_factory or (
            lambda: PeerTransport(ice_servers or [])
        )

        self.handshake = HandshakeProtocol(relay, room_id, local_id)
        self.connections = ConnectionRegistry()
        self.remote_streams = RemoteStreamRegistry()
        self.remote_streams.add_listener(self._on_remote_stream_changed)

        self.sub_room_id: Optional[str] = None
        self.peers: Dict[str, Peer] = {}
        self.presenter_id: Optional[str] = None
        self.local_audio_track: Optional[MediaStreamTrack] = None
        self.screen_track: Optional[MediaStreamTrack] = None

        # Inbound calls whose caller is not (yet) in my sub-room
        self.pending_calls: Dict[str, Dict[str, Any]] = {}

        self._lock = asyncio.Lock()
        self._tasks = BackgroundTasks("mesh")
        self._calls_subscription: Optional[Subscription] = None
        self._listeners: List[MeshListener] = []
        self._sub_room_hooks: List[SubRoomHook] = []
        self._last_peer_count = 0
        self._shutdown = False

    # ── lifecycle ────────────────────────────────────────────────────────

    async def start(self):
        """Subscribe to Call Records addressed to the local peer."""
        self._calls_subscription = await self.relay.subscribe_collection(
            calls_path(self.room_id),
            self.on_call_changes,
            where=(FIELD_CALLEE_ID, self.local_id),
        )
        logger.info(f"MeshCoordinator started for {self.local_id} in room {self.room_id}")

    async def shutdown(self):
        """Close every connection and stop listening. Safe to call twice."""
        if self._shutdown:
            return
        self._shutdown = True
        if self._calls_subscription is not None:
            self._calls_subscription.unsubscribe()
            self._calls_subscription = None

        async with self._lock:
            for conn in self.connections:
                await conn.teardown("shutdown")
        self.pending_calls.clear()
        await self._tasks.cancel_all()
        logger.info(f"MeshCoordinator for {self.local_id} shut down")

    async def wait_idle(self):
        """Wait for background work spawned by the coordinator and its connections."""
        for _ in range(50):
            await self._tasks.wait()
            busy = [c for c in self.connections if len(c.tasks)]
            for conn in busy:
                await conn.tasks.wait()
            if not busy and not self._tasks:
                return

    # ── listeners ────────────────────────────────────────────────────────

    def add_listener(self, listener: MeshListener):
        """Register ``listener(kind, peer_id, payload)`` for mesh events."""
        self._listeners.append(listener)

    def add_sub_room_hook(self, hook: SubRoomHook):
        """Register ``await hook(old, new)`` run before a sub-room move reconciles."""
        self._sub_room_hooks.append(hook)

    def _emit(self, kind: str, peer_id: Optional[str], payload: Any):
        for listener in list(self._listeners):
            try:
                result = listener(kind, peer_id, payload)
            except Exception as e:
                logger.error(f"Mesh listener failed on {kind}: {e}")
                continue
            if inspect.isawaitable(result):
                self._tasks.spawn(result, kind)

    @property
    def peer_count(self) -> int:
        """Number of live connections."""
        return sum(1 for conn in self.connections if not conn.is_closed)

    def _check_peer_count(self):
        count = self.peer_count
        if count != self._last_peer_count:
            self._last_peer_count = count
            self._emit(EVENT_PEER_COUNT, None, count)

    # ── membership ───────────────────────────────────────────────────────

    def desired_peers(self) -> List[str]:
        """Peers in my current sub-room, excluding myself."""
        if self.sub_room_id is None:
            return []
        return sorted(
            peer_id
            for peer_id, peer in self.peers.items()
            if peer_id != self.local_id and peer.sub_room_id == self.sub_room_id
        )

    async def on_membership_changed(self, peers: Iterable[Peer]):
        """Replace the membership snapshot and reconcile."""
        self.peers = {peer.id: peer for peer in peers}
        self._update_presenter()
        await self.reconcile()

    async def move_to_sub_room(self, sub_room_id: Optional[str]):
        """Change the local sub-room, publish it and reconcile."""
        old = self.sub_room_id
        if sub_room_id == old:
            return
        logger.info(f"Moving {self.local_id} from sub-room {old} to {sub_room_id}")
        for hook in list(self._sub_room_hooks):
            try:
                await hook(old, sub_room_id)
            except Exception as e:
                logger.error(f"Sub-room hook failed: {e}")
        self.sub_room_id = sub_room_id
        self.peers[self.local_id] = Peer(self.local_id, sub_room_id)
        await self.publish_presence(is_screen_sharing=self.screen_track is not None)
        self._update_presenter()
        await self.reconcile()

    async def publish_presence(self, is_screen_sharing: Optional[bool] = None):
        """Merge the local presence document."""
        data: Dict[str, Any] = {"id": self.local_id, "subSessionId": self.sub_room_id}
        if is_screen_sharing is not None:
            data["isScreenSharing"] = is_screen_sharing
        try:
            await self.relay.set(user_path(self.room_id, self.local_id), data, merge=True)
        except RelayError as e:
            logger.error(f"Failed to publish presence for {self.local_id}: {e}")

    async def remove_presence(self):
        try:
            await self.relay.delete(user_path(self.room_id, self.local_id))
        except RelayError as e:
            logger.warning(f"Failed to remove presence for {self.local_id}: {e}")

    def _update_presenter(self):
        presenter = None
        if self.screen_track is not None:
            presenter = self.local_id
        else:
            for peer_id in self.desired_peers():
                if self.peers[peer_id].is_screen_sharing:
                    presenter = peer_id
                    break
        self._set_presenter(presenter)

    def _set_presenter(self, presenter: Optional[str]):
        if presenter == self.presenter_id:
            return
        self.presenter_id = presenter
        logger.info(f"Presenter in sub-room {self.sub_room_id}: {presenter}")
        self._emit(EVENT_PRESENTER, presenter, presenter is not None)

    # ── reconciliation ───────────────────────────────────────────────────

    async def reconcile(self):
        """Make the connection set match the desired peers."""
        if self._shutdown:
            return
        async with self._lock:
            await self._reconcile_locked()

    async def _reconcile_locked(self):
        desired = self.desired_peers()

        for conn in self.connections:
            if conn.peer_id not in desired:
                await conn.teardown("peer left sub-room")

        for peer_id in desired:
            existing = self.connections.get(peer_id)
            if existing is not None and not existing.is_closed:
                continue
            if is_caller(self.local_id, peer_id):
                await self._open_outbound(peer_id)
            elif peer_id in self.pending_calls:
                await self._accept_call(peer_id, self.pending_calls.pop(peer_id))

        self._check_peer_count()

    async def reevaluate(self):
        """Drop broken connections and reconcile so they are re-created."""
        if self._shutdown:
            return
        async with self._lock:
            broken = [conn for conn in self.connections if conn.is_broken]
            for conn in broken:
                await conn.teardown("recovery")
            if broken:
                logger.info(f"Recovery dropped {len(broken)} broken connections")
            await self._reconcile_locked()

    def _new_connection(self, peer_id: str, connection_id: Optional[str] = None) -> PeerConnection:
        conn = PeerConnection(
            peer_id,
            self.local_id,
            self.transport_factory(),
            ice_restart_grace=self.ice_restart_grace,
            connection_id=connection_id,
            on_restart=self._on_restart,
            on_teardown=self._on_connection_closed,
            on_state_change=self._on_state_change,
        )

        def on_track(track: MediaStreamTrack):
            self._on_remote_track(conn, track)

        conn.transport.on("track", on_track)
        self.connections.add(conn)

        if self.local_audio_track is not None:
            conn.transport.add_track(self.local_audio_track)
        if self.screen_track is not None:
            conn.transport.add_track(self.screen_track)
        return conn

    async def _open_outbound(self, peer_id: str):
        logger.info(f"Calling {peer_id}")
        conn = self._new_connection(peer_id)
        conn.transport.ensure_transceiver("audio")
        conn.transport.ensure_transceiver("video")
        try:
            await self.handshake.exchange_candidates(conn)
            await self.handshake.create_offer(conn)
        except Exception as e:
            logger.error(f"Failed to call {peer_id}: {e}")
            await conn.teardown("offer failed")

    # ── inbound calls ────────────────────────────────────────────────────

    async def on_call_changes(self, changes: List[DocumentChange]):
        """Handle changes to Call Records addressed to the local peer."""
        for change in changes:
            caller_id = change.data.get(FIELD_CALLER_ID)
            if not caller_id:
                continue
            try:
                if change.type == REMOVED:
                    await self._on_call_removed(caller_id, change.data)
                else:
                    await self.handle_inbound_call(caller_id, change.data)
            except Exception as e:
                logger.error(f"Failed to handle call from {caller_id}: {e}")

    async def handle_inbound_call(self, caller_id: str, record: Dict[str, Any]):
        """Answer a new call or a renegotiation from ``caller_id``."""
        if self._shutdown or not record.get(FIELD_OFFER):
            return
        if not is_caller(caller_id, self.local_id):
            logger.warning(f"Ignoring call from {caller_id}: larger id must not call")
            return

        async with self._lock:
            peer = self.peers.get(caller_id)
            if (
                self.sub_room_id is None
                or peer is None
                or peer.sub_room_id != self.sub_room_id
            ):
                logger.debug(f"Holding call from {caller_id} until membership catches up")
                self.pending_calls[caller_id] = record
                return
            self.pending_calls.pop(caller_id, None)
            await self._accept_call(caller_id, record)

    async def _accept_call(self, caller_id: str, record: Dict[str, Any]):
        connection_id = record.get(FIELD_CONNECTION_ID)
        conn = self.connections.get(caller_id)

        if conn is not None and not conn.is_closed:
            if connection_id and connection_id != conn.connection_id:
                # Caller re-created the call; the record already belongs to the new one
                await conn.teardown("replaced by new call", delete_record=False)
            else:
                await self.handshake.handle_offer(conn, record[FIELD_OFFER])
                return

        logger.info(f"Answering call from {caller_id}")
        conn = self._new_connection(caller_id, connection_id)
        try:
            await self.handshake.exchange_candidates(conn)
            await self.handshake.handle_offer(conn, record[FIELD_OFFER])
        except Exception as e:
            logger.error(f"Failed to answer {caller_id}: {e}")
            await conn.teardown("answer failed")
        self._check_peer_count()

    async def _on_call_removed(self, caller_id: str, record: Dict[str, Any]):
        self.pending_calls.pop(caller_id, None)
        conn = self.connections.get(caller_id)
        if conn is None or conn.is_closed:
            return
        if record.get(FIELD_CONNECTION_ID) in (None, conn.connection_id):
            await conn.teardown(RECORD_REMOVED, delete_record=False)

    # ── connection callbacks ─────────────────────────────────────────────

    async def _on_restart(self, conn: PeerConnection):
        if conn.is_caller:
            await self.handshake.create_offer(conn, ice_restart=True)
        else:
            conn.transport.restart_ice()
            await self.handshake.request_renegotiation(conn)

    def _on_state_change(self, conn: PeerConnection, state: ConnectionState):
        self._emit(EVENT_CONNECTION_STATE, conn.peer_id, state)

    async def _on_connection_closed(
        self, conn: PeerConnection, reason: str, delete_record: bool
    ):
        self.connections.remove(conn)
        if self.connections.get(conn.peer_id) is None:
            self.remote_streams.remove(conn.peer_id)
        if delete_record:
            await self.handshake.delete_call_record(conn.peer_id)
        if self.presenter_id == conn.peer_id:
            self._set_presenter(None)
        self._check_peer_count()

        if self._shutdown:
            return
        # The caller re-creates failed calls and calls whose record the callee dropped
        if conn.state == ConnectionState.FAILED or (
            reason == RECORD_REMOVED and conn.is_caller
        ):
            self._tasks.spawn(self.reconcile(), f"reconcile-after-{conn.peer_id}")

    def _on_remote_track(self, conn: PeerConnection, track: MediaStreamTrack):
        if conn.is_closed or self.connections.get(conn.peer_id) is not conn:
            return
        self.remote_streams.add_track(conn.peer_id, track)

        @track.on("ended")
        def on_ended():
            self.remote_streams.remove_track(conn.peer_id, track)

    def _on_remote_stream_changed(self, peer_id: str, stream):
        self._emit(EVENT_REMOTE_STREAM, peer_id, stream)

    # ── local tracks ─────────────────────────────────────────────────────

    async def set_local_audio_track(self, track: Optional[MediaStreamTrack]):
        """Feed ``track`` to every connection.

        Connections that already carry an audio sender get the track swapped
        in place; the rest get a new sender and renegotiate.
        """
        async with self._lock:
            self.local_audio_track = track
            for conn in self.connections:
                if conn.is_closed:
                    continue
                try:
                    if await conn.transport.replace_track("audio", track):
                        continue
                    if track is None:
                        continue
                    conn.transport.add_track(track)
                    await self.handshake.request_renegotiation(conn)
                except Exception as e:
                    logger.error(f"Failed to update audio for {conn.peer_id}: {e}")

    async def publish_screen_track(self, track: MediaStreamTrack):
        """Add the screen track to every connection and renegotiate."""
        async with self._lock:
            self.screen_track = track
            for conn in self.connections:
                if conn.is_closed:
                    continue
                try:
                    conn.transport.add_track(track)
                    await self.handshake.request_renegotiation(conn)
                except Exception as e:
                    logger.error(f"Failed to share screen with {conn.peer_id}: {e}")
        self._update_presenter()

    async def withdraw_screen_track(self):
        """Remove the screen track from every connection and renegotiate."""
        async with self._lock:
            self.screen_track = None
            for conn in self.connections:
                if conn.is_closed:
                    continue
                try:
                    await conn.transport.remove_track("video")
                    await self.handshake.request_renegotiation(conn)
                except Exception as e:
                    logger.error(f"Failed to withdraw screen from {conn.peer_id}: {e}")
        self._update_presenter()
