"""Room session: the explicit event API over the whole orchestrator.

``RoomSession`` owns one local peer's participation in a room. It wires the
audio pipeline, mesh coordinator, screen share, recovery monitor, bandwidth
poller and voice activity detectors together and exposes plain methods for
every external event (membership, relay messages, transport states, user
actions, visibility). Observers subscribe with ``add_listener`` and receive
``SessionEvent`` objects; nothing here depends on a UI framework.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay

from vortex_mesh.audio.pipeline import DeviceFactory, LocalAudioPipeline
from vortex_mesh.audio.vad import RemoteVoiceMonitor, VoiceLevel
from vortex_mesh.config import Config, get_config
from vortex_mesh.mesh.coordinator import (
    EVENT_CONNECTION_STATE,
    EVENT_PEER_COUNT,
    EVENT_PRESENTER,
    EVENT_REMOTE_STREAM,
    MeshCoordinator,
)
from vortex_mesh.mesh.recovery import RecoveryMonitor, RecoveryReport
from vortex_mesh.mesh.screen_share import Capture, ScreenShareController
from vortex_mesh.mesh.stats import BandwidthStats, BandwidthStatsPoller
from vortex_mesh.mesh.transport import PeerTransport
from vortex_mesh.protocol import Peer, users_path
from vortex_mesh.relay.base import REMOVED, DocumentChange, SignalingRelay, Subscription
from vortex_mesh.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

# Session event kinds (mesh kinds are forwarded unchanged)
EVENT_VOICE_ACTIVITY = "voice_activity"
EVENT_BANDWIDTH = "bandwidth"
EVENT_DEVICE = "device"


@dataclass(frozen=True)
class SessionEvent:
    """Something observers may want to render.

    Attributes:
        kind: Event kind (``remote_stream``, ``connection_state``,
            ``presenter``, ``peer_count``, ``voice_activity``, ``bandwidth``,
            ``device``).
        peer_id: Peer the event is about, the local id for local voice
            activity, or None for session-wide events.
        payload: Kind-specific value.
    """

    kind: str
    peer_id: Optional[str]
    payload: Any


SessionListener = Callable[[SessionEvent], Any]


class RoomSession:
    """One local peer in one room.

    Args:
        relay: Signaling relay shared with the other participants.
        room_id: Room id.
        local_id: Local peer id.
        config: Configuration; the process-wide one by default.
        transport_factory: Per-connection transport builder (tests).
        device_factory: Microphone opener (tests).
    """

    def __init__(
        self,
        relay: SignalingRelay,
        room_id: str,
        local_id: str,
        config: Optional[Config] = None,
        transport_factory: Optional[Callable[[], PeerTransport]] = None,
        device_factory: Optional[DeviceFactory] = None,
    ):
        self.relay = relay
        self.room_id = room_id
        self.local_id = local_id
        self.config = config or get_config()

        self.pipeline = LocalAudioPipeline(self.config, device_factory)
        self.coordinator = MeshCoordinator(
            relay,
            room_id,
            local_id,
            transport_factory=transport_factory,
            ice_servers=self.config.ice_servers,
            ice_restart_grace=self.config.ice_restart_grace,
        )
        self.screen_share = ScreenShareController(self.coordinator, self.config.screen_share)
        self.recovery = RecoveryMonitor(
            self.coordinator, self.pipeline, self.config.recovery_settle_delay
        )
        self.stats = BandwidthStatsPoller(self.coordinator, self.config.stats_interval)
        self.remote_voice = RemoteVoiceMonitor()

        # Latest presence documents by doc id
        self.members: Dict[str, Dict[str, Any]] = {}
        self.started = False
        self.closed = False

        self._media_relay = MediaRelay()
        self._watched_audio: Dict[str, str] = {}
        self._users_subscription: Optional[Subscription] = None
        self._listeners: List[SessionListener] = []
        self._tasks = BackgroundTasks("session")

        self.pipeline.add_track_listener(self.coordinator.set_local_audio_track)
        self.pipeline.add_voice_listener(self._on_local_voice)
        self.coordinator.add_listener(self._on_mesh_event)
        self.remote_voice.add_listener(self._on_remote_voice)
        self.stats.add_listener(self._on_bandwidth)

    # ── observers ────────────────────────────────────────────────────────

    def add_listener(self, listener: SessionListener):
        """Register ``listener(SessionEvent)``; coroutine listeners are awaited."""
        self._listeners.append(listener)

    def _emit(self, kind: str, peer_id: Optional[str], payload: Any):
        event = SessionEvent(kind, peer_id, payload)
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception as e:
                logger.error(f"Session listener failed on {kind}: {e}")
                continue
            if inspect.isawaitable(result):
                self._tasks.spawn(result, kind)

    def _on_mesh_event(self, kind: str, peer_id: Optional[str], payload: Any):
        if kind == EVENT_REMOTE_STREAM:
            self._update_remote_voice(peer_id, payload)
        if kind in (EVENT_REMOTE_STREAM, EVENT_CONNECTION_STATE, EVENT_PRESENTER, EVENT_PEER_COUNT):
            self._emit(kind, peer_id, payload)

    def _update_remote_voice(self, peer_id: str, stream):
        audio = stream.track("audio") if stream is not None else None
        if audio is None:
            self._watched_audio.pop(peer_id, None)
            self.remote_voice.discard(peer_id)
            return
        if self._watched_audio.get(peer_id) == audio.id:
            return
        self._watched_audio[peer_id] = audio.id
        self.remote_voice.watch(peer_id, self._media_relay.subscribe(audio))

    def _on_local_voice(self, speaking: bool):
        self._emit(EVENT_VOICE_ACTIVITY, self.local_id, VoiceLevel(is_active=speaking))

    def _on_remote_voice(self, peer_id: str, level: VoiceLevel):
        self._emit(EVENT_VOICE_ACTIVITY, peer_id, level)

    def _on_bandwidth(self, stats: BandwidthStats):
        self._emit(EVENT_BANDWIDTH, None, stats)

    # ── lifecycle ────────────────────────────────────────────────────────

    async def start(self, sub_room_id: Optional[str] = None, poll_stats: bool = True):
        """Open the microphone, join the room and optionally enter a sub-room."""
        if self.started:
            return
        self.started = True
        logger.info(f"Joining room {self.room_id} as {self.local_id}")

        await self.pipeline.start()
        if self.pipeline.device_error:
            self._emit(EVENT_DEVICE, self.local_id, self.pipeline.device_error)

        await self.coordinator.start()
        self._users_subscription = await self.relay.subscribe_collection(
            users_path(self.room_id), self._on_user_changes
        )
        if sub_room_id is not None:
            await self.coordinator.move_to_sub_room(sub_room_id)
        else:
            await self.coordinator.publish_presence(is_screen_sharing=False)
        if poll_stats:
            self.stats.start()

    async def shutdown(self):
        """Leave the room. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        logger.info(f"Leaving room {self.room_id}")

        await self.stats.stop()
        await self.recovery.close()
        await self.screen_share.close()
        await self.remote_voice.close()
        if self._users_subscription is not None:
            self._users_subscription.unsubscribe()
            self._users_subscription = None
        await self.coordinator.remove_presence()
        await self.coordinator.shutdown()
        await self.pipeline.close()
        self._watched_audio.clear()
        await self._tasks.cancel_all()

    # ── relay and transport events ───────────────────────────────────────

    async def _on_user_changes(self, changes: List[DocumentChange]):
        for change in changes:
            if change.type == REMOVED:
                self.members.pop(change.doc_id, None)
            else:
                self.members[change.doc_id] = change.data
        await self.on_membership_changed(list(self.members.values()))

    async def on_membership_changed(self, records: Iterable[Dict[str, Any]]):
        """Apply a full membership snapshot of presence documents."""
        if self.closed:
            return
        peers = []
        for record in records:
            try:
                peers.append(Peer.from_record(record))
            except ValueError as e:
                logger.warning(f"Skipping presence record: {e}")
        await self.coordinator.on_membership_changed(peers)

    async def on_relay_message(self, changes: List[DocumentChange]):
        """Apply Call Record changes addressed to the local peer."""
        if self.closed:
            return
        await self.coordinator.on_call_changes(changes)

    def on_transport_state_changed(self, peer_id: str, state: str):
        conn = self.coordinator.connections.get(peer_id)
        if conn is None:
            logger.debug(f"Connection state {state} for unknown peer {peer_id}")
            return
        conn.handle_connection_state(state)

    def on_ice_state_changed(self, peer_id: str, state: str):
        conn = self.coordinator.connections.get(peer_id)
        if conn is None:
            logger.debug(f"ICE state {state} for unknown peer {peer_id}")
            return
        conn.handle_ice_state(state)

    # ── user actions ─────────────────────────────────────────────────────

    async def move_to_sub_room(self, sub_room_id: Optional[str]):
        await self.coordinator.move_to_sub_room(sub_room_id)

    def toggle_mute(self) -> bool:
        return self.pipeline.toggle_mute()

    def toggle_deafen(self) -> bool:
        return self.pipeline.toggle_deafen()

    def set_push_to_talk(self, enabled: bool):
        self.pipeline.set_push_to_talk(enabled)

    def push_to_talk_pressed(self):
        self.pipeline.press_push_to_talk()

    def push_to_talk_released(self):
        self.pipeline.release_push_to_talk()

    def set_threshold(self, threshold: float):
        self.pipeline.set_threshold(threshold)

    async def set_denoise(self, enabled: bool, intensity: Optional[float] = None):
        await self.pipeline.set_denoise(enabled, intensity)

    async def start_screen_share(self, capture: Capture):
        """Start sharing a screen track.

        Raises:
            ScreenShareError: If capture or publishing fails; nothing is left
                marked as sharing.
        """
        await self.screen_share.start(capture)

    async def stop_screen_share(self):
        await self.screen_share.stop()

    # ── app lifecycle ────────────────────────────────────────────────────

    def on_visibility_changed(self, visible: bool):
        if not visible:
            self.pipeline.release_push_to_talk()
        self.recovery.on_visibility_changed(visible)

    async def on_focus(self):
        await self.recovery.on_focus()

    def on_blur(self):
        self.pipeline.release_push_to_talk()

    async def recover(self) -> RecoveryReport:
        """Run a recovery pass immediately."""
        return await self.recovery.recover()

    # ── state ────────────────────────────────────────────────────────────

    @property
    def local_track(self) -> Optional[MediaStreamTrack]:
        return self.pipeline.track

    @property
    def connected_peers(self) -> List[str]:
        connections = self.coordinator.connections
        return [p for p in connections.peer_ids() if not connections.get(p).is_closed]

    @property
    def presenter_id(self) -> Optional[str]:
        return self.coordinator.presenter_id
