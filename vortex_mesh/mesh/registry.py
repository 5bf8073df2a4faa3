"""Owned registries for live connections and remote media streams.

Only the mesh coordinator and the connection teardown path mutate these.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from aiortc import MediaStreamTrack

from vortex_mesh.errors import ConnectionExistsError
from vortex_mesh.mesh.connection import PeerConnection

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """At most one live ``PeerConnection`` per remote peer."""

    def __init__(self):
        self._connections: Dict[str, PeerConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._connections

    def __iter__(self) -> Iterator[PeerConnection]:
        return iter(list(self._connections.values()))

    def get(self, peer_id: str) -> Optional[PeerConnection]:
        return self._connections.get(peer_id)

    def peer_ids(self) -> List[str]:
        return sorted(self._connections)

    def add(self, connection: PeerConnection):
        """Register a connection.

        Raises:
            ConnectionExistsError: If a live connection to the peer exists.
        """
        existing = self._connections.get(connection.peer_id)
        if existing is not None and not existing.is_closed:
            raise ConnectionExistsError(
                f"Connection to {connection.peer_id} already registered"
            )
        self._connections[connection.peer_id] = connection

    def remove(self, connection: PeerConnection) -> bool:
        """Remove ``connection`` if it is still the registered one for its peer."""
        if self._connections.get(connection.peer_id) is connection:
            del self._connections[connection.peer_id]
            return True
        return False


@dataclass
class RemoteStream:
    """Media received from one remote peer.

    Attributes:
        peer_id: Remote peer id.
        tracks: Received tracks by track id.
    """

    peer_id: str
    tracks: Dict[str, MediaStreamTrack] = field(default_factory=dict)

    def track(self, kind: str) -> Optional[MediaStreamTrack]:
        for track in self.tracks.values():
            if track.kind == kind:
                return track
        return None


StreamListener = Callable[[str, Optional[RemoteStream]], None]


class RemoteStreamRegistry:
    """Remote streams by peer id, with change listeners.

    Listeners receive ``(peer_id, stream)``; ``stream`` is None when the
    peer's entry is removed.
    """

    def __init__(self):
        self._streams: Dict[str, RemoteStream] = {}
        self._listeners: List[StreamListener] = []

    def __len__(self) -> int:
        return len(self._streams)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._streams

    def get(self, peer_id: str) -> Optional[RemoteStream]:
        return self._streams.get(peer_id)

    def peer_ids(self) -> List[str]:
        return sorted(self._streams)

    def add_listener(self, listener: StreamListener):
        self._listeners.append(listener)

    def add_track(self, peer_id: str, track: MediaStreamTrack) -> bool:
        """Record a received track; duplicate deliveries are ignored.

        Returns:
            True if the track was new.
        """
        stream = self._streams.setdefault(peer_id, RemoteStream(peer_id))
        if track.id in stream.tracks:
            return False
        stream.tracks[track.id] = track
        logger.info(f"Remote {track.kind} track from {peer_id}")
        self._notify(peer_id, stream)
        return True

    def remove_track(self, peer_id: str, track: MediaStreamTrack):
        stream = self._streams.get(peer_id)
        if stream is None or stream.tracks.pop(track.id, None) is None:
            return
        self._notify(peer_id, stream)

    def remove(self, peer_id: str) -> bool:
        if self._streams.pop(peer_id, None) is None:
            return False
        self._notify(peer_id, None)
        return True

    def _notify(self, peer_id: str, stream: Optional[RemoteStream]):
        for listener in list(self._listeners):
            try:
                listener(peer_id, stream)
            except Exception as e:
                logger.error(f"Remote stream listener failed for {peer_id}: {e}")
