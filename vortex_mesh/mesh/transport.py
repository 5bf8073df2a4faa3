"""Adapter over aiortc's ``RTCPeerConnection``.

The mesh only talks to peer connections through ``PeerTransport``. The
adapter smooths over the parts of the W3C surface aiortc lacks (track
removal, ICE restart, encoder parameters) and gives tests a single seam to
replace.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)

logger = logging.getLogger(__name__)

TRANSPORT_EVENTS = (
    "connectionstatechange",
    "iceconnectionstatechange",
    "icecandidate",
    "signalingstatechange",
    "track",
)


@dataclass
class TransportCounters:
    """Cumulative byte counters of one transport.

    Attributes:
        bytes_sent: Total RTP payload bytes sent.
        bytes_received: Total RTP payload bytes received.
    """

    bytes_sent: int = 0
    bytes_received: int = 0


def build_configuration(ice_servers: List[Dict[str, Any]]) -> RTCConfiguration:
    """Build an aiortc configuration from ``{urls, username?, credential?}`` dicts."""
    return RTCConfiguration(iceServers=[RTCIceServer(**server) for server in ice_servers])


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class PeerTransport:
    """A single WebRTC peer connection.

    Args:
        ice_servers: ICE server dicts for ``RTCIceServer``.
        pc: Existing peer connection to wrap (a new one is created if omitted).
    """

    def __init__(
        self,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        pc: Optional[RTCPeerConnection] = None,
    ):
        self.pc = pc or RTCPeerConnection(build_configuration(ice_servers or []))

    # ── state ────────────────────────────────────────────────────────────

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def ice_connection_state(self) -> str:
        return self.pc.iceConnectionState

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState

    @property
    def local_description(self) -> Optional[RTCSessionDescription]:
        return self.pc.localDescription

    @property
    def remote_description(self) -> Optional[RTCSessionDescription]:
        return self.pc.remoteDescription

    def on(self, event: str, handler: Callable):
        """Register ``handler`` for a transport event.

        Args:
            event: One of ``TRANSPORT_EVENTS``.
            handler: Sync or async callable; ``icecandidate`` and ``track``
                handlers receive the candidate / track.
        """
        if event not in TRANSPORT_EVENTS:
            raise ValueError(f"Unknown transport event: {event}")
        self.pc.on(event, handler)

    # ── tracks ───────────────────────────────────────────────────────────

    def add_track(self, track: MediaStreamTrack) -> RTCRtpSender:
        """Attach a local track, reusing an idle transceiver of the same kind."""
        return self.pc.addTrack(track)

    def ensure_transceiver(self, kind: str):
        """Make sure offers carry an m-line of ``kind`` the remote side can send on."""
        for transceiver in self.pc.getTransceivers():
            if transceiver.kind == kind:
                return
        self.pc.addTransceiver(kind, direction="recvonly")

    def sender_for(self, kind: str) -> Optional[RTCRtpSender]:
        """Return the sender currently carrying a track of ``kind``."""
        for sender in self.pc.getSenders():
            if sender.track is not None and sender.track.kind == kind:
                return sender
        return None

    def has_sender(self, kind: str) -> bool:
        """Return True if a negotiated sending transceiver of ``kind`` exists."""
        for transceiver in self.pc.getTransceivers():
            if transceiver.kind == kind and transceiver.direction in ("sendrecv", "sendonly"):
                return True
        return False

    async def replace_track(self, kind: str, track: Optional[MediaStreamTrack]) -> bool:
        """Swap the outgoing track of ``kind`` without renegotiating.

        Returns:
            False if no sending transceiver of that kind exists.
        """
        for transceiver in self.pc.getTransceivers():
            if transceiver.kind == kind and transceiver.direction in ("sendrecv", "sendonly"):
                await _maybe_await(transceiver.sender.replaceTrack(track))
                return True
        return False

    async def remove_track(self, kind: str) -> bool:
        """Stop sending ``kind``; renegotiation is the caller's job.

        Returns:
            True if a sending transceiver was found.
        """
        for transceiver in self.pc.getTransceivers():
            if transceiver.kind == kind and transceiver.direction in ("sendrecv", "sendonly"):
                await _maybe_await(transceiver.sender.replaceTrack(None))
                transceiver.direction = (
                    "recvonly" if transceiver.direction == "sendrecv" else "inactive"
                )
                return True
        return False

    # ── negotiation ──────────────────────────────────────────────────────

    async def create_offer(self) -> RTCSessionDescription:
        return await self.pc.createOffer()

    async def create_answer(self) -> RTCSessionDescription:
        return await self.pc.createAnswer()

    async def set_local_description(self, description: RTCSessionDescription):
        await self.pc.setLocalDescription(description)

    async def set_remote_description(self, description: RTCSessionDescription):
        await self.pc.setRemoteDescription(description)

    async def add_ice_candidate(self, candidate: RTCIceCandidate):
        await self.pc.addIceCandidate(candidate)

    def restart_ice(self) -> bool:
        """Request fresh ICE candidates on the next offer.

        Returns:
            False if the underlying connection has no ICE restart support;
            the caller then renegotiates with a plain new offer.
        """
        restart = getattr(self.pc, "restartIce", None)
        if not callable(restart):
            return False
        restart()
        return True

    # ── parameters and stats ─────────────────────────────────────────────

    async def set_video_encoding(self, max_bitrate: int, max_framerate: int) -> bool:
        """Cap the outgoing video encoder.

        aiortc has no ``setParameters``; the bitrate goes straight to the
        encoder and the frame rate is left to the capture source.

        Returns:
            True if a video sender accepted the cap. False until the sender
            has encoded its first frame.
        """
        sender = self.sender_for("video")
        if sender is None:
            return False

        # aiortc internal: the encoder is private and created lazily
        encoder = getattr(sender, "_RTCRtpSender__encoder", None)
        if encoder is not None and hasattr(encoder, "target_bitrate"):
            encoder.target_bitrate = max_bitrate
            logger.debug(f"Video encoder capped at {max_bitrate} bps")
            return True

        logger.debug("Video sender exposes no encoder yet")
        return False

    async def get_counters(self) -> TransportCounters:
        """Sum RTP byte counters across all streams.

        aiortc's inbound RTP stats carry no byte count, so received bytes come
        from the DTLS transport stats unless a stream reports them.
        """
        report = await self.pc.getStats()
        counters = TransportCounters()
        rtp_received: Optional[int] = None
        transport_received = 0
        for stats in report.values():
            if stats.type == "outbound-rtp":
                counters.bytes_sent += getattr(stats, "bytesSent", 0) or 0
            elif stats.type == "inbound-rtp":
                received = getattr(stats, "bytesReceived", None)
                if received is not None:
                    rtp_received = (rtp_received or 0) + received
            elif stats.type == "transport":
                transport_received += getattr(stats, "bytesReceived", 0) or 0
        counters.bytes_received = (
            rtp_received if rtp_received is not None else transport_received
        )
        return counters

    def selected_route(self) -> Optional[Tuple[str, str]]:
        """Return (local, remote) candidate types of the nominated pair, if known."""
        for transceiver in self.pc.getTransceivers():
            dtls = transceiver.sender.transport
            ice = getattr(dtls, "transport", None)
            # aiortc internal: aioice connection behind RTCIceTransport
            connection = getattr(ice, "_connection", None)
            nominated = getattr(connection, "_nominated", None)
            if not nominated:
                continue
            pair = next(iter(nominated.values()))
            return pair.local_candidate.type, pair.remote_candidate.type
        return None

    async def close(self):
        await self.pc.close()
