"""Peer mesh: connections, handshake, coordination and media control."""

from vortex_mesh.mesh.connection import ConnectionState, PeerConnection
from vortex_mesh.mesh.coordinator import MeshCoordinator
from vortex_mesh.mesh.handshake import HandshakeProtocol
from vortex_mesh.mesh.recovery import RecoveryMonitor, RecoveryReport
from vortex_mesh.mesh.registry import (
    ConnectionRegistry,
    RemoteStream,
    RemoteStreamRegistry,
)
from vortex_mesh.mesh.screen_share import (
    EncodingCap,
    ScreenShareController,
    compute_encoding_cap,
)
from vortex_mesh.mesh.stats import (
    BandwidthStats,
    BandwidthStatsPoller,
    format_rate,
    format_total,
)
from vortex_mesh.mesh.transport import PeerTransport

__all__ = [
    "ConnectionState",
    "PeerConnection",
    "MeshCoordinator",
    "HandshakeProtocol",
    "RecoveryMonitor",
    "RecoveryReport",
    "ConnectionRegistry",
    "RemoteStream",
    "RemoteStreamRegistry",
    "EncodingCap",
    "ScreenShareController",
    "compute_encoding_cap",
    "BandwidthStats",
    "BandwidthStatsPoller",
    "format_rate",
    "format_total",
    "PeerTransport",
]
