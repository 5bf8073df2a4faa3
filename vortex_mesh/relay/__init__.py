"""Signaling relay implementations."""

from vortex_mesh.relay.base import (
    ADDED,
    MODIFIED,
    REMOVED,
    DocumentChange,
    SignalingRelay,
    Subscription,
)
from vortex_mesh.relay.memory import InMemoryRelay
from vortex_mesh.relay.server import RelayServer
from vortex_mesh.relay.websocket import WebSocketRelay

__all__ = [
    "ADDED",
    "MODIFIED",
    "REMOVED",
    "DocumentChange",
    "SignalingRelay",
    "Subscription",
    "InMemoryRelay",
    "RelayServer",
    "WebSocketRelay",
]
