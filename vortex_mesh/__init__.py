"""vortex-mesh: full-mesh WebRTC room sessions over a document-store relay."""

from vortex_mesh.session import RoomSession, SessionEvent

__version__ = "0.1.0"

__all__ = ["RoomSession", "SessionEvent", "__version__"]
