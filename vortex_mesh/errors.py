"""Exceptions raised by vortex-mesh."""


class VortexMeshError(Exception):
    """Base class for all vortex-mesh errors."""

    pass


class RelayError(VortexMeshError):
    """Raised when a signaling relay operation fails."""

    pass


class RelayNotFoundError(RelayError):
    """Raised when a relay document does not exist.

    Deletes treat this as success: another path already cleaned up.
    """

    pass


class ConnectionExistsError(VortexMeshError):
    """Raised when a second live Connection is registered for the same peer."""

    pass


class DeviceUnavailableError(VortexMeshError):
    """Raised when a capture device (microphone or screen) cannot be opened."""

    pass


class ScreenShareError(VortexMeshError):
    """Raised when starting a screen share fails.

    Attributes:
        cause: The underlying exception, if any.
    """

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause
