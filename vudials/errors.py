"""Domain-specific errors for the VU dials hub library."""


class VUDialsError(Exception):
    """Base error for vudials."""


class InvalidArgumentError(VUDialsError, ValueError):
    """Raised before any wire traffic when a caller passes an out-of-range argument."""


class NotConnectedError(VUDialsError):
    """Raised when the hub transport is not open."""


class DisconnectedError(NotConnectedError):
    """Raised when the serial line failed mid-session."""


class PortNotFoundError(VUDialsError):
    """Raised when no serial port matching the hub could be found or opened."""


class HandshakeFailedError(VUDialsError):
    """Raised when a port opened but did not answer like a hub."""


class ExchangeTimeoutError(VUDialsError):
    """Raised when a request got no complete response within its timeout."""

    def __init__(self, message: str, consecutive: int = 1):
        super().__init__(message)
        self.consecutive = consecutive


class FrameParseError(VUDialsError):
    """Raised on malformed or incomplete frames."""


class UnknownDeviceError(VUDialsError):
    """Raised when a UID is not part of the current registry."""


class HubStatusError(VUDialsError):
    """Raised when the hub answers with a non-OK status code."""

    def __init__(self, message: str, status=None):
        super().__init__(message)
        self.status = status


class DeviceOfflineError(HubStatusError):
    """Raised when the hub reports a dial as offline."""


class I2CError(HubStatusError):
    """Raised when the hub reports an I2C bus error."""
