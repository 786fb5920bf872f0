"""Exceptions raised by the serial side of the bridge."""


class BridgeError(Exception):
    """Base class for captcha-bridge errors."""


class DeviceOpenError(BridgeError, ConnectionError):
    """The serial device could not be opened (missing, busy, no permission)."""

    def __init__(self, device, reason):
        super().__init__(f"cannot open {device}: {reason}")
        self.device = device
        self.reason = reason


class StreamError(BridgeError):
    """I/O fault on an already open serial connection."""
