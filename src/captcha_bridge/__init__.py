"""Serial-to-WebSocket bridge that caches the last CAPTCHA line."""

from .config import BridgeConfig
from .exceptions import BridgeError, DeviceOpenError, StreamError
from .line_source import LineSource, LineSourceState
from .router import CAPTCHA_PREFIX, Event, EventRouter

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "CAPTCHA_PREFIX",
    "DeviceOpenError",
    "Event",
    "EventRouter",
    "LineSource",
    "LineSourceState",
    "StreamError",
]

__version__ = "0.1.0"
