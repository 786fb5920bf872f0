import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

# — DEFAULTS, OVERRIDE THROUGH THE ENVIRONMENT —
SERIAL_PATH = "/dev/ttyACM0"  # e.g. COM3 on Windows
BAUD_RATE = 9600
HOST = "0.0.0.0"
PORT = 3000
RECONNECT_DELAY = 3.0  # seconds between reopen attempts
PUBLIC_DIR = Path(__file__).resolve().parent / "public"
LOG_LEVEL = "INFO"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _positive_int(raw, default):
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _positive_float(raw, default):
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _log_level(raw):
    level = (raw or "").strip().upper()
    return level if level in LOG_LEVELS else LOG_LEVEL


@dataclass(frozen=True)
class BridgeConfig:
    device: str = SERIAL_PATH
    baudrate: int = BAUD_RATE
    host: str = HOST
    port: int = PORT
    reconnect_delay: float = RECONNECT_DELAY
    max_retries: Optional[int] = None  # None retries forever
    public_dir: Path = PUBLIC_DIR
    log_level: str = LOG_LEVEL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "BridgeConfig":
        """Read the configuration once; bad or missing values keep the default."""
        env = os.environ if environ is None else environ
        public_dir = env.get("PUBLIC_DIR")
        return cls(
            device=env.get("SERIAL_PATH") or SERIAL_PATH,
            baudrate=_positive_int(env.get("BAUD"), BAUD_RATE),
            host=env.get("HOST") or HOST,
            port=_positive_int(env.get("PORT"), PORT),
            reconnect_delay=_positive_float(env.get("RECONNECT_DELAY"), RECONNECT_DELAY),
            max_retries=_positive_int(env.get("MAX_RETRIES"), None),
            public_dir=Path(public_dir) if public_dir else PUBLIC_DIR,
            log_level=_log_level(env.get("LOG_LEVEL")),
        )

    def should_retry(self, failures: int) -> bool:
        return self.max_retries is None or failures <= self.max_retries
