"""Classify serial lines, cache the last CAPTCHA and fan events out."""
import json
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

log = logging.getLogger(__name__)

CAPTCHA_PREFIX = "CAPTCHA:"

SERIAL_EVENT = "serial"
CAPTCHA_EVENT = "captcha"
STATUS_EVENT = "status"


@dataclass(frozen=True)
class Event:
    name: str
    data: str

    def to_json(self) -> str:
        return json.dumps({"event": self.name, "data": self.data})

    @classmethod
    def from_json(cls, text) -> "Event":
        payload = json.loads(text)
        return cls(payload["event"], payload["data"])


class Subscriber(Protocol):
    def notify(self, event: Event) -> None: ...


def extract_captcha(text: str) -> Optional[str]:
    """Return the trimmed value after ``CAPTCHA:``, or None for other lines.

    Only the first colon separates; ``CAPTCHA:ab:cd`` gives ``ab:cd``.
    """
    if not text.startswith(CAPTCHA_PREFIX):
        return None
    return text.split(":", 1)[1].strip()


class EventRouter:
    def __init__(self):
        self._subscribers = []
        self._cached_value: Optional[str] = None

    @property
    def cached_value(self) -> Optional[str]:
        return self._cached_value

    @property
    def subscribers(self):
        return tuple(self._subscribers)

    def on_line(self, text: str) -> None:
        self.publish(Event(SERIAL_EVENT, text))
        captcha = extract_captcha(text)
        if captcha is None:
            return
        self._cached_value = captcha
        log.info("[router] captcha → %r", captcha)
        self.publish(Event(CAPTCHA_EVENT, captcha))

    def on_status(self, state) -> None:
        self.publish(Event(STATUS_EVENT, state.value))

    def publish(self, event: Event) -> None:
        # copy: a subscriber may unsubscribe while being notified
        for subscriber in tuple(self._subscribers):
            subscriber.notify(event)

    def subscribe(self, subscriber: Subscriber) -> Subscriber:
        self._subscribers.append(subscriber)
        # "" from a bare "CAPTCHA:" line is a value too and is replayed
        if self._cached_value is not None:
            subscriber.notify(Event(CAPTCHA_EVENT, self._cached_value))
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        try:
            self._subscribers.remove(subscriber)
        except ValueError:
            pass
