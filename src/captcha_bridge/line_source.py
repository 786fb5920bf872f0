"""Serial line reader that keeps reopening the device until stopped.

Framing is on ``\\n``; the trailing ``\\r`` of a ``\\r\\n`` terminator goes
away with the whitespace trim. A line longer than ``max_line`` bytes is
dropped whole, including any tail that arrives in later reads.
"""
import asyncio
import enum
import logging

import serial
import serial_asyncio

from .exceptions import DeviceOpenError, StreamError

log = logging.getLogger(__name__)

READ_SIZE = 1024
MAX_LINE = 2**16


class LineSourceState(enum.Enum):
    IDLE = "idle"
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"
    STOPPED = "stopped"


def _always_retry(failures):
    return True


class LineSource:
    def __init__(
        self,
        device,
        baudrate,
        reconnect_delay=3.0,
        should_retry=None,
        opener=serial_asyncio.open_serial_connection,
        sleep=asyncio.sleep,
        max_line=MAX_LINE,
    ):
        self.device = device
        self.baudrate = baudrate
        self.reconnect_delay = reconnect_delay
        self.max_line = max_line
        self._should_retry = should_retry or _always_retry
        self._opener = opener
        self._sleep = sleep
        self._line_handlers = []
        self._state_handlers = []
        self._reader = None
        self._writer = None
        self._task = None
        self.state = LineSourceState.IDLE

    def on_line(self, handler):
        self._line_handlers.append(handler)
        return handler

    def on_state(self, handler):
        self._state_handlers.append(handler)
        return handler

    def _set_state(self, state):
        if state is self.state:
            return
        self.state = state
        for handler in self._state_handlers:
            try:
                handler(state)
            except Exception:
                log.exception("[serial] state handler failed")

    async def open(self):
        """Open the device; raises DeviceOpenError if that is not possible."""
        self._set_state(LineSourceState.OPENING)
        try:
            self._reader, self._writer = await self._opener(
                url=self.device, baudrate=self.baudrate)
        except (serial.SerialException, OSError, ValueError) as exc:
            # pyserial raises ValueError for bad URLs and unsupported baud rates
            self._set_state(LineSourceState.CLOSED)
            raise DeviceOpenError(self.device, exc) from exc
        log.info("[serial] open on %s @ %s", self.device, self.baudrate)
        self._set_state(LineSourceState.OPEN)

    def close(self):
        if self._writer is not None:
            self._writer.close()
        self._reader = self._writer = None
        if self.state is LineSourceState.OPEN:
            self._set_state(LineSourceState.CLOSED)

    async def read_lines(self):
        """Deliver lines from the open connection until EOF."""
        reader = self._reader
        buffer = bytearray()
        discarding = False  # inside the tail of an over-long line
        while True:
            try:
                chunk = await reader.read(READ_SIZE)
            except (serial.SerialException, OSError) as exc:
                raise StreamError(str(exc)) from exc
            if not chunk:
                if buffer:
                    log.debug("[serial] dropped partial line %r", bytes(buffer))
                return
            buffer += chunk
            while True:
                end = buffer.find(b"\n")
                if end < 0:
                    break
                raw = bytes(buffer[:end])
                del buffer[:end + 1]
                if discarding:
                    discarding = False
                elif len(raw) > self.max_line:
                    log.warning("[serial] dropped over-long line (%d bytes)", len(raw))
                else:
                    self._dispatch(raw.decode(errors="ignore").strip())
            if len(buffer) > self.max_line:
                log.warning("[serial] dropping over-long line (%d bytes so far)", len(buffer))
                buffer.clear()
                discarding = True

    def _dispatch(self, text):
        log.info("[serial] → %s", text)
        for handler in self._line_handlers:
            try:
                handler(text)
            except Exception:
                log.exception("[serial] line handler failed for %r", text)

    async def run(self):
        failures = 0
        try:
            while True:
                try:
                    await self.open()
                except DeviceOpenError as exc:
                    log.error("[serial] %s", exc)
                else:
                    failures = 0
                    try:
                        await self.read_lines()
                        log.warning("[serial] %s closed", self.device)
                    except StreamError as exc:
                        log.error("[serial] error on %s: %s", self.device, exc)
                    finally:
                        self.close()

                failures += 1
                if not self._should_retry(failures):
                    log.error("[serial] giving up on %s after %d failed attempts",
                              self.device, failures)
                    return
                log.warning("[serial] reopening %s in %ss…", self.device, self.reconnect_delay)
                await self._sleep(self.reconnect_delay)
        finally:
            self.close()
            self._set_state(LineSourceState.STOPPED)

    def start(self):
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
