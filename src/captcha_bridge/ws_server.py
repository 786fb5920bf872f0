"""FastAPI app for the push channel, GET /api/captcha and the static client.

The line source is started and stopped by the app lifespan, so the server
keeps accepting clients and answering HTTP while a reopen is pending.
"""
import argparse
import asyncio
import dataclasses
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, WebSocket, status
from fastapi.staticfiles import StaticFiles

from .config import LOG_LEVELS, BridgeConfig
from .line_source import LineSource
from .router import EventRouter

log = logging.getLogger(__name__)

WS_PATH = "/ws"
CAPTCHA_PATH = "/api/captcha"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class WebSocketSubscriber:
    """Router subscriber that queues events for one client, in order."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.queue: "asyncio.Queue" = asyncio.Queue()

    def notify(self, event) -> None:
        self.queue.put_nowait(event)

    async def pump(self) -> None:
        while True:
            event = await self.queue.get()
            await self.websocket.send_text(event.to_json())


def create_app(router: EventRouter, public_dir, source: Optional[LineSource] = None) -> FastAPI:
    """Build the app around ``router``; ``source`` runs for the app's lifetime."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if source is not None:
            source.start()
        try:
            yield
        finally:
            if source is not None:
                await source.stop()

    app = FastAPI(title="CAPTCHA bridge", lifespan=lifespan)
    app.state.router = router

    @app.get(CAPTCHA_PATH)
    def get_captcha() -> Dict[str, Any]:
        return {"captcha": router.cached_value}

    @app.websocket(WS_PATH)
    async def push_channel(websocket: WebSocket) -> None:
        await websocket.accept()
        log.info("[server] client connected %s", websocket.client)
        subscriber = router.subscribe(WebSocketSubscriber(websocket))
        sender = asyncio.create_task(subscriber.pump())
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                log.debug("[server] ← %r (ignored)", message.get("text") or message.get("bytes"))
        finally:
            router.unsubscribe(subscriber)
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            log.info("[server] client disconnected %s", websocket.client)

    @app.websocket("/{path:path}")
    async def unknown_channel(websocket: WebSocket, path: str) -> None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)

    # mounted last: every path not matched above is a static file lookup
    app.mount("/", StaticFiles(directory=Path(public_dir), html=True), name="public")
    return app


def build_server(config: BridgeConfig, source: Optional[LineSource] = None) -> uvicorn.Server:
    """Wire line source → router → app and return an unstarted uvicorn server."""
    if source is None:
        source = LineSource(
            config.device,
            config.baudrate,
            reconnect_delay=config.reconnect_delay,
            should_retry=config.should_retry,
        )
    router = EventRouter()
    source.on_line(router.on_line)
    source.on_state(router.on_status)
    app = create_app(router, config.public_dir, source=source)
    return uvicorn.Server(uvicorn.Config(
        app, host=config.host, port=config.port, log_level=config.log_level.lower()))


async def serve_bridge(config: BridgeConfig) -> None:
    log.info("[server] listening on http://%s:%s (push channel %s)",
             config.host, config.port, WS_PATH)
    await build_server(config).serve()


def parse_args(argv=None, defaults=None):
    defaults = defaults or BridgeConfig.from_env()
    parser = argparse.ArgumentParser(
        description="Republish serial lines to WebSocket clients and cache the last CAPTCHA.")
    parser.add_argument("--device", default=defaults.device, help="serial device (SERIAL_PATH)")
    parser.add_argument("--baud", type=int, default=defaults.baudrate, help="baud rate (BAUD)")
    parser.add_argument("--host", default=defaults.host, help="listen address (HOST)")
    parser.add_argument("--port", type=int, default=defaults.port, help="listen port (PORT)")
    parser.add_argument("--reconnect-delay", type=float, default=defaults.reconnect_delay,
                        help="seconds between reopen attempts (RECONNECT_DELAY)")
    parser.add_argument("--max-retries", type=int, default=defaults.max_retries,
                        help="stop reopening after this many failures (MAX_RETRIES)")
    parser.add_argument("--public-dir", type=Path, default=defaults.public_dir,
                        help="static client files (PUBLIC_DIR)")
    parser.add_argument("--log-level", default=defaults.log_level,
                        choices=LOG_LEVELS,
                        type=str.upper, help="(LOG_LEVEL)")
    args = parser.parse_args(argv)
    return dataclasses.replace(
        defaults,
        device=args.device,
        baudrate=args.baud,
        host=args.host,
        port=args.port,
        reconnect_delay=args.reconnect_delay,
        max_retries=args.max_retries,
        public_dir=args.public_dir,
        log_level=args.log_level,
    )


def main(argv=None):
    config = parse_args(argv)
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    try:
        asyncio.run(serve_bridge(config))
    except KeyboardInterrupt:
        log.info("[server] exiting…")


if __name__ == "__main__":
    main()
