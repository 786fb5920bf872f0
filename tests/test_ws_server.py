from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest
import serial
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from websockets.asyncio.client import connect

from captcha_bridge.config import BridgeConfig
from captcha_bridge.line_source import LineSource, LineSourceState
from captcha_bridge.router import Event, EventRouter
from captcha_bridge.watch import watch
from captcha_bridge.ws_server import build_server, create_app


@pytest.fixture
def public_dir(tmp_path: Path) -> Path:
    public = tmp_path / "public"
    (public / "js").mkdir(parents=True)
    (public / "index.html").write_text("<h1>bridge</h1>")
    (public / "js" / "app.js").write_text("console.log('hi')")
    (tmp_path / "secret.txt").write_text("do not serve")
    return public


@pytest.fixture
def router() -> EventRouter:
    return EventRouter()


@pytest.fixture
def client(router: EventRouter, public_dir: Path) -> TestClient:
    return TestClient(create_app(router, public_dir))


def test_captcha_endpoint_is_null_before_any_capture(client: TestClient) -> None:
    response = client.get("/api/captcha")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    assert response.json() == {"captcha": None}


def test_captcha_endpoint_tracks_cached_value(client: TestClient, router: EventRouter) -> None:
    router.on_line("CAPTCHA: 9F3K")
    assert client.get("/api/captcha").json() == {"captcha": "9F3K"}

    router.on_line("CAPTCHA:")
    assert client.get("/api/captcha", params={"t": 1}).json() == {"captcha": ""}


def test_root_serves_index_html(client: TestClient) -> None:
    response = client.get("/")

    assert response.status_code == 200
    assert response.text == "<h1>bridge</h1>"
    assert response.headers["content-type"].startswith("text/html")


def test_nested_static_file(client: TestClient) -> None:
    response = client.get("/js/app.js")

    assert response.status_code == 200
    assert response.text == "console.log('hi')"


@pytest.mark.parametrize("path", ["/missing.css", "/%2e%2e/secret.txt"])
def test_unknown_or_escaping_paths_are_404(client: TestClient, path: str) -> None:
    assert client.get(path).status_code == 404


def test_late_websocket_client_gets_replay(client: TestClient, router: EventRouter) -> None:
    router.on_line("CAPTCHA: abc")

    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"event": "captcha", "data": "abc"}


def test_push_channel_only_on_its_path(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/socket.io"):
            pass


class _Opener:
    """Fails the first open, then hands out a reader that stays open."""

    def __init__(self, reader: asyncio.StreamReader) -> None:
        self.reader = reader
        self.calls = 0

    async def __call__(self, **kwargs):
        self.calls += 1
        if self.calls == 1:
            raise serial.SerialException("could not open port")
        return self.reader, _Writer()


class _Writer:
    def close(self) -> None:
        pass


class _Gate:
    """Reconnect delay that lasts until the test releases it."""

    def __init__(self) -> None:
        self.event = asyncio.Event()
        self.waiting = 0

    async def __call__(self, delay: float) -> None:
        self.waiting += 1
        await self.event.wait()


async def _until(condition, what: str) -> None:
    for _ in range(500):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"timed out waiting for {what}")


@pytest.mark.asyncio
async def test_bridge_serves_while_reopen_pending_and_forwards_lines(public_dir: Path) -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"hello\r\nCAPTCHA: 7QX\r\n")
    gate = _Gate()
    source = LineSource("/dev/ttyTEST0", 9600, reconnect_delay=30, opener=_Opener(reader), sleep=gate)
    config = BridgeConfig(host="127.0.0.1", port=0, public_dir=public_dir, log_level="WARNING")

    server = build_server(config, source=source)
    router = server.config.app.state.router
    serving = asyncio.create_task(server.serve())
    try:
        await _until(lambda: server.started, "server start")
        port = server.servers[0].sockets[0].getsockname()[1]
        base = f"http://127.0.0.1:{port}"

        # first open failed; the reopen is parked on the gate
        await _until(lambda: gate.waiting == 1, "pending reopen")
        assert source.state is LineSourceState.CLOSED

        async with httpx.AsyncClient(base_url=base) as http:
            assert (await http.get("/api/captcha")).json() == {"captcha": None}
            assert (await http.get("/")).status_code == 200

            async with connect(f"ws://127.0.0.1:{port}/ws") as ws:
                await _until(lambda: len(router.subscribers) == 1, "subscription")
                gate.event.set()

                frames = [json.loads(await ws.recv()) for _ in range(5)]
                assert frames == [
                    {"event": "status", "data": "opening"},
                    {"event": "status", "data": "open"},
                    {"event": "serial", "data": "hello"},
                    {"event": "serial", "data": "CAPTCHA: 7QX"},
                    {"event": "captcha", "data": "7QX"},
                ]

            assert (await http.get("/api/captcha")).json() == {"captcha": "7QX"}

        seen: list[Event] = []
        assert await watch(f"ws://127.0.0.1:{port}/ws", seen.append, limit=1) == 1
        assert seen == [Event("captcha", "7QX")]

        await _until(lambda: not router.subscribers, "unsubscribe on disconnect")
    finally:
        server.should_exit = True
        await serving

    assert source.state is LineSourceState.STOPPED
