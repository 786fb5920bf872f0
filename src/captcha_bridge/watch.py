"""Tiny push-channel client: print events as the bridge sends them."""
import argparse
import asyncio

from websockets.asyncio.client import connect

from .router import Event

URI = "ws://localhost:3000/ws"


async def watch(uri, on_event, limit=None):
    """Feed decoded events to ``on_event`` until ``limit`` or server close."""
    seen = 0
    async with connect(uri) as ws:
        async for frame in ws:
            on_event(Event.from_json(frame))
            seen += 1
            if limit is not None and seen >= limit:
                break
    return seen


def _print_event(event):
    print(f"[client] ← {event.name}: {event.data!r}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Print events from a running captcha bridge.")
    parser.add_argument("uri", nargs="?", default=URI)
    parser.add_argument("--limit", type=int, default=None, help="exit after N events")
    args = parser.parse_args(argv)
    try:
        asyncio.run(watch(args.uri, _print_event, args.limit))
    except KeyboardInterrupt:
        print("\n[client] Exiting…")


if __name__ == "__main__":
    main()
