from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any, TextIO

from .bus import ALL_TOPICS
from .config import ClientConfig, ReconnectPolicy
from .session import RealtimeSession

HELP = (
    "/open USER | /close USER | /typing USER on|off | /msg USER TEXT | "
    "/accept CONSENT | /reject CONSENT | /quit"
)


def _jsonable(payload: Any) -> Any:
    if dataclasses.is_dataclass(payload) and not isinstance(payload, type):
        return {"event": type(payload).__name__, **dataclasses.asdict(payload)}
    return payload


def _printer(topic: str, out: TextIO):
    def _print(payload: Any) -> None:
        out.write(json.dumps({"topic": topic, "payload": _jsonable(payload)}, sort_keys=True) + "\n")
        out.flush()

    return _print


async def handle_line(session: RealtimeSession, line: str, out: TextIO) -> bool:
    """Run one console command; returns False when the console should exit."""

    parts = line.strip().split(" ", 2)
    command = parts[0] if parts else ""
    commands = session.commands
    if not command:
        return True
    if command == "/quit":
        return False
    if command == "/open" and len(parts) >= 2:
        sent = await commands.open_chat_window(parts[1])
    elif command == "/close" and len(parts) >= 2:
        sent = await commands.close_chat_window(parts[1])
    elif command == "/typing" and len(parts) == 3:
        sent = await commands.send_typing(parts[1], parts[2] == "on")
    elif command == "/msg" and len(parts) == 3:
        sent = await commands.send_message(parts[1], content=parts[2]) is not None
    elif command in ("/accept", "/reject") and len(parts) >= 2:
        sent = await commands.respond_to_consent(parts[1], command == "/accept")
    else:
        out.write(HELP + "\n")
        return True
    if not sent:
        out.write("not connected; command dropped\n")
    return True


async def _run(config: ClientConfig, out: TextIO) -> int:
    session = RealtimeSession(config)
    for topic in ALL_TOPICS:
        session.bus.subscribe(topic, _printer(topic, out))
    await session.start()
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            if not await handle_line(session, line, out):
                break
    finally:
        await session.logout()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="chatwire console client")
    parser.add_argument("--url", default="ws://127.0.0.1:8080/ws", help="Gateway WebSocket URL")
    parser.add_argument("--token", required=True, help="Session token from /v1/session/start")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument(
        "--fixed-reconnect",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Reconnect after a fixed delay forever instead of backing off",
    )
    parser.add_argument("--typing-ttl", type=float, default=3.0, help="Seconds before a typing flag expires")
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    reconnect = ReconnectPolicy() if args.fixed_reconnect is None else ReconnectPolicy.fixed(args.fixed_reconnect)
    config = ClientConfig(
        url=args.url,
        session_token=args.token,
        typing_ttl_s=args.typing_ttl,
        reconnect=reconnect,
    )
    try:
        return asyncio.run(_run(config, sys.stdout))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
