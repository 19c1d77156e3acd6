"""chatwire gateway CLI: run the aiohttp server or replay frames offline."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Iterable, TextIO

from aiohttp import web

from .channel import InvalidCommand
from .consent import ConsentError, ConsentPolicy
from .hub import Connection
from .ws_transport import build_runtime, create_app


def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Run command frames through an in-memory channel and emit pushed frames.

    Every input frame carries the acting ``userId``. Besides the client
    commands the channel understands, ``user`` seeds a profile, ``connect``
    and ``disconnect`` toggle a user's socket, and ``viewProfile`` /
    ``likeProfile`` trigger the notification fan-out.
    """

    runtime = build_runtime()
    connections: dict[str, Connection] = {}

    def deliver_for(user_id: str):
        def _deliver(frame: dict, user: str = user_id) -> None:
            output.write(json.dumps({"to": user, "frame": frame}, sort_keys=True) + "\n")

        return _deliver

    for frame in frames:
        frame_type = frame.get("type")
        user_id = frame.get("userId")
        if not isinstance(user_id, str):
            raise ValueError(f"userId required for frame: {frame_type}")
        if frame_type == "user":
            runtime.users.upsert(user_id, frame.get("firstName", user_id), frame.get("profilePhoto"))
        elif frame_type == "connect":
            connection, _ = runtime.hub.register(user_id, deliver_for(user_id))
            connections[user_id] = connection
            runtime.channel.connected(user_id)
        elif frame_type == "disconnect":
            connection = connections.pop(user_id, None)
            if connection is not None and runtime.hub.unregister(connection):
                runtime.channel.disconnected(user_id)
        elif frame_type == "viewProfile":
            runtime.notifications.profile_viewed(user_id, frame["targetId"])
        elif frame_type == "likeProfile":
            runtime.notifications.profile_liked(user_id, frame["targetId"])
        else:
            try:
                runtime.channel.handle(user_id, frame)
            except InvalidCommand as exc:
                runtime.hub.send_to_user(user_id, {"type": "error", "code": "invalid_request", "message": str(exc)})
            except (PermissionError, ConsentError, ValueError) as exc:
                runtime.hub.send_to_user(user_id, {"type": "error", "code": "rejected", "message": str(exc)})


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file:
            frames = _load_frames(args.file)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    policy = ConsentPolicy(
        allow_rerequest_after_reject=args.allow_rerequest,
        rerequest_cooldown_s=args.rerequest_cooldown,
    )
    app = create_app(ping_interval_s=args.ping_interval, db_path=args.db, consent_policy=policy)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="chatwire gateway")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay command frames through the channel")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument(
        "--allow-rerequest",
        action="store_true",
        help="Let a requester ask again after a rejected chat request",
    )
    serve_parser.add_argument(
        "--rerequest-cooldown",
        type=int,
        default=0,
        help="Seconds a rejected requester must wait before asking again",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout)
    return _run_serve(args)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
