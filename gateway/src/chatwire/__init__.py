"""chatwire gateway: the multiplexed per-user chat and notification channel."""

from .channel import ChatChannel, InvalidCommand
from .consent import ConsentError, ConsentGate, ConsentPolicy
from .hub import Connection, ConnectionHub
from .notifications import NotificationFanout
from .server import main, simulate
from .ws_transport import Runtime, build_runtime, create_app

__all__ = [
    "ChatChannel",
    "InvalidCommand",
    "ConsentError",
    "ConsentGate",
    "ConsentPolicy",
    "Connection",
    "ConnectionHub",
    "NotificationFanout",
    "Runtime",
    "build_runtime",
    "create_app",
    "main",
    "simulate",
]
