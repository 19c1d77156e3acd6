"""chatwire client: connection manager, dispatcher and state stores for one session."""

from .bus import EventBus
from .commands import CommandEncoder
from .config import ClientConfig, ReconnectPolicy
from .connection import ConnectionManager
from .dispatcher import InboundDispatcher
from .events import FrameError, parse_frame
from .session import RealtimeSession, UnreadCounters
from .state import PresenceStore, TypingStore

__all__ = [
    "ClientConfig",
    "CommandEncoder",
    "ConnectionManager",
    "EventBus",
    "FrameError",
    "InboundDispatcher",
    "PresenceStore",
    "RealtimeSession",
    "ReconnectPolicy",
    "TypingStore",
    "UnreadCounters",
    "parse_frame",
]
