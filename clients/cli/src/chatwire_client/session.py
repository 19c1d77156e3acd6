from __future__ import annotations

from typing import Any, Callable, Optional

import aiohttp

from . import bus as topics
from .bus import EventBus
from .commands import CommandEncoder
from .config import ClientConfig
from .connection import ConnectionManager
from .dispatcher import InboundDispatcher
from .events import MessageNotificationsRead
from .state import PresenceStore, Scheduler, TypingStore


class UnreadCounters:
    """Unread message and notification badges driven by bus events."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self.messages = 0
        self.notifications = 0
        self._subscriptions = [
            bus.subscribe(topics.MESSAGE_RECEIVED, self._on_message_received),
            bus.subscribe(topics.NOTIFICATION_RECEIVED, self._on_notification_received),
            bus.subscribe(topics.MESSAGE_READ, self._on_message_read),
        ]

    def seed(self, messages: int, notifications: int) -> None:
        self.messages = max(0, messages)
        self.notifications = max(0, notifications)
        self._changed()

    def detach(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions = []

    def _on_message_received(self, _: Any) -> None:
        self.messages += 1
        self._changed()

    def _on_notification_received(self, _: Any) -> None:
        self.notifications += 1
        self._changed()

    def _on_message_read(self, event: MessageNotificationsRead) -> None:
        self.messages = max(0, self.messages - event.count)
        self._changed()

    def _changed(self) -> None:
        self.bus.publish(topics.COUNTERS_CHANGED, {"messages": self.messages, "notifications": self.notifications})


class RealtimeSession:
    """Composition root for one signed-in client."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        bus: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ) -> None:
        self.config = config
        self.bus = bus or EventBus()
        self.presence = PresenceStore()
        self.typing = TypingStore(config.typing_ttl_s, scheduler=scheduler, on_change=self._typing_changed)
        self.counters = UnreadCounters(self.bus)
        self.dispatcher = InboundDispatcher(self.bus, self.presence, self.typing)
        self.connection = ConnectionManager(
            config,
            self.dispatcher,
            self.bus,
            scheduler=scheduler,
            session_factory=session_factory,
        )
        self.commands = CommandEncoder(self.connection)

    async def start(self) -> None:
        await self.connection.connect()

    async def logout(self) -> None:
        await self.connection.logout()
        self.typing.clear()

    def _typing_changed(self, user_id: str, is_typing: bool) -> None:
        self.bus.publish(topics.TYPING_CHANGED, {"userId": user_id, "isTyping": is_typing})
