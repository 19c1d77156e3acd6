from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from . import bus as topics
from .bus import EventBus
from .events import (
    EVENT_TYPES,
    ChannelError,
    ConsentAccepted,
    ConsentPending,
    ConsentRejected,
    ConsentRequest,
    CountUpdate,
    InboundEvent,
    MessageConfirmed,
    MessageNotificationsRead,
    NewMessage,
    NewNotification,
    Ping,
    PresenceChanged,
    SessionReady,
    UserTyping,
)
from .state import PresenceStore, TypingStore

logger = logging.getLogger(__name__)


class InboundDispatcher:
    """Routes parsed frames to the stores and onto the bus."""

    def __init__(self, bus: EventBus, presence: PresenceStore, typing: TypingStore) -> None:
        self.bus = bus
        self.presence = presence
        self.typing = typing
        self._handlers: Dict[type, Callable[[Any], None]] = {
            NewMessage: self._on_new_message,
            MessageConfirmed: self._on_message_confirmed,
            UserTyping: self._on_user_typing,
            PresenceChanged: self._on_presence,
            NewNotification: self._on_new_notification,
            ConsentRequest: self._publisher(topics.CONSENT_REQUEST),
            ConsentPending: self._publisher(topics.CONSENT_PENDING),
            ConsentAccepted: self._publisher(topics.CONSENT_ACCEPTED),
            ConsentRejected: self._publisher(topics.CONSENT_REJECTED),
            MessageNotificationsRead: self._on_notifications_read,
            CountUpdate: self._on_count_update,
            SessionReady: self._on_session_ready,
            ChannelError: self._on_error,
            # Answered by the connection manager.
            Ping: lambda event: None,
        }
        missing = [event_type.__name__ for event_type in EVENT_TYPES if event_type not in self._handlers]
        if missing:
            raise TypeError(f"no handler for {', '.join(missing)}")

    def dispatch(self, event: InboundEvent) -> None:
        self._handlers[type(event)](event)

    def _publisher(self, topic: str) -> Callable[[Any], None]:
        def _publish(event: Any) -> None:
            self.bus.publish(topic, event)

        return _publish

    def _on_new_message(self, event: NewMessage) -> None:
        self.bus.publish(topics.NEW_MESSAGE, event)

    def _on_message_confirmed(self, event: MessageConfirmed) -> None:
        self.bus.publish(topics.MESSAGE_CONFIRMED, event)

    def _on_user_typing(self, event: UserTyping) -> None:
        # The store publishes typingChanged through its on_change hook.
        self.typing.apply(event.user_id, event.is_typing)

    def _on_presence(self, event: PresenceChanged) -> None:
        self.presence.apply(event.user_id, event.is_online)
        self.bus.publish(topics.ONLINE_STATUS_CHANGED, event)

    def _on_new_notification(self, event: NewNotification) -> None:
        self.bus.publish(
            topics.TOAST,
            {
                "kind": event.kind,
                "notificationId": event.notification_id,
                "fromUserId": event.from_user_id,
                "fromUserName": event.from_user_name,
                "fromUserPhoto": event.from_user_photo,
                "message": event.message,
            },
        )
        self.bus.publish(topics.NOTIFICATIONS_CHANGED, event)

    def _on_notifications_read(self, event: MessageNotificationsRead) -> None:
        self.bus.publish(topics.MESSAGE_READ, event)

    def _on_count_update(self, event: CountUpdate) -> None:
        if event.action != "increment":
            logger.debug("ignoring %s count action %s", event.counter, event.action)
            return
        topic = topics.MESSAGE_RECEIVED if event.counter == "message" else topics.NOTIFICATION_RECEIVED
        self.bus.publish(topic, event)

    def _on_session_ready(self, event: SessionReady) -> None:
        self.presence.reset(event.online_user_ids)
        self.bus.publish(topics.SESSION_READY, event)

    def _on_error(self, event: ChannelError) -> None:
        logger.info("channel error %s: %s", event.code, event.message)
        self.bus.publish(topics.CHANNEL_ERROR, event)
