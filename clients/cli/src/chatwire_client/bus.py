from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

NEW_MESSAGE = "newMessage"
MESSAGE_CONFIRMED = "messageConfirmed"
TYPING_CHANGED = "typingChanged"
ONLINE_STATUS_CHANGED = "onlineStatusChanged"
TOAST = "toast"
NOTIFICATIONS_CHANGED = "notificationsChanged"
NOTIFICATION_RECEIVED = "notificationReceived"
MESSAGE_RECEIVED = "messageReceived"
MESSAGE_READ = "messageRead"
CONSENT_REQUEST = "consentRequest"
CONSENT_PENDING = "consentPending"
CONSENT_ACCEPTED = "consentAccepted"
CONSENT_REJECTED = "consentRejected"
SESSION_READY = "sessionReady"
SESSION_ENDED = "sessionEnded"
CHANNEL_ERROR = "channelError"
CONNECTION_CHANGED = "connectionChanged"
COUNTERS_CHANGED = "countersChanged"

ALL_TOPICS = (
    NEW_MESSAGE,
    MESSAGE_CONFIRMED,
    TYPING_CHANGED,
    ONLINE_STATUS_CHANGED,
    TOAST,
    NOTIFICATIONS_CHANGED,
    NOTIFICATION_RECEIVED,
    MESSAGE_RECEIVED,
    MESSAGE_READ,
    CONSENT_REQUEST,
    CONSENT_PENDING,
    CONSENT_ACCEPTED,
    CONSENT_REJECTED,
    SESSION_READY,
    SESSION_ENDED,
    CHANNEL_ERROR,
    CONNECTION_CHANGED,
    COUNTERS_CHANGED,
)

Callback = Callable[[Any], None]


@dataclass
class Subscription:
    topic: str
    callback: Callback

    def deliver(self, payload: Any) -> None:
        self.callback(payload)


class EventBus:
    """Registers subscribers per topic and publishes payloads to all of them.

    A bus is owned by whoever composes the client; nothing here is global, so
    every test can work against its own instance.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: Callback) -> Subscription:
        subscription = Subscription(topic=topic, callback=callback)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def publish(self, topic: str, payload: Any = None) -> int:
        delivered = 0
        for subscription in list(self._subscriptions.get(topic, [])):
            try:
                subscription.deliver(payload)
            except Exception:
                logger.exception("subscriber for %s failed", topic)
                continue
            delivered += 1
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscriptions.get(topic, []))
