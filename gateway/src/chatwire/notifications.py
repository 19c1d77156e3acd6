"""Durable notification records with best-effort live push.

Every qualifying event is written to the store first; the live frame is only
an optimisation for recipients that currently hold an open channel. A
recipient without a connection picks the record up through the pull API.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend

logger = logging.getLogger(__name__)

PROFILE_VIEW = "profile_view"
MESSAGE_RECEIVED = "message_received"
PROFILE_LIKE = "profile_like"
NOTIFICATION_TYPES = (PROFILE_VIEW, MESSAGE_RECEIVED, PROFILE_LIKE)

_MESSAGE_TEMPLATES = {
    PROFILE_VIEW: "{name} viewed your profile.",
    MESSAGE_RECEIVED: "{name} sent you a message.",
    PROFILE_LIKE: "{name} liked your profile.",
}

PushFunc = Callable[[str, dict], bool]


@dataclass
class Notification:
    notification_id: str
    user_id: str
    type: str
    from_user_id: str
    conversation_id: str | None
    is_read: bool
    created_at_ms: int
    data: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> dict:
        return {
            "id": self.notification_id,
            "userId": self.user_id,
            "type": self.type,
            "fromUserId": self.from_user_id,
            "conversationId": self.conversation_id,
            "isRead": self.is_read,
            "data": self.data,
            "createdAt": self.created_at_ms,
        }


def _new_notification(
    user_id: str,
    type_: str,
    from_user_id: str,
    conversation_id: str | None,
    data: Dict[str, Any] | None,
) -> Notification:
    if type_ not in NOTIFICATION_TYPES:
        raise ValueError(f"unknown notification type: {type_}")
    return Notification(
        notification_id=str(uuid.uuid4()),
        user_id=user_id,
        type=type_,
        from_user_id=from_user_id,
        conversation_id=conversation_id,
        is_read=False,
        created_at_ms=_now_ms(),
        data=dict(data or {}),
    )


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self._notifications: Dict[str, Notification] = {}

    def find(
        self, user_id: str, from_user_id: str, type_: str, conversation_id: str | None = None
    ) -> Notification | None:
        for notification in self._notifications.values():
            if (
                notification.user_id == user_id
                and notification.from_user_id == from_user_id
                and notification.type == type_
                and (conversation_id is None or notification.conversation_id == conversation_id)
            ):
                return notification
        return None

    def create(
        self,
        user_id: str,
        type_: str,
        from_user_id: str,
        *,
        conversation_id: str | None = None,
        data: Dict[str, Any] | None = None,
    ) -> Notification:
        notification = _new_notification(user_id, type_, from_user_id, conversation_id, data)
        self._notifications[notification.notification_id] = notification
        return notification

    def refresh(self, notification_id: str) -> Notification:
        notification = self._notifications.get(notification_id)
        if notification is None:
            raise ValueError(f"notification {notification_id} not found")
        notification.created_at_ms = _now_ms()
        notification.is_read = False
        return notification

    def get(self, notification_id: str) -> Notification | None:
        return self._notifications.get(notification_id)

    def list_for_user(self, user_id: str) -> List[Notification]:
        mine = [n for n in self._notifications.values() if n.user_id == user_id]
        return sorted(mine, key=lambda n: n.created_at_ms, reverse=True)

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        notification = self._notifications.get(notification_id)
        if notification is None or notification.user_id != user_id:
            return False
        notification.is_read = True
        return True

    def mark_all_read(self, user_id: str) -> int:
        count = 0
        for notification in self._notifications.values():
            if notification.user_id == user_id and not notification.is_read:
                notification.is_read = True
                count += 1
        return count

    def mark_messages_read_from(self, user_id: str, from_user_id: str) -> int:
        count = 0
        for notification in self._notifications.values():
            if (
                notification.user_id == user_id
                and notification.from_user_id == from_user_id
                and notification.type == MESSAGE_RECEIVED
                and not notification.is_read
            ):
                notification.is_read = True
                count += 1
        return count

    def delete(self, notification_id: str, user_id: str) -> bool:
        notification = self._notifications.get(notification_id)
        if notification is None or notification.user_id != user_id:
            return False
        del self._notifications[notification_id]
        return True

    def unread_count(self, user_id: str, type_: str | None = None) -> int:
        return sum(
            1
            for n in self._notifications.values()
            if n.user_id == user_id and not n.is_read and (type_ is None or n.type == type_)
        )


_NOTIFICATION_COLUMNS = (
    "notification_id, user_id, type, from_user_id, conversation_id, is_read, created_at_ms, data_json"
)


def _notification_from_row(row) -> Notification:
    return Notification(
        notification_id=row[0],
        user_id=row[1],
        type=row[2],
        from_user_id=row[3],
        conversation_id=row[4],
        is_read=bool(row[5]),
        created_at_ms=row[6],
        data=json.loads(row[7]) if row[7] else {},
    )


class SQLiteNotificationStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def _one(self, sql: str, params: tuple) -> Notification | None:
        with self._backend.lock:
            row = self._backend.connection.execute(sql, params).fetchone()
        return _notification_from_row(row) if row else None

    def _execute(self, sql: str, params: tuple) -> int:
        with self._backend.lock:
            cursor = self._backend.connection.execute(sql, params)
        return cursor.rowcount

    def find(
        self, user_id: str, from_user_id: str, type_: str, conversation_id: str | None = None
    ) -> Notification | None:
        if conversation_id is None:
            return self._one(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE user_id=? AND from_user_id=? AND type=?",
                (user_id, from_user_id, type_),
            )
        return self._one(
            f"""
            SELECT {_NOTIFICATION_COLUMNS} FROM notifications
            WHERE user_id=? AND from_user_id=? AND type=? AND conversation_id=?
            """,
            (user_id, from_user_id, type_, conversation_id),
        )

    def create(
        self,
        user_id: str,
        type_: str,
        from_user_id: str,
        *,
        conversation_id: str | None = None,
        data: Dict[str, Any] | None = None,
    ) -> Notification:
        notification = _new_notification(user_id, type_, from_user_id, conversation_id, data)
        self._execute(
            f"INSERT INTO notifications ({_NOTIFICATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, 0, ?, ?)",
            (
                notification.notification_id,
                user_id,
                type_,
                from_user_id,
                conversation_id,
                notification.created_at_ms,
                json.dumps(notification.data),
            ),
        )
        return notification

    def refresh(self, notification_id: str) -> Notification:
        updated = self._execute(
            "UPDATE notifications SET created_at_ms=?, is_read=0 WHERE notification_id=?",
            (_now_ms(), notification_id),
        )
        if updated == 0:
            raise ValueError(f"notification {notification_id} not found")
        notification = self.get(notification_id)
        assert notification is not None
        return notification

    def get(self, notification_id: str) -> Notification | None:
        return self._one(
            f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE notification_id=?",
            (notification_id,),
        )

    def list_for_user(self, user_id: str) -> List[Notification]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE user_id=? ORDER BY created_at_ms DESC",
                (user_id,),
            ).fetchall()
        return [_notification_from_row(row) for row in rows]

    def mark_read(self, notification_id: str, user_id: str) -> bool:
        return (
            self._execute(
                "UPDATE notifications SET is_read=1 WHERE notification_id=? AND user_id=?",
                (notification_id, user_id),
            )
            > 0
        )

    def mark_all_read(self, user_id: str) -> int:
        return self._execute("UPDATE notifications SET is_read=1 WHERE user_id=? AND is_read=0", (user_id,))

    def mark_messages_read_from(self, user_id: str, from_user_id: str) -> int:
        return self._execute(
            """
            UPDATE notifications SET is_read=1
            WHERE user_id=? AND from_user_id=? AND type=? AND is_read=0
            """,
            (user_id, from_user_id, MESSAGE_RECEIVED),
        )

    def delete(self, notification_id: str, user_id: str) -> bool:
        return (
            self._execute(
                "DELETE FROM notifications WHERE notification_id=? AND user_id=?",
                (notification_id, user_id),
            )
            > 0
        )

    def unread_count(self, user_id: str, type_: str | None = None) -> int:
        with self._backend.lock:
            if type_ is None:
                row = self._backend.connection.execute(
                    "SELECT COUNT(*) FROM notifications WHERE user_id=? AND is_read=0", (user_id,)
                ).fetchone()
            else:
                row = self._backend.connection.execute(
                    "SELECT COUNT(*) FROM notifications WHERE user_id=? AND is_read=0 AND type=?",
                    (user_id, type_),
                ).fetchone()
        return int(row[0])


class NotificationFanout:
    """Persists a notification per qualifying event and pushes it live."""

    def __init__(self, store, users, push: PushFunc) -> None:
        self.store = store
        self.users = users
        self._push = push

    def profile_viewed(self, viewer_id: str, viewed_id: str) -> Notification:
        return self._record(viewed_id, viewer_id, PROFILE_VIEW, counter_frame="notificationCountUpdate")

    def profile_liked(self, liker_id: str, liked_id: str) -> Notification:
        return self._record(liked_id, liker_id, PROFILE_LIKE, counter_frame="notificationCountUpdate")

    def message_received(self, sender_id: str, receiver_id: str, conversation_id: str) -> Notification:
        return self._record(
            receiver_id,
            sender_id,
            MESSAGE_RECEIVED,
            conversation_id=conversation_id,
            counter_frame="messageCountUpdate",
        )

    def messages_opened(self, reader_id: str, sender_id: str) -> int:
        """Mark message notifications from ``sender_id`` read and tell the reader."""

        count = self.store.mark_messages_read_from(reader_id, sender_id)
        self._push(reader_id, {"type": "messageNotificationsRead", "fromUserId": sender_id, "count": count})
        return count

    def _record(
        self,
        recipient_id: str,
        sender_id: str,
        type_: str,
        *,
        conversation_id: str | None = None,
        counter_frame: str,
    ) -> Notification:
        if recipient_id == sender_id:
            raise ValueError("cannot notify a user about their own action")
        sender = self.users.get(sender_id)
        sender_name = sender.first_name if sender else "Someone"
        text = _MESSAGE_TEMPLATES[type_].format(name=sender_name)

        existing = self.store.find(recipient_id, sender_id, type_, conversation_id)
        if existing is not None:
            was_read = existing.is_read
            notification = self.store.refresh(existing.notification_id)
        else:
            was_read = False
            notification = self.store.create(
                recipient_id,
                type_,
                sender_id,
                conversation_id=conversation_id,
                data={"message": text},
            )

        frame = {
            "type": "newNotification",
            "notification": {
                "id": notification.notification_id,
                "type": type_,
                "fromUserId": sender_id,
                "fromUserName": sender_name,
                "fromUserPhoto": sender.profile_photo if sender else None,
                "conversationId": conversation_id,
                "message": text,
                "createdAt": notification.created_at_ms,
            },
        }
        delivered = self._push(recipient_id, frame)
        # Refreshing an unread record must not count it twice.
        if existing is None or was_read:
            self._push(recipient_id, {"type": counter_frame, "action": "increment"})
        if delivered:
            logger.debug("%s notification pushed to %s from %s", type_, recipient_id, sender_id)
        else:
            logger.debug("%s notification stored for offline user %s", type_, recipient_id)
        return notification
