"""Typed inbound frames.

Each server frame ``type`` maps to one frozen dataclass. ``parse_frame`` turns
raw text into one of them, returns ``None`` for a type it does not know, and
raises :class:`FrameError` for anything malformed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union


class FrameError(ValueError):
    pass


@dataclass(frozen=True)
class NewMessage:
    message: dict
    sender: Optional[dict] = None

    @property
    def sender_id(self) -> str:
        return self.message["senderId"]


@dataclass(frozen=True)
class MessageConfirmed:
    message: dict
    client_msg_id: Optional[str] = None


@dataclass(frozen=True)
class UserTyping:
    user_id: str
    is_typing: bool


@dataclass(frozen=True)
class PresenceChanged:
    user_id: str
    is_online: bool


@dataclass(frozen=True)
class NewNotification:
    notification_id: str
    kind: str
    from_user_id: str
    from_user_name: Optional[str] = None
    from_user_photo: Optional[str] = None
    conversation_id: Optional[str] = None
    message: Optional[str] = None
    created_at: Optional[int] = None


@dataclass(frozen=True)
class ConsentRequest:
    requester_id: str
    consent: dict
    requester: Optional[dict] = None


@dataclass(frozen=True)
class ConsentPending:
    responder_id: str
    consent: dict
    message: Optional[str] = None


@dataclass(frozen=True)
class ConsentAccepted:
    requester_id: str
    responder_id: str
    consent: dict


@dataclass(frozen=True)
class ConsentRejected:
    requester_id: str
    responder_id: str
    consent: dict
    message: Optional[str] = None


@dataclass(frozen=True)
class MessageNotificationsRead:
    from_user_id: str
    count: int


@dataclass(frozen=True)
class CountUpdate:
    counter: str
    action: str


@dataclass(frozen=True)
class SessionReady:
    user_id: str
    session_token: str
    expires_at: int
    online_user_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ChannelError:
    code: str
    message: str = ""


@dataclass(frozen=True)
class Ping:
    pass


InboundEvent = Union[
    NewMessage,
    MessageConfirmed,
    UserTyping,
    PresenceChanged,
    NewNotification,
    ConsentRequest,
    ConsentPending,
    ConsentAccepted,
    ConsentRejected,
    MessageNotificationsRead,
    CountUpdate,
    SessionReady,
    ChannelError,
    Ping,
]

EVENT_TYPES: Tuple[type, ...] = (
    NewMessage,
    MessageConfirmed,
    UserTyping,
    PresenceChanged,
    NewNotification,
    ConsentRequest,
    ConsentPending,
    ConsentAccepted,
    ConsentRejected,
    MessageNotificationsRead,
    CountUpdate,
    SessionReady,
    ChannelError,
    Ping,
)


def _str(frame: dict, key: str) -> str:
    value = frame.get(key)
    if not isinstance(value, str) or not value:
        raise FrameError(f"{frame.get('type')}: {key} required")
    return value


def _opt_str(frame: dict, key: str) -> Optional[str]:
    value = frame.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise FrameError(f"{frame.get('type')}: {key} must be a string")
    return value


def _dict(frame: dict, key: str) -> dict:
    value = frame.get(key)
    if not isinstance(value, dict):
        raise FrameError(f"{frame.get('type')}: {key} must be an object")
    return value


def _opt_dict(frame: dict, key: str) -> Optional[dict]:
    value = frame.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise FrameError(f"{frame.get('type')}: {key} must be an object")
    return value


def _bool(frame: dict, key: str) -> bool:
    value = frame.get(key)
    if not isinstance(value, bool):
        raise FrameError(f"{frame.get('type')}: {key} must be a boolean")
    return value


def _int(frame: dict, key: str) -> int:
    value = frame.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise FrameError(f"{frame.get('type')}: {key} must be an integer")
    return value


def _parse_new_message(frame: dict) -> NewMessage:
    message = _dict(frame, "message")
    _str(message, "senderId")
    return NewMessage(message=message, sender=_opt_dict(frame, "sender"))


def _parse_message_confirmed(frame: dict) -> MessageConfirmed:
    return MessageConfirmed(message=_dict(frame, "message"), client_msg_id=_opt_str(frame, "clientMsgId"))


def _parse_user_typing(frame: dict) -> UserTyping:
    return UserTyping(user_id=_str(frame, "userId"), is_typing=_bool(frame, "isTyping"))


def _parse_user_online(frame: dict) -> PresenceChanged:
    return PresenceChanged(user_id=_str(frame, "userId"), is_online=True)


def _parse_user_offline(frame: dict) -> PresenceChanged:
    return PresenceChanged(user_id=_str(frame, "userId"), is_online=False)


def _parse_new_notification(frame: dict) -> NewNotification:
    notification = _dict(frame, "notification")
    created_at = notification.get("createdAt")
    return NewNotification(
        notification_id=_str(notification, "id"),
        kind=_str(notification, "type"),
        from_user_id=_str(notification, "fromUserId"),
        from_user_name=_opt_str(notification, "fromUserName"),
        from_user_photo=_opt_str(notification, "fromUserPhoto"),
        conversation_id=_opt_str(notification, "conversationId"),
        message=_opt_str(notification, "message"),
        created_at=created_at if isinstance(created_at, int) else None,
    )


def _parse_consent_request(frame: dict) -> ConsentRequest:
    return ConsentRequest(
        requester_id=_str(frame, "requesterId"),
        consent=_dict(frame, "consent"),
        requester=_opt_dict(frame, "requester"),
    )


def _parse_consent_pending(frame: dict) -> ConsentPending:
    return ConsentPending(
        responder_id=_str(frame, "responderId"),
        consent=_dict(frame, "consent"),
        message=_opt_str(frame, "message"),
    )


def _parse_consent_accepted(frame: dict) -> ConsentAccepted:
    return ConsentAccepted(
        requester_id=_str(frame, "requesterId"),
        responder_id=_str(frame, "responderId"),
        consent=_dict(frame, "consent"),
    )


def _parse_consent_rejected(frame: dict) -> ConsentRejected:
    return ConsentRejected(
        requester_id=_str(frame, "requesterId"),
        responder_id=_str(frame, "responderId"),
        consent=_dict(frame, "consent"),
        message=_opt_str(frame, "message"),
    )


def _parse_notifications_read(frame: dict) -> MessageNotificationsRead:
    count = _int(frame, "count")
    if count < 0:
        raise FrameError("messageNotificationsRead: count must be >= 0")
    return MessageNotificationsRead(from_user_id=_str(frame, "fromUserId"), count=count)


def _count_parser(counter: str) -> Callable[[dict], CountUpdate]:
    def _parse(frame: dict) -> CountUpdate:
        return CountUpdate(counter=counter, action=_str(frame, "action"))

    return _parse


def _parse_session_ready(frame: dict) -> SessionReady:
    online = frame.get("onlineUserIds", [])
    if not isinstance(online, list) or not all(isinstance(item, str) for item in online):
        raise FrameError("sessionReady: onlineUserIds must be a list of strings")
    return SessionReady(
        user_id=_str(frame, "userId"),
        session_token=_str(frame, "sessionToken"),
        expires_at=_int(frame, "expiresAt"),
        online_user_ids=tuple(online),
    )


def _parse_error(frame: dict) -> ChannelError:
    return ChannelError(code=_str(frame, "code"), message=_opt_str(frame, "message") or "")


PARSERS: Dict[str, Callable[[dict], Any]] = {
    "newMessage": _parse_new_message,
    "messageConfirmed": _parse_message_confirmed,
    "userTyping": _parse_user_typing,
    "userOnline": _parse_user_online,
    "userOffline": _parse_user_offline,
    "newNotification": _parse_new_notification,
    "consentRequest": _parse_consent_request,
    "consentPending": _parse_consent_pending,
    "consentAccepted": _parse_consent_accepted,
    "consentRejected": _parse_consent_rejected,
    "messageNotificationsRead": _parse_notifications_read,
    "messageCountUpdate": _count_parser("message"),
    "notificationCountUpdate": _count_parser("notification"),
    "sessionReady": _parse_session_ready,
    "error": _parse_error,
    "ping": lambda frame: Ping(),
}


def parse_frame(raw: str | bytes) -> Optional[InboundEvent]:
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise FrameError(f"malformed json: {exc}") from exc
    if not isinstance(frame, dict):
        raise FrameError("frame must be an object")
    frame_type = frame.get("type")
    if not isinstance(frame_type, str):
        raise FrameError("type required")
    parser = PARSERS.get(frame_type)
    if parser is None:
        return None
    return parser(frame)
