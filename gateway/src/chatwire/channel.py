"""Transport-independent handling of client commands on the chat channel."""

from __future__ import annotations

import logging
from typing import Any

from .consent import ACCEPTED, NO_CONSENT, PENDING, REJECTED, ChatConsent, ConsentGate
from .hub import ConnectionHub
from .notifications import NotificationFanout

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 5000


class InvalidCommand(ValueError):
    pass


def _require_str(frame: dict, key: str) -> str:
    value = frame.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidCommand(f"{key} required")
    return value


def _optional_str(frame: dict, key: str) -> str | None:
    value = frame.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise InvalidCommand(f"{key} must be a string")
    return value


class ChatChannel:
    def __init__(
        self,
        *,
        hub: ConnectionHub,
        users,
        conversations,
        consent: ConsentGate,
        notifications: NotificationFanout,
        max_content_length: int = MAX_CONTENT_LENGTH,
    ) -> None:
        self.hub = hub
        self.users = users
        self.conversations = conversations
        self.consent = consent
        self.notifications = notifications
        self.max_content_length = max_content_length

    def connected(self, user_id: str) -> None:
        self.users.set_online(user_id, True)
        self.hub.broadcast({"type": "userOnline", "userId": user_id}, exclude=[user_id])
        logger.info("user %s connected", user_id)

    def disconnected(self, user_id: str) -> None:
        self.hub.clear_windows(user_id)
        self.users.set_online(user_id, False)
        self.hub.broadcast({"type": "userOffline", "userId": user_id}, exclude=[user_id])
        logger.info("user %s disconnected", user_id)

    def handle(self, user_id: str, frame: dict) -> None:
        frame_type = frame.get("type")
        if frame_type == "sendMessage":
            self.send_message(
                user_id,
                _require_str(frame, "receiverId"),
                content=_optional_str(frame, "content"),
                image_url=_optional_str(frame, "imageUrl"),
                client_msg_id=_optional_str(frame, "clientMsgId"),
            )
        elif frame_type == "typing":
            is_typing = frame.get("isTyping")
            if not isinstance(is_typing, bool):
                raise InvalidCommand("isTyping must be a boolean")
            self.typing(user_id, _require_str(frame, "receiverId"), is_typing)
        elif frame_type == "openChatWindow":
            self.open_chat_window(user_id, _require_str(frame, "otherUserId"))
        elif frame_type == "closeChatWindow":
            self.close_chat_window(user_id, _require_str(frame, "otherUserId"))
        elif frame_type == "consentResponse":
            decision = frame.get("decision")
            if decision not in ("accept", "reject"):
                raise InvalidCommand("decision must be accept or reject")
            self.respond_to_consent(user_id, _require_str(frame, "consentId"), decision == "accept")
        else:
            raise InvalidCommand("unknown frame type")

    def _require_other_user(self, user_id: str, other_user_id: str) -> None:
        if other_user_id == user_id:
            raise InvalidCommand("cannot target yourself")
        if self.users.get(other_user_id) is None:
            raise InvalidCommand("unknown user")

    def open_chat_window(self, user_id: str, other_user_id: str) -> None:
        self._require_other_user(user_id, other_user_id)
        self.hub.open_window(user_id, other_user_id)
        status, _ = self.consent.permission(user_id, other_user_id)
        if status != ACCEPTED:
            self._gate(user_id, other_user_id)

        conversation = self.conversations.get(user_id, other_user_id)
        if conversation is not None:
            self.conversations.mark_read(conversation.conversation_id, user_id)
        self.notifications.messages_opened(user_id, other_user_id)

    def close_chat_window(self, user_id: str, other_user_id: str) -> None:
        self.hub.close_window(user_id, other_user_id)

    def _gate(self, user_id: str, other_user_id: str) -> None:
        consent, created = self.consent.request(user_id, other_user_id)
        if consent.status == REJECTED:
            self.hub.send_to_user(user_id, self._rejected_frame(consent, receiver_id=other_user_id))
            return
        if consent.status != PENDING:
            return
        if created:
            logger.info("consent %s requested by %s from %s", consent.consent_id, user_id, other_user_id)
        if created or user_id == consent.responder_id:
            self._send_consent_request(consent)
        if created or user_id == consent.requester_id:
            self.hub.send_to_user(consent.requester_id, self._pending_frame(consent))

    def _send_consent_request(self, consent: ChatConsent) -> None:
        requester = self.users.get(consent.requester_id)
        self.hub.send_to_user(
            consent.responder_id,
            {
                "type": "consentRequest",
                "requesterId": consent.requester_id,
                "consent": consent.to_wire(),
                "requester": requester.public() if requester else None,
            },
        )

    @staticmethod
    def _pending_frame(consent: ChatConsent) -> dict[str, Any]:
        return {
            "type": "consentPending",
            "responderId": consent.responder_id,
            "receiverId": consent.responder_id,
            "consent": consent.to_wire(),
            "message": "Waiting for consent",
        }

    @staticmethod
    def _rejected_frame(consent: ChatConsent, *, receiver_id: str) -> dict[str, Any]:
        return {
            "type": "consentRejected",
            "receiverId": receiver_id,
            "requesterId": consent.requester_id,
            "responderId": consent.responder_id,
            "consent": consent.to_wire(),
            "message": "Chat request declined",
        }

    def respond_to_consent(self, user_id: str, consent_id: str, accept: bool) -> ChatConsent:
        consent = self.consent.respond(consent_id, user_id, accept)
        frame = {
            "type": "consentAccepted" if accept else "consentRejected",
            "requesterId": consent.requester_id,
            "responderId": consent.responder_id,
            "consent": consent.to_wire(),
        }
        for party in (consent.requester_id, consent.responder_id):
            self.hub.send_to_user(party, frame)
        logger.info("consent %s %s by %s", consent_id, consent.status, user_id)
        return consent

    def send_message(
        self,
        user_id: str,
        receiver_id: str,
        *,
        content: str | None = None,
        image_url: str | None = None,
        client_msg_id: str | None = None,
    ):
        if content is None and image_url is None:
            raise InvalidCommand("content or imageUrl required")
        if content is not None and len(content) > self.max_content_length:
            raise InvalidCommand("content too long")
        self._require_other_user(user_id, receiver_id)

        status, consent = self.consent.permission(user_id, receiver_id)
        if status != ACCEPTED:
            self._refuse_message(user_id, receiver_id, status, consent)
            return None

        conversation = self.conversations.get_or_create(user_id, receiver_id)
        message, created = self.conversations.append_message(
            conversation.conversation_id,
            user_id,
            content,
            image_url,
            client_msg_id=client_msg_id,
        )
        if created:
            sender = self.users.get(user_id)
            self.hub.send_to_user(
                receiver_id,
                {
                    "type": "newMessage",
                    "message": message.to_wire(),
                    "sender": sender.public() if sender else None,
                },
            )
        self.hub.send_to_user(
            user_id,
            {"type": "messageConfirmed", "message": message.to_wire(), "clientMsgId": client_msg_id},
        )
        if not created:
            return message

        both_open = self.hub.has_window_open(user_id, receiver_id) and self.hub.has_window_open(
            receiver_id, user_id
        )
        if not both_open:
            try:
                self.notifications.message_received(user_id, receiver_id, conversation.conversation_id)
            except Exception:
                # The message is already stored; losing the notification only costs immediacy.
                logger.exception("failed to record message notification for %s", receiver_id)
        return message

    def _refuse_message(self, user_id: str, receiver_id: str, status: str, consent: ChatConsent | None) -> None:
        if status == PENDING and consent is not None:
            self.hub.send_to_user(user_id, self._pending_frame(consent))
        elif status == REJECTED and consent is not None:
            self.hub.send_to_user(user_id, self._rejected_frame(consent, receiver_id=receiver_id))
        else:
            self.hub.send_to_user(
                user_id,
                {
                    "type": "error",
                    "code": "consent_required",
                    "message": "open a chat window to request consent first",
                    "receiverId": receiver_id,
                },
            )
        logger.info("message from %s to %s refused: %s", user_id, receiver_id, status or NO_CONSENT)

    def typing(self, user_id: str, receiver_id: str, is_typing: bool) -> None:
        self.hub.send_to_user(receiver_id, {"type": "userTyping", "userId": user_id, "isTyping": is_typing})
