from __future__ import annotations

import logging
import uuid
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class FrameSink(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_frame(self, frame: dict[str, Any]) -> bool: ...


class CommandEncoder:
    """Encodes UI actions as client frames.

    Nothing is queued: a command issued while the connection is not open is
    dropped and the method reports it through its return value.
    """

    def __init__(self, sink: FrameSink) -> None:
        self.sink = sink

    async def send_message(
        self,
        receiver_id: str,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Optional[str]:
        if content is None and image_url is None:
            raise ValueError("content or image_url required")
        client_msg_id = uuid.uuid4().hex
        frame: dict[str, Any] = {
            "type": "sendMessage",
            "receiverId": receiver_id,
            "clientMsgId": client_msg_id,
        }
        if content is not None:
            frame["content"] = content
        if image_url is not None:
            frame["imageUrl"] = image_url
        if not await self._send(frame):
            return None
        return client_msg_id

    async def send_typing(self, receiver_id: str, is_typing: bool) -> bool:
        return await self._send({"type": "typing", "receiverId": receiver_id, "isTyping": bool(is_typing)})

    async def open_chat_window(self, other_user_id: str) -> bool:
        return await self._send({"type": "openChatWindow", "otherUserId": other_user_id})

    async def close_chat_window(self, other_user_id: str) -> bool:
        return await self._send({"type": "closeChatWindow", "otherUserId": other_user_id})

    async def respond_to_consent(self, consent_id: str, accept: bool) -> bool:
        decision = "accept" if accept else "reject"
        return await self._send({"type": "consentResponse", "consentId": consent_id, "decision": decision})

    async def _send(self, frame: dict[str, Any]) -> bool:
        if not self.sink.is_open:
            logger.debug("connection not open; dropping %s", frame["type"])
            return False
        return await self.sink.send_frame(frame)
