from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend


def pair_key(user_a: str, user_b: str) -> str:
    """Order-independent key for a pair of users."""

    first, second = sorted((user_a, user_b))
    return f"{first}|{second}"


@dataclass
class Conversation:
    conversation_id: str
    participant1_id: str
    participant2_id: str
    last_message_at_ms: int
    created_at_ms: int

    def other_participant(self, user_id: str) -> str:
        return self.participant2_id if user_id == self.participant1_id else self.participant1_id

    def to_wire(self) -> dict:
        return {
            "id": self.conversation_id,
            "participant1Id": self.participant1_id,
            "participant2Id": self.participant2_id,
            "lastMessageAt": self.last_message_at_ms,
            "createdAt": self.created_at_ms,
        }


@dataclass
class Message:
    message_id: str
    conversation_id: str
    sender_id: str
    content: str | None
    image_url: str | None
    ts_ms: int
    is_read: bool = False
    client_msg_id: str | None = None

    def to_wire(self) -> dict:
        return {
            "id": self.message_id,
            "conversationId": self.conversation_id,
            "senderId": self.sender_id,
            "content": self.content,
            "imageUrl": self.image_url,
            "timestamp": self.ts_ms,
            "isRead": self.is_read,
            "clientMsgId": self.client_msg_id,
        }


class InMemoryConversationStore:
    """Conversations and their messages, held in process memory."""

    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._by_pair: Dict[str, str] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._idempotency: Dict[Tuple[str, str], Message] = {}

    def get(self, user_a: str, user_b: str) -> Conversation | None:
        conversation_id = self._by_pair.get(pair_key(user_a, user_b))
        if conversation_id is None:
            return None
        return self._conversations[conversation_id]

    def get_or_create(self, user_a: str, user_b: str) -> Conversation:
        existing = self.get(user_a, user_b)
        if existing is not None:
            return existing
        now_ms = _now_ms()
        conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            participant1_id=user_a,
            participant2_id=user_b,
            last_message_at_ms=now_ms,
            created_at_ms=now_ms,
        )
        self._conversations[conversation.conversation_id] = conversation
        self._by_pair[pair_key(user_a, user_b)] = conversation.conversation_id
        return conversation

    def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str | None,
        image_url: str | None,
        *,
        client_msg_id: str | None = None,
        ts_ms: int | None = None,
    ) -> tuple[Message, bool]:
        """Persist a message, returning ``(message, created)``.

        A repeated ``(sender_id, client_msg_id)`` returns the stored message
        with ``created=False``.
        """

        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ValueError("unknown conversation")
        if client_msg_id is not None:
            existing = self._idempotency.get((sender_id, client_msg_id))
            if existing is not None:
                return existing, False

        message = Message(
            message_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            image_url=image_url,
            ts_ms=ts_ms if ts_ms is not None else _now_ms(),
            client_msg_id=client_msg_id,
        )
        self._messages.setdefault(conversation_id, []).append(message)
        if client_msg_id is not None:
            self._idempotency[(sender_id, client_msg_id)] = message
        conversation.last_message_at_ms = message.ts_ms
        return message, True

    def list_messages(self, conversation_id: str, limit: int | None = None) -> List[Message]:
        messages = self._messages.get(conversation_id, [])
        if limit is None:
            return list(messages)
        return list(messages[-limit:]) if limit > 0 else []

    def list_for_user(self, user_id: str) -> List[Conversation]:
        mine = [
            conversation
            for conversation in self._conversations.values()
            if user_id in (conversation.participant1_id, conversation.participant2_id)
        ]
        return sorted(mine, key=lambda conversation: conversation.last_message_at_ms, reverse=True)

    def mark_read(self, conversation_id: str, reader_id: str) -> int:
        count = 0
        for message in self._messages.get(conversation_id, []):
            if message.sender_id != reader_id and not message.is_read:
                message.is_read = True
                count += 1
        return count


_MESSAGE_COLUMNS = "message_id, conversation_id, sender_id, content, image_url, ts_ms, is_read, client_msg_id"
_CONVERSATION_COLUMNS = "conversation_id, participant1_id, participant2_id, last_message_at_ms, created_at_ms"


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        message_id=row[0],
        conversation_id=row[1],
        sender_id=row[2],
        content=row[3],
        image_url=row[4],
        ts_ms=row[5],
        is_read=bool(row[6]),
        client_msg_id=row[7],
    )


def _conversation_from_row(row: sqlite3.Row) -> Conversation:
    return Conversation(
        conversation_id=row[0],
        participant1_id=row[1],
        participant2_id=row[2],
        last_message_at_ms=row[3],
        created_at_ms=row[4],
    )


class SQLiteConversationStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def get(self, user_a: str, user_b: str) -> Conversation | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE pair_key=?",
                (pair_key(user_a, user_b),),
            ).fetchone()
        return _conversation_from_row(row) if row else None

    def get_or_create(self, user_a: str, user_b: str) -> Conversation:
        now_ms = _now_ms()
        with self._backend.lock:
            conn = self._backend.connection
            conn.execute(
                """
                INSERT OR IGNORE INTO conversations
                    (conversation_id, participant1_id, participant2_id, pair_key, last_message_at_ms, created_at_ms)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), user_a, user_b, pair_key(user_a, user_b), now_ms, now_ms),
            )
            row = conn.execute(
                f"SELECT {_CONVERSATION_COLUMNS} FROM conversations WHERE pair_key=?",
                (pair_key(user_a, user_b),),
            ).fetchone()
        return _conversation_from_row(row)

    def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str | None,
        image_url: str | None,
        *,
        client_msg_id: str | None = None,
        ts_ms: int | None = None,
    ) -> tuple[Message, bool]:
        """Append a message atomically and enforce idempotency."""

        message = Message(
            message_id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            image_url=image_url,
            ts_ms=ts_ms if ts_ms is not None else _now_ms(),
            client_msg_id=client_msg_id,
        )
        conn = self._backend.connection
        with self._backend.lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                known = cursor.execute(
                    "SELECT conversation_id FROM conversations WHERE conversation_id=?", (conversation_id,)
                ).fetchone()
                if known is None:
                    conn.rollback()
                    raise ValueError("unknown conversation")
                if client_msg_id is not None:
                    row = cursor.execute(
                        f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE sender_id=? AND client_msg_id=?",
                        (sender_id, client_msg_id),
                    ).fetchone()
                    if row:
                        conn.commit()
                        return _message_from_row(row), False
                cursor.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, 0, ?)",
                    (
                        message.message_id,
                        conversation_id,
                        sender_id,
                        content,
                        image_url,
                        message.ts_ms,
                        client_msg_id,
                    ),
                )
                cursor.execute(
                    "UPDATE conversations SET last_message_at_ms=? WHERE conversation_id=?",
                    (message.ts_ms, conversation_id),
                )
                conn.commit()
                return message, True
            except sqlite3.IntegrityError:
                conn.rollback()
                row = conn.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE sender_id=? AND client_msg_id=?",
                    (sender_id, client_msg_id),
                ).fetchone()
                if row:
                    return _message_from_row(row), False
                raise
            finally:
                cursor.close()

    def list_messages(self, conversation_id: str, limit: int | None = None) -> List[Message]:
        with self._backend.lock:
            if limit is None:
                rows = self._backend.connection.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE conversation_id=? ORDER BY ts_ms, rowid",
                    (conversation_id,),
                ).fetchall()
            else:
                rows = self._backend.connection.execute(
                    f"""
                    SELECT * FROM (
                        SELECT {_MESSAGE_COLUMNS}, rowid AS rid FROM messages WHERE conversation_id=?
                        ORDER BY ts_ms DESC, rowid DESC LIMIT ?
                    ) ORDER BY ts_ms, rid
                    """,
                    (conversation_id, max(limit, 0)),
                ).fetchall()
        return [_message_from_row(row) for row in rows]

    def list_for_user(self, user_id: str) -> List[Conversation]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"""
                SELECT {_CONVERSATION_COLUMNS} FROM conversations
                WHERE participant1_id=? OR participant2_id=?
                ORDER BY last_message_at_ms DESC
                """,
                (user_id, user_id),
            ).fetchall()
        return [_conversation_from_row(row) for row in rows]

    def mark_read(self, conversation_id: str, reader_id: str) -> int:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "UPDATE messages SET is_read=1 WHERE conversation_id=? AND sender_id<>? AND is_read=0",
                (conversation_id, reader_id),
            )
        return cursor.rowcount
