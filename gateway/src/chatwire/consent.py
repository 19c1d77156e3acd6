"""Pairwise chat consent: ``none -> pending -> accepted | rejected``.

One record is kept per unordered pair of users. ``accepted`` is durable and
opens messaging in both directions. Whether a ``rejected`` record may be
superseded by a fresh request is decided by :class:`ConsentPolicy`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Callable, Dict

from .conversations import pair_key
from .sessions import _now_ms
from .sqlite_backend import SQLiteBackend

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
NO_CONSENT = "no_consent"


class ConsentError(Exception):
    pass


@dataclass
class ChatConsent:
    consent_id: str
    requester_id: str
    responder_id: str
    status: str
    created_at_ms: int
    updated_at_ms: int

    def to_wire(self) -> dict:
        return {
            "id": self.consent_id,
            "requesterId": self.requester_id,
            "responderId": self.responder_id,
            "status": self.status,
            "createdAt": self.created_at_ms,
            "updatedAt": self.updated_at_ms,
        }


@dataclass
class ConsentPolicy:
    allow_rerequest_after_reject: bool = False
    rerequest_cooldown_s: int = 0


class InMemoryConsentStore:
    def __init__(self) -> None:
        self._by_pair: Dict[str, ChatConsent] = {}
        self._by_id: Dict[str, ChatConsent] = {}

    def get_for_pair(self, user_a: str, user_b: str) -> ChatConsent | None:
        return self._by_pair.get(pair_key(user_a, user_b))

    def get(self, consent_id: str) -> ChatConsent | None:
        return self._by_id.get(consent_id)

    def put(self, consent: ChatConsent) -> ChatConsent:
        key = pair_key(consent.requester_id, consent.responder_id)
        previous = self._by_pair.get(key)
        if previous is not None:
            self._by_id.pop(previous.consent_id, None)
        self._by_pair[key] = consent
        self._by_id[consent.consent_id] = consent
        return consent

    def update_status(self, consent_id: str, status: str, updated_at_ms: int) -> ChatConsent:
        consent = self._by_id.get(consent_id)
        if consent is None:
            raise ValueError("unknown consent")
        consent.status = status
        consent.updated_at_ms = updated_at_ms
        return consent


_CONSENT_COLUMNS = "consent_id, requester_id, responder_id, status, created_at_ms, updated_at_ms"


class SQLiteConsentStore:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend

    def get_for_pair(self, user_a: str, user_b: str) -> ChatConsent | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_CONSENT_COLUMNS} FROM chat_consents WHERE pair_key=?",
                (pair_key(user_a, user_b),),
            ).fetchone()
        return ChatConsent(*row) if row else None

    def get(self, consent_id: str) -> ChatConsent | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                f"SELECT {_CONSENT_COLUMNS} FROM chat_consents WHERE consent_id=?",
                (consent_id,),
            ).fetchone()
        return ChatConsent(*row) if row else None

    def put(self, consent: ChatConsent) -> ChatConsent:
        with self._backend.lock:
            self._backend.connection.execute(
                f"""
                INSERT INTO chat_consents (pair_key, {_CONSENT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(pair_key) DO UPDATE SET
                    consent_id=excluded.consent_id,
                    requester_id=excluded.requester_id,
                    responder_id=excluded.responder_id,
                    status=excluded.status,
                    created_at_ms=excluded.created_at_ms,
                    updated_at_ms=excluded.updated_at_ms
                """,
                (
                    pair_key(consent.requester_id, consent.responder_id),
                    consent.consent_id,
                    consent.requester_id,
                    consent.responder_id,
                    consent.status,
                    consent.created_at_ms,
                    consent.updated_at_ms,
                ),
            )
        return consent

    def update_status(self, consent_id: str, status: str, updated_at_ms: int) -> ChatConsent:
        with self._backend.lock:
            cursor = self._backend.connection.execute(
                "UPDATE chat_consents SET status=?, updated_at_ms=? WHERE consent_id=?",
                (status, updated_at_ms, consent_id),
            )
        if cursor.rowcount == 0:
            raise ValueError("unknown consent")
        consent = self.get(consent_id)
        assert consent is not None
        return consent


class ConsentGate:
    def __init__(self, store, policy: ConsentPolicy | None = None, *, now_func: Callable[[], int] = _now_ms) -> None:
        self.store = store
        self.policy = policy or ConsentPolicy()
        self._now = now_func

    def permission(self, sender_id: str, receiver_id: str) -> tuple[str, ChatConsent | None]:
        consent = self.store.get_for_pair(sender_id, receiver_id)
        if consent is None:
            return NO_CONSENT, None
        return consent.status, consent

    def is_allowed(self, sender_id: str, receiver_id: str) -> bool:
        status, _ = self.permission(sender_id, receiver_id)
        return status == ACCEPTED

    def can_rerequest(self, consent: ChatConsent) -> bool:
        if consent.status != REJECTED or not self.policy.allow_rerequest_after_reject:
            return False
        return self._now() - consent.updated_at_ms >= self.policy.rerequest_cooldown_s * 1000

    def request(self, requester_id: str, responder_id: str) -> tuple[ChatConsent, bool]:
        """Open or look up the consent record for a pair.

        Returns ``(consent, created)``; ``created`` is true only when a new
        pending record was written.
        """

        if requester_id == responder_id:
            raise ValueError("cannot request consent from self")
        existing = self.store.get_for_pair(requester_id, responder_id)
        if existing is not None and not self.can_rerequest(existing):
            return existing, False
        now_ms = self._now()
        consent = ChatConsent(
            consent_id=str(uuid.uuid4()),
            requester_id=requester_id,
            responder_id=responder_id,
            status=PENDING,
            created_at_ms=now_ms,
            updated_at_ms=now_ms,
        )
        return self.store.put(consent), True

    def respond(self, consent_id: str, responder_id: str, accept: bool) -> ChatConsent:
        consent = self.store.get(consent_id)
        if consent is None:
            raise ValueError("unknown consent")
        if consent.responder_id != responder_id:
            raise PermissionError("only the responder can answer a consent request")
        if consent.status != PENDING:
            raise ConsentError(f"consent already {consent.status}")
        status = ACCEPTED if accept else REJECTED
        return self.store.update_status(consent_id, status, self._now())
