from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List

from .sqlite_backend import SQLiteBackend


@dataclass
class UserProfile:
    user_id: str
    first_name: str
    profile_photo: str | None = None
    is_online: bool = False

    def public(self) -> dict:
        return {
            "id": self.user_id,
            "firstName": self.first_name,
            "profilePhoto": self.profile_photo,
            "isOnline": self.is_online,
        }


class InMemoryUserDirectory:
    def __init__(self) -> None:
        self._users: Dict[str, UserProfile] = {}

    def upsert(self, user_id: str, first_name: str, profile_photo: str | None = None) -> UserProfile:
        existing = self._users.get(user_id)
        profile = UserProfile(
            user_id=user_id,
            first_name=first_name,
            profile_photo=profile_photo,
            is_online=existing.is_online if existing else False,
        )
        self._users[user_id] = profile
        return profile

    def get(self, user_id: str) -> UserProfile | None:
        return self._users.get(user_id)

    def set_online(self, user_id: str, online: bool) -> None:
        profile = self._users.get(user_id)
        if profile is not None:
            profile.is_online = online

    def online_user_ids(self) -> List[str]:
        return sorted(user_id for user_id, profile in self._users.items() if profile.is_online)


class SQLiteUserDirectory:
    def __init__(self, backend: SQLiteBackend) -> None:
        self._backend = backend
        # Online flags left over from a previous process are stale.
        with self._backend.lock:
            self._backend.connection.execute("UPDATE users SET is_online=0")

    def upsert(self, user_id: str, first_name: str, profile_photo: str | None = None) -> UserProfile:
        with self._backend.lock:
            self._backend.connection.execute(
                """
                INSERT INTO users (user_id, first_name, profile_photo) VALUES (?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET first_name=excluded.first_name,
                    profile_photo=excluded.profile_photo
                """,
                (user_id, first_name, profile_photo),
            )
        profile = self.get(user_id)
        assert profile is not None
        return profile

    def get(self, user_id: str) -> UserProfile | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT user_id, first_name, profile_photo, is_online FROM users WHERE user_id=?",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return UserProfile(user_id=row[0], first_name=row[1], profile_photo=row[2], is_online=bool(row[3]))

    def set_online(self, user_id: str, online: bool) -> None:
        with self._backend.lock:
            self._backend.connection.execute(
                "UPDATE users SET is_online=? WHERE user_id=?",
                (1 if online else 0, user_id),
            )

    def online_user_ids(self) -> List[str]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT user_id FROM users WHERE is_online=1 ORDER BY user_id"
            ).fetchall()
        return [row[0] for row in rows]
