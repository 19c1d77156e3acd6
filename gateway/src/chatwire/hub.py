from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Set

Deliver = Callable[[dict], None]
Closer = Callable[[int, str], Awaitable[None]]

_connection_ids = itertools.count(1)


async def _noop_close(code: int, message: str) -> None:
    return None


@dataclass
class Connection:
    user_id: str
    deliver: Deliver
    close: Closer = _noop_close
    connection_id: int = field(default_factory=lambda: next(_connection_ids))

    def send(self, frame: dict) -> None:
        self.deliver(frame)


class ConnectionHub:
    """Maps each user to their single live connection and fans frames out."""

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._chat_windows: Dict[str, Set[str]] = {}

    def register(self, user_id: str, deliver: Deliver, close: Closer = _noop_close) -> tuple[Connection, Connection | None]:
        """Register a connection, returning it and the one it replaced, if any."""

        connection = Connection(user_id=user_id, deliver=deliver, close=close)
        replaced = self._connections.get(user_id)
        self._connections[user_id] = connection
        return connection, replaced

    def unregister(self, connection: Connection) -> bool:
        current = self._connections.get(connection.user_id)
        if current is None or current.connection_id != connection.connection_id:
            return False
        self._connections.pop(connection.user_id, None)
        return True

    def get(self, user_id: str) -> Connection | None:
        return self._connections.get(user_id)

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._connections

    def connected_user_ids(self) -> List[str]:
        return sorted(self._connections)

    def send_to_user(self, user_id: str, frame: dict) -> bool:
        connection = self._connections.get(user_id)
        if connection is None:
            return False
        connection.send(frame)
        return True

    def broadcast(self, frame: dict, *, exclude: Iterable[str] = ()) -> None:
        skip = set(exclude)
        for user_id, connection in list(self._connections.items()):
            if user_id not in skip:
                connection.send(frame)

    def open_window(self, user_id: str, other_user_id: str) -> None:
        self._chat_windows.setdefault(user_id, set()).add(other_user_id)

    def close_window(self, user_id: str, other_user_id: str) -> None:
        windows = self._chat_windows.get(user_id)
        if not windows:
            return
        windows.discard(other_user_id)
        if not windows:
            self._chat_windows.pop(user_id, None)

    def has_window_open(self, user_id: str, other_user_id: str) -> bool:
        return other_user_id in self._chat_windows.get(user_id, set())

    def clear_windows(self, user_id: str) -> None:
        self._chat_windows.pop(user_id, None)
