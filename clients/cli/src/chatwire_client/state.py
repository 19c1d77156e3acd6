from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


def loop_scheduler(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class PresenceStore:
    """Online flags per user; written only from server events."""

    def __init__(self) -> None:
        self._online: Dict[str, bool] = {}

    def apply(self, user_id: str, is_online: bool) -> bool:
        previous = self._online.get(user_id)
        self._online[user_id] = is_online
        return previous != is_online

    def reset(self, online_user_ids: Iterable[str]) -> None:
        self._online = {user_id: True for user_id in online_user_ids}

    def is_online(self, user_id: str) -> bool:
        return self._online.get(user_id, False)

    def online_user_ids(self) -> List[str]:
        return sorted(user_id for user_id, online in self._online.items() if online)


class TypingStore:
    """Typing flags per user with a local auto-clear timer.

    A ``True`` update (re)arms a timer that clears the flag after ``ttl_s``
    seconds; a ``False`` update clears it at once. ``on_change`` fires with
    ``(user_id, is_typing)`` whenever the flag flips, including on expiry.
    """

    def __init__(
        self,
        ttl_s: float = 3.0,
        *,
        scheduler: Optional[Scheduler] = None,
        on_change: Optional[Callable[[str, bool], Any]] = None,
    ) -> None:
        self.ttl_s = ttl_s
        self._scheduler = scheduler or loop_scheduler
        self._on_change = on_change
        self._typing: Dict[str, bool] = {}
        self._timers: Dict[str, TimerHandle] = {}

    def apply(self, user_id: str, is_typing: bool) -> None:
        self._cancel_timer(user_id)
        if is_typing:
            self._timers[user_id] = self._scheduler(self.ttl_s, lambda: self._expire(user_id))
        self._set(user_id, is_typing)

    def is_typing(self, user_id: str) -> bool:
        return self._typing.get(user_id, False)

    def typing_user_ids(self) -> List[str]:
        return sorted(self._typing)

    def pending_timers(self) -> int:
        return len(self._timers)

    def clear(self) -> None:
        for user_id in list(self._timers):
            self._cancel_timer(user_id)
        for user_id in list(self._typing):
            self._set(user_id, False)

    def _expire(self, user_id: str) -> None:
        self._timers.pop(user_id, None)
        self._set(user_id, False)

    def _cancel_timer(self, user_id: str) -> None:
        timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()

    def _set(self, user_id: str, is_typing: bool) -> None:
        was_typing = self._typing.get(user_id, False)
        if is_typing:
            self._typing[user_id] = True
        else:
            self._typing.pop(user_id, None)
        if was_typing != is_typing and self._on_change is not None:
            self._on_change(user_id, is_typing)
