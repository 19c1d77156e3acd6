from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class ReconnectPolicy:
    """Delay schedule for reconnect attempts after an unexpected close.

    Attempts are numbered from 1. ``delay_for`` returns ``None`` once
    ``max_attempts`` is exhausted, which moves the connection to ``offline``.
    """

    base_delay_s: float = 1.0
    multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter: float = 0.2
    max_attempts: int | None = 12

    @classmethod
    def fixed(cls, delay_s: float = 3.0) -> "ReconnectPolicy":
        return cls(
            base_delay_s=delay_s,
            multiplier=1.0,
            max_delay_s=delay_s,
            jitter=0.0,
            max_attempts=None,
        )

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float | None:
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        if self.max_attempts is not None and attempt > self.max_attempts:
            return None
        delay = min(self.max_delay_s, self.base_delay_s * (self.multiplier ** (attempt - 1)))
        if self.jitter:
            delay *= 1 + self.jitter * (2 * rand() - 1)
        return max(0.0, delay)


@dataclass
class ClientConfig:
    url: str
    session_token: str
    typing_ttl_s: float = 3.0
    heartbeat_s: float | None = 20.0
    handshake_timeout_s: float = 10.0
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
