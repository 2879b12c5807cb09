"""Immutable time budget shared by every attempt of a bounded operation."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass


def monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True, slots=True)
class Deadline:
    """A fixed expiry instant on the monotonic clock.

    ``expires_at_ms`` is never before ``started_at_ms``; ``remaining_ms``
    never goes negative.
    """

    started_at_ms: float
    expires_at_ms: float

    @classmethod
    def from_timeout_ms(cls, timeout_ms: float, now_ms: float | None = None) -> Deadline:
        started = monotonic_ms() if now_ms is None else now_ms
        return cls(started_at_ms=started, expires_at_ms=started + max(0.0, timeout_ms))

    def remaining_ms(self, now_ms: float | None = None) -> int:
        now = monotonic_ms() if now_ms is None else now_ms
        return max(0, math.ceil(self.expires_at_ms - now))

    def elapsed_ms(self, now_ms: float | None = None) -> int:
        now = monotonic_ms() if now_ms is None else now_ms
        return max(0, int(now - self.started_at_ms))

    def is_expired(self, now_ms: float | None = None) -> bool:
        return self.remaining_ms(now_ms) <= 0
