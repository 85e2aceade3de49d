from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class ExponentialBackoff:
    """Delay after the n-th consecutive failure: min(base * 2**(n-1), cap)."""

    base_seconds: float
    cap_seconds: float

    def delay(self, attempts: int) -> timedelta:
        if attempts <= 0:
            return timedelta(0)
        # Past 2**32 the cap always wins; avoid building huge ints.
        exponent = min(attempts - 1, 32)
        return timedelta(seconds=min(self.base_seconds * (2**exponent), self.cap_seconds))

    def next_at(self, now: datetime, attempts: int) -> datetime:
        return now + self.delay(attempts)
