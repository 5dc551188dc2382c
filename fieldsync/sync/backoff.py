"""Exponential backoff with jitter for queued sync operations.

The window for attempt ``n`` ends at ``min(max, base * multiplier ** (n - 1))``
and starts where the previous attempt's window ended. Drawing the delay
inside that window keeps successive delays increasing until the cap, after
which every delay equals the cap.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from ..utils import utcnow


@dataclass
class BackoffPolicy:
    """Configuration for retry backoff of queue items."""

    base_seconds: float = 2.0
    max_seconds: float = 300.0
    multiplier: float = 2.0
    max_retries: int = 10  # failed attempts before the item is dead-lettered
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def window(self, attempt: int) -> tuple[float, float]:
        """Delay window (low, high) in seconds for a 1-based attempt number."""
        if attempt < 1:
            return 0.0, 0.0
        raw = self.base_seconds * (self.multiplier ** (attempt - 1))
        return min(self.max_seconds, raw / self.multiplier), min(self.max_seconds, raw)

    def delay(self, attempt: int) -> float:
        """Jittered delay in seconds for a 1-based attempt number."""
        low, high = self.window(attempt)
        if high <= low:
            return high
        return self.rng.uniform(low, high)

    def next_retry_at(self, attempt: int, now: datetime | None = None) -> datetime:
        """Earliest time the item may be retried after ``attempt`` failures."""
        return (now or utcnow()) + timedelta(seconds=self.delay(attempt))

    def exhausted(self, retry_count: int) -> bool:
        return retry_count >= self.max_retries
