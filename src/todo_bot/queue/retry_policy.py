"""Exponential backoff policy for batch delivery retries."""

from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass(slots=True)
class RetryPolicy:
    """Attempt budget and capped exponential backoff with equal jitter."""

    max_attempts: int = 5
    base_seconds: float = 2.0
    max_seconds: float = 300.0
    rng: random.Random = field(default_factory=random.Random)  # noqa: S311

    def ceiling(self, attempt_count: int) -> float:
        """Un-jittered delay after ``attempt_count`` attempts."""

        return min(self.max_seconds, self.base_seconds * (2 ** max(attempt_count - 1, 0)))

    def delay_for(self, attempt_count: int) -> float:
        """Jittered delay, always in ``[ceiling / 2, ceiling]``."""

        ceiling = self.ceiling(attempt_count)
        half = ceiling / 2
        return half + self.rng.uniform(0, half)

    def retries_left(self, attempt_count: int) -> bool:
        return attempt_count < self.max_attempts
