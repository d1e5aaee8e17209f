from __future__ import annotations

import random
from dataclasses import dataclass

from storeshift.core.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_seconds: float
    max_seconds: float
    jitter: float = 0.1

    @classmethod
    def from_settings(cls, settings: Settings, *, max_attempts: int | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=max_attempts or settings.migration_max_attempts,
            base_seconds=settings.migration_retry_base_seconds,
            max_seconds=settings.migration_retry_max_seconds,
        )

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts

    def backoff_seconds(self, attempts: int) -> float:
        """Delay before attempt ``attempts + 1``; ``attempts`` counts completed tries."""
        if self.base_seconds <= 0:
            return 0.0
        delay = min(self.max_seconds, self.base_seconds * (2 ** max(0, attempts - 1)))
        if self.jitter:
            delay *= 1 + random.uniform(-self.jitter, self.jitter)
        return max(0.0, min(delay, self.max_seconds))
