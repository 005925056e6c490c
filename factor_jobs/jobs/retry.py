"""Exponential backoff between retry attempts."""

import random
from dataclasses import dataclass
from typing import Optional

from factor_jobs.config import settings


@dataclass
class RetryPolicy:
    base_delay: float = 2.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the computed delay

    def delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait before retry number ``attempt`` (1-based)."""
        attempt = max(1, attempt)
        delay = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        if self.jitter:
            delay += delay * self.jitter * random.random()
            delay = min(delay, self.max_delay)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
        )


# Used by tests and local runs that should not wait between attempts
NO_DELAY = RetryPolicy(base_delay=0.0, max_delay=0.0, jitter=0.0)
