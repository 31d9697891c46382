"""Exponential backoff shared by the webhook queue and the sync job store."""
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ghmirror.errors import RateLimitedError


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters: delay = base * 2**attempts + jitter, capped at max_delay."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 900.0
    jitter: bool = True

    def compute_backoff(self, attempts: int) -> float:
        """Seconds to wait before the next attempt, given attempts made so far.

        Jitter is drawn from [0, base), which is smaller than the gap between
        consecutive exponential steps, so delays never shrink as attempts grow.
        """
        delay = self.base_delay_seconds * (2 ** max(attempts, 0))
        if self.jitter:
            delay += random.uniform(0, self.base_delay_seconds)
        return min(delay, self.max_delay_seconds)

    def next_retry_at(
        self,
        attempts: int,
        now: datetime,
        error: Optional[BaseException] = None,
    ) -> datetime:
        """When to retry. Rate-limit errors wait for the provider's reset instead."""
        if isinstance(error, RateLimitedError) and error.reset_at and error.reset_at > now:
            return error.reset_at
        return now + timedelta(seconds=self.compute_backoff(attempts))

    def exhausted(self, attempts: int, max_attempts: Optional[int] = None) -> bool:
        limit = self.max_attempts if max_attempts is None else max_attempts
        return attempts >= limit
