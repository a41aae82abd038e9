"""Backoff policy for failed analysis attempts.

A failed queue entry that still has attempts left goes back to ``pending``
with ``next_eligible_at`` pushed into the future. The policy below decides
how far.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field


class RetryStrategy(str, Enum):
    """Retry strategy types for different backoff patterns."""

    EXPONENTIAL_BACKOFF = "exponential_backoff"  # 60s, 120s, 240s...
    LINEAR_BACKOFF = "linear_backoff"  # 60s, 120s, 180s...
    FIXED_DELAY = "fixed_delay"  # 60s, 60s, 60s...
    IMMEDIATE = "immediate"  # No delay


class RetryPolicy(BaseModel):
    """Retry timing for queue entries.

    Attributes:
        strategy: Backoff strategy to use
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Upper bound for any single delay
        jitter_factor: Random jitter factor (0.0-1.0)
        backoff_multiplier: Multiplier for exponential backoff
    """

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    base_delay_seconds: int = Field(default=60, ge=0, le=3600)
    max_delay_seconds: int = Field(default=3600, ge=1, le=86400)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)

    def calculate_delay(self, attempt: int) -> int:
        """Calculate retry delay with jitter.

        Args:
            attempt: Number of failed attempts before this one (0-indexed)

        Returns:
            Delay in seconds with jitter applied
        """
        base_delay = self.base_delay_seconds

        if self.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = base_delay * (self.backoff_multiplier**attempt)
        elif self.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = base_delay * (attempt + 1)
        elif self.strategy == RetryStrategy.FIXED_DELAY:
            delay = base_delay
        else:  # IMMEDIATE
            delay = 0

        delay = min(delay, self.max_delay_seconds)

        # Spread retries of entries that failed together
        if self.jitter_factor > 0 and delay > 0:
            jitter_amount = delay * self.jitter_factor
            jitter = random.uniform(-jitter_amount, jitter_amount)
            delay = max(1, int(delay + jitter))

        return int(delay)

    def next_eligible_at(self, attempt: int, now: datetime) -> datetime:
        """Return the earliest instant the entry may be claimed again."""
        return now + timedelta(seconds=self.calculate_delay(attempt))
