"""
Resilience Patterns Module.

Implements the retry/backoff policy applied by the runner when a step
fails with a retryable error.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from backend.app.core.config import Settings, get_settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Capped exponential backoff.

    backoff(n) = min(base * multiplier ** (n - 1), max) for the n-th failed attempt.
    """

    max_attempts: int = 3
    base_seconds: float = 60.0
    multiplier: float = 2.0
    max_seconds: float = 3600.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.max_attempts,
            base_seconds=settings.retry_backoff_seconds,
            multiplier=settings.retry_backoff_multiplier,
            max_seconds=settings.retry_backoff_max_seconds,
        )

    def backoff_for(self, attempt: int) -> timedelta:
        exponent = max(attempt, 1) - 1
        seconds = min(self.base_seconds * (self.multiplier ** exponent), self.max_seconds)
        return timedelta(seconds=seconds)

    def is_exhausted(self, attempt_count: int, now: datetime, retry_until: Optional[datetime] = None) -> bool:
        """True when no further retry is allowed after ``attempt_count`` failures."""
        if attempt_count >= self.max_attempts:
            return True
        return retry_until is not None and now >= retry_until
