"""Retry backoff policy for failed outbox events."""

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class BackoffPolicy:
    """Capped exponential backoff.

    The n-th failure (1-indexed) delays the next attempt by
    ``min(max_delay, base * multiplier ** n)`` seconds. With the defaults
    that is 10, 20, 40 and 80 minutes, never more than 5 hours.
    """

    base: float = 300.0
    multiplier: float = 2.0
    max_delay: float = 18_000.0

    def __post_init__(self) -> None:
        if self.base < 0:
            raise ValueError(f"base must be >= 0, got {self.base}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")
        if self.max_delay < self.base:
            raise ValueError(
                f"max_delay ({self.max_delay}) must be >= base ({self.base})"
            )

    def delay_seconds(self, attempt_count: int) -> float:
        if attempt_count < 1:
            return 0.0
        # Clamp the exponent so huge attempt counts cannot overflow
        exponent = min(attempt_count, 64)
        return min(self.max_delay, self.base * (self.multiplier**exponent))

    def delay(self, attempt_count: int) -> timedelta:
        return timedelta(seconds=self.delay_seconds(attempt_count))
