"""Exponential backoff with a ceiling for outbox retries."""

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class RetryPolicy:
    """Retry timing and terminal-failure rule for conversion events.

    `attempts` is always the number of attempts made so far, including the
    one that just failed.
    """

    base: timedelta = timedelta(minutes=5)
    ceiling: timedelta = timedelta(minutes=60)
    max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            base=timedelta(minutes=settings.CAPI_RETRY_BASE_MINUTES),
            ceiling=timedelta(minutes=settings.CAPI_RETRY_CEILING_MINUTES),
            max_attempts=settings.CAPI_MAX_ATTEMPTS,
        )

    def delay_for(self, attempts: int) -> timedelta:
        """min(ceiling, base * 2^(attempts - 1)); attempts below 1 count as 1."""
        exponent = max(attempts, 1) - 1
        # Cap the exponent so huge attempt counts cannot overflow timedelta.
        if exponent >= 32:
            return self.ceiling
        return min(self.ceiling, self.base * (2 ** exponent))

    def next_retry_at(self, attempts: int, now: datetime) -> datetime:
        return now + self.delay_for(attempts)

    def is_terminal(self, attempts: int) -> bool:
        return attempts >= self.max_attempts
