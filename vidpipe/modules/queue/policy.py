"""Retry and dead-letter policy.

The policy is declarative consumer configuration stored on the broker, so a
restarted worker picks up the same limits instead of carrying its own.
"""

import math
from dataclasses import dataclass, asdict
from typing import Optional

from vidpipe.core.config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded redelivery with a fixed (default) or growing wait."""
    max_attempts: int = 3
    initial_delay: float = 30.0
    backoff_multiplier: float = 1.0
    max_delay: float = 300.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the wait before redelivering after a given attempt.

        Args:
            attempt: The attempt that just failed (1-indexed).

        Returns:
            The delay in seconds, capped at max_delay.
        """
        if attempt < 1:
            return min(self.initial_delay, self.max_delay)

        delay = self.initial_delay * math.pow(self.backoff_multiplier, attempt - 1)
        return min(delay, self.max_delay)

    @property
    def longest_delay(self) -> float:
        return self.calculate_delay(self.max_attempts)

    def is_exhausted(self, attempts: int) -> bool:
        """True once no further attempt is allowed."""
        return attempts >= self.max_attempts

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "RetryPolicy":
        return cls(
            max_attempts=int(data["max_attempts"]),
            initial_delay=float(data["initial_delay"]),
            backoff_multiplier=float(data.get("backoff_multiplier", 1.0)),
            max_delay=float(data.get("max_delay", 300.0)),
        )


def redelivery_policy_from_settings() -> RetryPolicy:
    """Build the consumer redelivery policy from settings."""
    return RetryPolicy(
        max_attempts=settings.MAX_DELIVERIES,
        initial_delay=settings.REDELIVERY_WAIT_SECONDS,
        backoff_multiplier=settings.REDELIVERY_BACKOFF_MULTIPLIER,
        max_delay=settings.ACK_WAIT_SECONDS,
    )


def callback_policy_from_settings() -> RetryPolicy:
    """Build the completion-callback retry policy from settings."""
    return RetryPolicy(
        max_attempts=settings.CALLBACK_MAX_ATTEMPTS,
        initial_delay=settings.CALLBACK_RETRY_DELAY_SECONDS,
        backoff_multiplier=2.0,
        max_delay=30.0,
    )


def dead_letter_retention_from_settings() -> Optional[float]:
    """Age in seconds after which dead letters are trimmed."""
    return float(settings.DEAD_LETTER_MAX_AGE_SECONDS) if settings.DEAD_LETTER_MAX_AGE_SECONDS else None
