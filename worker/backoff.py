"""
Exponential backoff for failed email deliveries.

Retries of a failed send are spaced on a minutes scale so they stay within
the relevance window of a scheduling cycle: 5, 15, 45 minutes for attempts
1-3 with the defaults, never more than the cap.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from validation.config import MailerConfig


DEFAULT_BASE_MINUTES = 5.0
DEFAULT_FACTOR = 3.0
DEFAULT_CAP_MINUTES = 60.0
DEFAULT_MAX_ATTEMPTS = 3


def calculate_delay(
    attempt_number: int,
    base: float = DEFAULT_BASE_MINUTES,
    factor: float = DEFAULT_FACTOR,
    cap: float = DEFAULT_CAP_MINUTES,
) -> float:
    """
    Calculate retry delay in minutes for a failed attempt.

    Formula: min(cap, base * factor ** (attempt_number - 1))

    Args:
        attempt_number: Attempts made so far (1 = first failure)
        base: Delay after the first failure, in minutes
        factor: Multiplier between consecutive delays
        cap: Maximum delay in minutes

    Returns:
        Delay in minutes

    Raises:
        ValueError: If attempt_number < 1
    """
    if attempt_number < 1:
        raise ValueError(f"attempt_number must be >= 1, got {attempt_number}")
    return min(cap, base * factor ** (attempt_number - 1))


@dataclass(frozen=True)
class RetryPolicy:
    """
    Maps a failed attempt number to the wait before the next attempt.

    max_attempts is the shared default ceiling stamped on new jobs; each job
    keeps its own copy from enqueue time.

    Example:
        >>> policy = RetryPolicy()
        >>> [policy.delay_minutes(n) for n in (1, 2, 3)]
        [5.0, 15.0, 45.0]
    """
    base_minutes: float = DEFAULT_BASE_MINUTES
    factor: float = DEFAULT_FACTOR
    cap_minutes: float = DEFAULT_CAP_MINUTES
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self):
        if self.base_minutes <= 0:
            raise ValueError("base_minutes must be positive")
        if self.factor <= 1:
            raise ValueError("factor must be greater than 1")
        if self.cap_minutes < self.base_minutes:
            raise ValueError("cap_minutes must be >= base_minutes")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay_minutes(self, attempt_number: int) -> float:
        return calculate_delay(attempt_number, self.base_minutes, self.factor, self.cap_minutes)

    def delay(self, attempt_number: int) -> float:
        """Delay in seconds before the job may be claimed again."""
        return self.delay_minutes(attempt_number) * 60.0

    def schedule(self) -> list[float]:
        """Delays in minutes for every retry the default ceiling allows."""
        return [self.delay_minutes(n) for n in range(1, self.max_attempts)]

    @classmethod
    def from_config(cls, config: 'MailerConfig') -> 'RetryPolicy':
        return cls(
            base_minutes=config.retry_base_minutes,
            factor=config.retry_factor,
            cap_minutes=config.retry_cap_minutes,
            max_attempts=config.max_attempts,
        )
