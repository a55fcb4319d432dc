"""
Send throttle for batch delivery.

Spaces consecutive sends by a fixed minimum interval so a batch doesn't
overwhelm the downstream mail transport. The interval is measured from the
previous send, so time already spent delivering counts toward the wait.
"""

import time
from typing import Callable, Optional

from shared.log import create_logger

log_trace, _, _, _, _ = create_logger("RateLimiter")


class SendThrottle:
    """
    Minimum-interval throttle between sends.

    One throttle is used per worker; if sends are ever parallelized each
    worker keeps its own, making this a per-worker rate limit.

    Example:
        >>> throttle = SendThrottle(delay_seconds=0.1)
        >>> for job in batch:
        ...     throttle.wait()
        ...     send(job)
    """

    def __init__(
        self,
        delay_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize send throttle.

        Args:
            delay_seconds: Minimum gap between sends (0 disables throttling)
            sleep: Sleep function (injectable for tests)
            clock: Monotonic clock (injectable for tests)
        """
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self.delay_seconds = delay_seconds
        self._sleep = sleep
        self._clock = clock
        self._last_send: Optional[float] = None
        self.total_waited: float = 0.0

    def should_wait(self, now: Optional[float] = None) -> float:
        """
        Seconds to wait before the next send may go out.

        Returns:
            0.0 for the first send or once the interval has elapsed
        """
        if self._last_send is None or self.delay_seconds == 0:
            return 0.0
        if now is None:
            now = self._clock()
        remaining = self.delay_seconds - (now - self._last_send)
        return max(remaining, 0.0)

    def wait(self) -> float:
        """
        Block until the next send is allowed, then record it.

        Returns:
            Seconds actually slept
        """
        wait_time = self.should_wait()
        if wait_time > 0:
            log_trace(f"Throttling send for {wait_time * 1000:.0f}ms")
            self._sleep(wait_time)
            self.total_waited += wait_time
        self._last_send = self._clock()
        return wait_time

    def reset(self):
        """Forget the previous send (start of a new batch)."""
        self._last_send = None
