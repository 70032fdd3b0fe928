"""Retry policy for failed dispatch attempts.

Delay grows exponentially with the number of attempts already made, so the
gap between consecutive retries of the same command is strictly increasing
as long as the cap is not reached.
"""

from __future__ import annotations

import datetime
import random

from smarthome_dispatch.const import DISPATCH_RETRY_BASE_DELAY, DISPATCH_RETRY_MAX_DELAY


class RetryPolicy:
    """Exponential backoff retry policy with optional jitter."""

    def __init__(
        self,
        base_delay_seconds: float = DISPATCH_RETRY_BASE_DELAY,
        max_delay_seconds: float = DISPATCH_RETRY_MAX_DELAY,
        jitter_factor: float = 0.0,
    ):
        """Initialize retry policy.

        Args:
            base_delay_seconds: Delay unit multiplied by 2**attempts (default: 1s)
            max_delay_seconds: Maximum delay cap (default: 1h)
            jitter_factor: Jitter as fraction of delay (default: 0, deterministic)
        """
        if base_delay_seconds <= 0:
            msg = "base_delay_seconds must be positive"
            raise ValueError(msg)
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.jitter_factor = jitter_factor

    def get_delay(self, attempts: int) -> float:
        """Calculate the wait before the next attempt.

        Formula: base_delay * (2 ** attempts) + jitter

        Args:
            attempts: Attempts made so far, including the one that just failed

        Returns:
            Delay in seconds (capped at max_delay_seconds before jitter)
        """
        delay = self.base_delay_seconds * (2**attempts)
        delay = min(delay, self.max_delay_seconds)

        if self.jitter_factor:
            delay += random.uniform(0, delay * self.jitter_factor)
        return delay

    def retry_after(self, attempts: int, now: datetime.datetime) -> datetime.datetime:
        """Absolute time before which the command must not be attempted again."""
        return now + datetime.timedelta(seconds=self.get_delay(attempts))

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(base_delay={self.base_delay_seconds}s, "
            f"max_delay={self.max_delay_seconds}s, "
            f"jitter_factor={self.jitter_factor})"
        )
