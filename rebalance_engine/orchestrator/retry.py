"""
Retry backoff for transient submission failures.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff with jitter."""

    max_attempts: int = 4
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter: float = 0.5

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the retry that follows `attempt` (1-based).

        The capped exponential delay is scaled down by a random factor of up
        to `jitter` so that accounts failing together do not retry together.
        """
        capped = min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))
        return capped * (1 - self.jitter * random.random())
