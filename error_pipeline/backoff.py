"""Exponential backoff with jitter."""

import random


class Backoff:
    """Delay doubles per failure from ``base`` up to ``cap``, then jitter in [0.8, 1.2]."""

    def __init__(self, base: float = 2.0, cap: float = 300.0, rng=None):
        self._base = base
        self._cap = cap
        self._rng = rng or random.Random()
        self._failures = 0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), jitter included."""
        # exponent bounded so long outages cannot overflow float
        exponent = min(max(attempt - 1, 0), 32)
        capped = min(self._base * (2 ** exponent), self._cap)
        return min(capped * self._rng.uniform(0.8, 1.2), self._cap)

    def next_delay(self) -> float:
        """Register one more consecutive failure and return the wait before the next try."""
        self._failures += 1
        return self.delay_for(self._failures)

    def reset(self):
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures
