"""Backoff policy for retrying range fetches."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with symmetric jitter.

    The policy is pure: it only computes delays and answers whether another
    attempt is allowed. The caller owns the loop and the sleeping.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1
    rng: Callable[[float, float], float] = field(
        default=random.uniform, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        """Validate policy bounds."""
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if self.base_delay < 0 or self.max_delay < 0:
            msg = "delays must be non-negative"
            raise ValueError(msg)
        if not 0.0 <= self.jitter <= 1.0:
            msg = "jitter must be within [0, 1]"
            raise ValueError(msg)

    def nominal_delay(self, attempt: int) -> float:
        """Delay before the retry that follows ``attempt`` (1-based), no jitter."""
        delay = self.base_delay * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_delay)

    def delay_bounds(self, attempt: int) -> tuple[float, float]:
        """Return the inclusive range a jittered delay can fall in."""
        delay = self.nominal_delay(attempt)
        spread = delay * self.jitter
        return max(0.0, delay - spread), delay + spread

    def delay_for(self, attempt: int) -> float:
        """Calculate the jittered delay after the given failed attempt."""
        delay = self.nominal_delay(attempt)
        if self.jitter > 0 and delay > 0:
            spread = delay * self.jitter
            delay += self.rng(-spread, spread)
        return max(0.0, delay)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt may follow the given failed attempt."""
        return attempt < self.max_attempts

    def schedule(self) -> list[float]:
        """Nominal delays for a full failure sequence."""
        return [self.nominal_delay(a) for a in range(1, self.max_attempts)]
