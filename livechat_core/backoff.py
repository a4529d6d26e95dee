"""Exponential backoff shared by transport reconnects and request retries."""

from __future__ import annotations

import secrets
from dataclasses import dataclass

_RANDOM = secrets.SystemRandom()


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with optional full jitter.

    Attributes:
        base: Delay ceiling for the first retry (seconds)
        factor: Growth factor between consecutive attempts
        cap: Maximum delay ceiling (seconds)
        jitter: Draw the delay uniformly from [0, ceiling] when True
    """

    base: float = 1.0
    factor: float = 2.0
    cap: float = 30.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("Backoff base must be positive")
        if self.factor < 1:
            raise ValueError("Backoff factor must be at least 1")
        if self.cap < self.base:
            raise ValueError("Backoff cap must not be below the base delay")

    def ceiling(self, attempt: int) -> float:
        """Return the un-jittered delay for a zero-based retry attempt."""
        if attempt < 0:
            raise ValueError("Attempt must be non-negative")
        # Exponent is bounded so large attempt counts cannot overflow
        exponent = min(attempt, 64)
        return min(self.cap, self.base * (self.factor**exponent))

    def delay(self, attempt: int) -> float:
        """Return the delay to wait before a zero-based retry attempt."""
        ceiling = self.ceiling(attempt)
        if not self.jitter:
            return ceiling
        return _RANDOM.uniform(0.0, ceiling)
