"""Bounded exponential backoff policy for transient infrastructure failures."""

from __future__ import annotations

import random as random_module
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry envelope injected into components that talk to flaky infrastructure.

    ``max_attempts`` counts the first try, so the default of 3 means two retries.
    Delay for retry ``n`` (1-based) is ``base_delay_seconds * multiplier ** (n - 1)``,
    capped at ``max_delay_seconds`` and spread by +/- ``jitter`` as a fraction.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    multiplier: float = 2.0
    max_delay_seconds: float = 10.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be within [0, 1)")

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1, base_delay_seconds=0.0, max_delay_seconds=0.0, jitter=0.0)

    @property
    def max_retries(self) -> int:
        return self.max_attempts - 1

    def should_retry(self, attempt: int) -> bool:
        """Return whether another attempt is allowed after ``attempt`` (1-based) failed."""

        return attempt < self.max_attempts

    def delay_for(self, retry_number: int, *, rng: random_module.Random | None = None) -> float:
        if retry_number < 1:
            raise ValueError("retry_number must be >= 1")
        delay = min(
            self.base_delay_seconds * (self.multiplier ** (retry_number - 1)),
            self.max_delay_seconds,
        )
        if self.jitter and delay:
            source = rng if rng is not None else random_module
            delay *= 1.0 + source.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)


__all__ = ["RetryPolicy"]
