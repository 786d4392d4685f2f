"""Backoff strategies for step re-checks and action retries.

The engine never sleeps. After a failed attempt it stamps the event with
``next_attempt_at = now + strategy.next_delay(n)``; the worker (or any
other caller) decides when to call ``advance`` again.

Example:
    >>> strategy = ExponentialBackoff(base_delay=1.0, max_delay=60.0, jitter=False)
    >>> [strategy.next_delay(n) for n in range(4)]
    [1.0, 2.0, 4.0, 8.0]
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta

from procspine.core.settings import ProcSpineSettings


class BackoffStrategy(ABC):
    """Abstract base for backoff strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based count of failed attempts so far, minus one

        Returns:
            Delay in seconds
        """
        ...

    def next_attempt_at(self, now: datetime, attempt: int) -> datetime:
        return now + timedelta(seconds=self.next_delay(attempt))


@dataclass
class ExponentialBackoff(BackoffStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** max(attempt, 0)), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)
        return delay


@dataclass
class LinearBackoff(BackoffStrategy):
    """Delay = base_delay + increment * attempt, capped at max_delay."""

    base_delay: float = 1.0
    increment: float = 1.0
    max_delay: float = 30.0

    def next_delay(self, attempt: int) -> float:
        return min(self.base_delay + self.increment * max(attempt, 0), self.max_delay)


@dataclass
class ConstantBackoff(BackoffStrategy):
    """Constant delay between attempts."""

    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay


def backoff_from_settings(settings: ProcSpineSettings) -> BackoffStrategy:
    """Exponential backoff bounded by ``backoff_base_seconds``/``backoff_max_seconds``."""
    return ExponentialBackoff(
        base_delay=settings.backoff_base_seconds,
        max_delay=settings.backoff_max_seconds,
    )


__all__ = [
    "BackoffStrategy",
    "ExponentialBackoff",
    "LinearBackoff",
    "ConstantBackoff",
    "backoff_from_settings",
]
