"""Retry policy and the retrying wrapper around a SourceFetcher."""
from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from backend.app.core.logging import logger
from backend.app.scraper.models import RawScrapeResult, Unit
from backend.app.scraper.source import SourceFetcher


class UnitFetchError(RuntimeError):
    """All attempts for one unit failed; carries the last underlying error."""

    def __init__(self, unit: Unit, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{unit} failed after {attempts} attempt(s): {last_error}")
        self.unit = unit
        self.attempts = attempts
        self.last_error = last_error


def linear_backoff(base_delay: float) -> Callable[[int], float]:
    return lambda attempt: attempt * base_delay


def exponential_backoff(base_delay: float, factor: float = 2.0) -> Callable[[int], float]:
    return lambda attempt: base_delay * (factor ** (attempt - 1))


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded attempts with a backoff function of the failed attempt number (1-based).

    ``jitter`` adds up to ``jitter * backoff(1)`` seconds of random delay; it must
    stay below 1.0 so consecutive delays of a linear backoff remain strictly
    increasing.
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default=linear_backoff(2.0))
    jitter: float = 0.0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def linear(cls, max_attempts: int = 3, base_delay: float = 2.0, jitter: float = 0.0) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff=linear_backoff(base_delay), jitter=jitter)

    @classmethod
    def exponential(
        cls, max_attempts: int = 3, base_delay: float = 2.0, factor: float = 2.0, jitter: float = 0.0
    ) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff=exponential_backoff(base_delay, factor), jitter=jitter)

    def delay_for(self, attempt: int) -> float:
        delay = max(0.0, float(self.backoff(attempt)))
        if self.jitter:
            delay += self.rng.uniform(0.0, self.jitter * max(0.0, float(self.backoff(1))))
        return delay


class RetryingFetcher:
    def __init__(
        self,
        source: SourceFetcher,
        policy: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def fetch(self, unit: Unit) -> RawScrapeResult:
        max_attempts = self.policy.max_attempts
        last_error: Optional[BaseException] = None
        for attempt in range(1, max_attempts + 1):
            try:
                return self.source.fetch(unit)
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning("Attempt %s/%s for %s failed: %s", attempt, max_attempts, unit, exc)
                if attempt < max_attempts:
                    delay = self.policy.delay_for(attempt)
                    logger.info("Retrying %s in %.1fs", unit, delay)
                    self._sleep(delay)
        raise UnitFetchError(unit, max_attempts, last_error)

    def close(self) -> None:
        close = getattr(self.source, "close", None)
        if callable(close):
            close()
