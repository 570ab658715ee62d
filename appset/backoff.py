"""Exponential backoff with jitter, shared by fetch and apply retries."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Backoff:
    """Retry budget and delay curve.

    Attributes:
        limit: Number of retries after the first attempt (0 disables retrying)
        base_seconds: Delay before the first retry
        factor: Multiplier applied per retry
        max_seconds: Upper bound for a single delay
        jitter: Randomize each delay by +/-25%
    """

    limit: int = 5
    base_seconds: float = 5.0
    factor: float = 2.0
    max_seconds: float = 180.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        delay = min(self.base_seconds * (self.factor ** attempt), self.max_seconds)
        if self.jitter:
            delay *= 0.75 + random.random() * 0.5
        return delay


def retry_call(
    func: Callable[[], T],
    backoff: Backoff,
    retry_on: tuple[type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Call ``func`` until it succeeds or the retry budget is exhausted.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised
    once ``backoff.limit`` retries have failed.
    """
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as e:
            if attempt >= backoff.limit:
                logger.warning(f"{description} failed after {attempt + 1} attempt(s): {e}")
                raise
            wait = backoff.delay(attempt)
            logger.info(
                f"{description} failed (attempt {attempt + 1}/{backoff.limit + 1}), "
                f"retrying in {wait:.2f}s: {e}"
            )
            sleep(wait)
            attempt += 1
