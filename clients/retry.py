"""Bounded exponential backoff for transient provider failures."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from .errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1                     # +/- fraction of the delay
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt after ``attempt`` (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += delay * random.uniform(-self.jitter, self.jitter)
        return max(delay, 0.0)

    def call(self, fn: Callable[[int], T],
             on_failure: Optional[Callable[[ProviderError, int], bool]] = None) -> T:
        """Run ``fn(attempt)`` until it succeeds or a fatal error occurs.

        Only errors whose ``retryable`` flag is set are retried. ``on_failure``
        sees every ProviderError and may return False to stop retrying (the
        breaker uses this when it trips mid-loop).
        """
        attempt = 1
        while True:
            try:
                return fn(attempt)
            except ProviderError as exc:
                keep_going = on_failure(exc, attempt) if on_failure else True
                if not exc.retryable or attempt >= self.max_attempts or not keep_going:
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    "%s attempt %d/%d failed (%s), retrying in %.2fs",
                    exc.provider, attempt, self.max_attempts, exc, delay,
                )
                self.sleep(delay)
                attempt += 1
