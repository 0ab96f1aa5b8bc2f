"""Per-provider circuit breaker.

closed     calls pass through, consecutive counted failures are tallied
open       calls fail immediately with CircuitOpenError until the cooldown ends
half_open  exactly one trial call is admitted; success closes, failure re-opens
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Optional

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(self, provider: str,
                 failure_threshold: int = 5,
                 cooldown_seconds: float = 30.0,
                 backoff_multiplier: float = 1.0,
                 max_cooldown_seconds: float = 300.0,
                 clock: Callable[[], float] = time.monotonic,
                 on_open: Optional[Callable[[str, int, float], None]] = None) -> None:
        self.provider = provider
        self.failure_threshold = max(failure_threshold, 1)
        self.base_cooldown = cooldown_seconds
        self.backoff_multiplier = backoff_multiplier
        self.max_cooldown = max_cooldown_seconds
        self._clock = clock
        self._on_open = on_open
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._cooldown = cooldown_seconds
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._current_state()

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def cooldown(self) -> float:
        return self._cooldown

    def _current_state(self) -> BreakerState:
        if (self._state == BreakerState.OPEN
                and self._clock() - self._opened_at >= self._cooldown):
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit for %s half-open after %.1fs", self.provider, self._cooldown)
        return self._state

    def admit(self) -> None:
        """Reserve a call slot or raise CircuitOpenError without doing I/O."""
        with self._lock:
            state = self._current_state()
            if state == BreakerState.CLOSED:
                return
            if state == BreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return
            retry_in = max(self._cooldown - (self._clock() - self._opened_at), 0.0)
            raise CircuitOpenError(self.provider, retry_in)

    def record_success(self) -> None:
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                logger.info("Circuit for %s closed after successful trial", self.provider)
                self._cooldown = self.base_cooldown
            self._state = BreakerState.CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        opened = False
        with self._lock:
            if self._state == BreakerState.HALF_OPEN:
                self._cooldown = min(self._cooldown * self.backoff_multiplier, self.max_cooldown)
                self._trip()
                opened = True
            elif self._state == BreakerState.CLOSED:
                self._failures += 1
                if self._failures >= self.failure_threshold:
                    self._trip()
                    opened = True
            failures, cooldown = self._failures, self._cooldown

        if opened:
            logger.warning(
                "Circuit for %s opened after %d failures, cooling down %.1fs",
                self.provider, failures, cooldown,
            )
            if self._on_open:
                try:
                    self._on_open(self.provider, failures, cooldown)
                except Exception:
                    logger.exception("on_open hook failed for %s", self.provider)

    def release_trial(self) -> None:
        """Give back a half-open trial slot when the call was not attempted."""
        with self._lock:
            self._trial_in_flight = False

    def _trip(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
