"""Per-provider request budget with header-driven adaptation.

Each provider gets an independent budget of ``limit`` requests per
``window`` seconds. ``acquire()`` blocks until a token is available and
never raises. Waiters for the same provider are served in arrival order:
only the head of the queue is allowed to take a token or sleep, everyone
behind it waits on a condition variable.

Responses that carry quota headers (``x-ratelimit-remaining`` and friends)
replace the static estimate until the advertised reset time passes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from itertools import count
from typing import Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

_REMAINING_HEADERS = ("x-ratelimit-remaining", "ratelimit-remaining", "x-rate-limit-remaining")
_RESET_HEADERS = ("x-ratelimit-reset", "ratelimit-reset", "x-rate-limit-reset")
_LIMIT_HEADERS = ("x-ratelimit-limit", "ratelimit-limit", "x-rate-limit-limit")

# Warn when fewer than this share of the advertised quota is left
_LOW_QUOTA_RATIO = 0.2


@dataclass
class _Budget:
    limit: int
    window: float
    remaining: int
    reset_at: float
    adaptive: bool = False                  # set once headers were seen


def _header(headers: Mapping[str, str], names) -> Optional[str]:
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in names:
        if name in lowered and lowered[name] not in (None, ""):
            return str(lowered[name])
    return None


def parse_reset(value: str, now: float) -> Optional[float]:
    """Return the absolute reset time for a reset header value.

    Providers disagree on the unit: epoch milliseconds, epoch seconds, or
    seconds until the window resets.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number > 1e12:
        return number / 1000.0
    if number > 1e9:
        return number
    return now + max(number, 0.0)


class RateGovernor:
    def __init__(self, clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._budgets: Dict[str, _Budget] = {}
        self._queues: Dict[str, deque] = {}
        self._conditions: Dict[str, threading.Condition] = {}
        self._tickets = count()

    def configure(self, provider: str, limit: int, window_seconds: float) -> None:
        """Register (or reset) the static budget for a provider."""
        now = self._clock()
        with self._lock:
            self._budgets[provider] = _Budget(
                limit=max(limit, 1),
                window=window_seconds,
                remaining=max(limit, 1),
                reset_at=now + window_seconds,
            )
            self._queues.setdefault(provider, deque())
            self._conditions.setdefault(provider, threading.Condition(self._lock))

    def _ensure(self, provider: str) -> None:
        if provider not in self._budgets:
            logger.debug("No budget configured for %s, using 60 req/60s", provider)
            self._budgets[provider] = _Budget(60, 60.0, 60, self._clock() + 60.0)
            self._queues[provider] = deque()
            self._conditions[provider] = threading.Condition(self._lock)

    def _refill(self, budget: _Budget, now: float) -> None:
        if now >= budget.reset_at:
            budget.remaining = budget.limit
            budget.reset_at = now + budget.window
            budget.adaptive = False

    def acquire(self, provider: str) -> None:
        """Block until a request token is available for ``provider``."""
        with self._lock:
            self._ensure(provider)
            queue = self._queues[provider]
            cond = self._conditions[provider]
            ticket = next(self._tickets)
            queue.append(ticket)
            try:
                while True:
                    while queue[0] != ticket:
                        cond.wait()
                    budget = self._budgets[provider]
                    now = self._clock()
                    self._refill(budget, now)
                    if budget.remaining > 0:
                        budget.remaining -= 1
                        return
                    wait = max(budget.reset_at - now, 0.0)
                    logger.info("Rate budget exhausted for %s, waiting %.2fs", provider, wait)
                    # Sleep outside the lock; the rest of the queue keeps waiting
                    self._lock.release()
                    try:
                        self._sleep(wait)
                    finally:
                        self._lock.acquire()
            finally:
                queue.remove(ticket)
                cond.notify_all()

    def update_from_headers(self, provider: str, headers: Optional[Mapping[str, str]]) -> None:
        """Adapt the provider budget from response quota headers, if any."""
        if not headers:
            return
        remaining = _header(headers, _REMAINING_HEADERS)
        if remaining is None:
            return
        try:
            remaining_count = int(float(remaining))
        except ValueError:
            return

        now = self._clock()
        reset_raw = _header(headers, _RESET_HEADERS)
        limit_raw = _header(headers, _LIMIT_HEADERS)

        with self._lock:
            self._ensure(provider)
            budget = self._budgets[provider]
            if limit_raw is not None:
                try:
                    budget.limit = max(int(float(limit_raw)), 1)
                except ValueError:
                    pass
            reset_at = parse_reset(reset_raw, now) if reset_raw is not None else None
            budget.remaining = max(remaining_count, 0)
            budget.reset_at = reset_at if reset_at is not None else now + budget.window
            budget.adaptive = True
            self._conditions[provider].notify_all()

        if remaining_count < budget.limit * _LOW_QUOTA_RATIO:
            logger.warning(
                "%s quota low: %d/%d remaining, resets in %.1fs",
                provider, remaining_count, budget.limit, budget.reset_at - now,
            )

    def snapshot(self, provider: str) -> Dict[str, float]:
        """Current budget numbers for a provider (diagnostics and tests)."""
        with self._lock:
            self._ensure(provider)
            budget = self._budgets[provider]
            return {
                "limit": budget.limit,
                "remaining": budget.remaining,
                "reset_at": budget.reset_at,
                "adaptive": budget.adaptive,
            }
