"""Shared plumbing for provider adapters.

Every outbound provider call goes through ``ProviderClient._get_json``:

1. the provider's circuit breaker admits the call (or fails fast)
2. the retry policy runs attempts; each attempt first takes a token
   from the rate governor, then performs the HTTP request
3. response quota headers feed back into the governor
4. the payload is validated against a pydantic schema

Every failed attempt that counts toward the breaker is recorded as it
happens, so a provider hammered by retries trips its breaker mid-loop.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

import requests
from pydantic import BaseModel, ValidationError

from config import ProviderLimits
from db.models import CanonicalMarket, Outcome, TradeRecord
from .circuit_breaker import BreakerState, CircuitBreaker
from .errors import (
    CircuitOpenError, ClientRequestError, ProviderError, SchemaValidationError,
    classify_http_error, error_for_status,
)
from .rate_governor import RateGovernor
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class OutcomeReport:
    resolved: bool
    outcome: Optional[Outcome] = None       # yes/no once resolved


class ProviderClient(ABC):
    """Base adapter: resilient HTTP access plus the canonical adapter contract."""

    name: str = ""

    def __init__(self, base_url: str, limits: ProviderLimits,
                 governor: Optional[RateGovernor] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 retry: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.limits = limits
        self.governor = governor or RateGovernor()
        self.governor.configure(self.name, limits.rate_limit, limits.rate_window_seconds)
        self.breaker = breaker or CircuitBreaker(
            self.name,
            failure_threshold=limits.breaker_threshold,
            cooldown_seconds=limits.breaker_cooldown_seconds,
            backoff_multiplier=limits.breaker_backoff_multiplier,
            max_cooldown_seconds=limits.breaker_max_cooldown_seconds,
        )
        self.retry = retry or RetryPolicy(
            max_attempts=limits.max_attempts,
            base_delay=limits.retry_base_delay,
            max_delay=limits.retry_max_delay,
        )
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    # ── Adapter contract ─────────────────────────────────────

    @abstractmethod
    def list_active(self, page_token: Optional[str] = None
                    ) -> Tuple[List[Any], Optional[str]]:
        """One page of active markets plus the token for the next page."""

    @abstractmethod
    def get_one(self, native_id: str) -> Optional[Any]:
        """Single market payload, or None when the provider reports 404."""

    @abstractmethod
    def get_outcome(self, native_id: str) -> OutcomeReport:
        ...

    @abstractmethod
    def get_trades(self, native_id: str) -> List[TradeRecord]:
        ...

    @abstractmethod
    def normalize(self, raw: Any) -> CanonicalMarket:
        ...

    def health_check(self) -> bool:
        """Test connectivity by fetching the first page of markets."""
        try:
            self.list_active()
            return True
        except ProviderError as exc:
            logger.warning("%s health check failed: %s", self.name, exc)
            return False

    # ── HTTP ─────────────────────────────────────────────────

    def _auth_headers(self, method: str, path: str) -> Dict[str, str]:
        """Per-request auth headers. Providers with credentials override."""
        return {}

    def _send(self, method: str, path: str, params: Optional[Dict[str, Any]],
              schema: Optional[Type[BaseModel]], base_url: Optional[str] = None) -> Any:
        url = f"{base_url or self.base_url}{path}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                headers=self._auth_headers(method, path),
                timeout=self.limits.timeout,
            )
        except requests.RequestException as exc:
            raise classify_http_error(self.name, exc) from exc

        self.governor.update_from_headers(self.name, response.headers)

        if response.status_code >= 400:
            raise error_for_status(self.name, response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise SchemaValidationError(self.name, f"invalid JSON from {path}: {exc}") from exc

        if schema is None:
            return payload
        try:
            return schema.model_validate(payload)
        except ValidationError as exc:
            raise SchemaValidationError(
                self.name, f"unexpected payload from {path}: {exc.error_count()} errors",
            ) from exc

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None,
                  schema: Optional[Type[BaseModel]] = None,
                  operation: str = "", entity_id: str = "",
                  base_url: Optional[str] = None) -> Any:
        """GET ``path`` through breaker, retry and rate governor."""
        operation = operation or path
        try:
            self.breaker.admit()
        except CircuitOpenError as exc:
            logger.warning(
                "%s %s %s: circuit open, skipping (retry in %.1fs)",
                self.name, operation, entity_id, exc.retry_in,
            )
            raise

        def attempt(number: int) -> Any:
            self.governor.acquire(self.name)
            return self._send("GET", path, params, schema, base_url)

        def on_failure(exc: ProviderError, number: int) -> bool:
            logger.warning(
                "%s %s %s failed on attempt %d: %s",
                self.name, operation, entity_id, number, exc,
            )
            if exc.counts_as_failure:
                self.breaker.record_failure()
            return self.breaker.state == BreakerState.CLOSED

        try:
            result = self.retry.call(attempt, on_failure)
        except ClientRequestError:
            # The provider answered; a 4xx says nothing about its health
            self.breaker.record_success()
            raise
        except ProviderError as exc:
            if not exc.counts_as_failure:
                self.breaker.release_trial()
            raise
        self.breaker.record_success()
        return result
