"""Error taxonomy for outbound provider and executor calls.

TransientProviderError    network error, timeout, 5xx, 429. Retried, counted by the breaker.
ClientRequestError        4xx. Fatal for the call, never retried, not counted.
SchemaValidationError     malformed payload. Fatal, never retried, counted.
CircuitOpenError          breaker refused the call without any I/O.
"""

from __future__ import annotations

from typing import Optional

import requests


class ProviderError(Exception):
    """Base class for failures talking to a market data provider."""

    retryable = False
    counts_as_failure = True

    def __init__(self, provider: str, message: str,
                 status_code: Optional[int] = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class TransientProviderError(ProviderError):
    retryable = True


class ClientRequestError(ProviderError):
    counts_as_failure = False


class SchemaValidationError(ProviderError):
    pass


class CircuitOpenError(ProviderError):
    counts_as_failure = False

    def __init__(self, provider: str, retry_in: float = 0.0) -> None:
        super().__init__(provider, f"circuit open, retry in {retry_in:.1f}s")
        self.retry_in = retry_in


class ExecutorError(Exception):
    """The scheduled-resolution executor rejected or failed a call."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def error_for_status(provider: str, status_code: int, body: str = "") -> ProviderError:
    """Map a non-2xx HTTP status to the matching error type."""
    detail = f"HTTP {status_code}"
    if body:
        detail = f"{detail}: {body[:200]}"
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(provider, detail, status_code)
    return ClientRequestError(provider, detail, status_code)


def classify_http_error(provider: str, exc: Exception) -> ProviderError:
    """Translate a ``requests`` exception into the provider taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return error_for_status(provider, exc.response.status_code, exc.response.text)
    if isinstance(exc, requests.Timeout):
        return TransientProviderError(provider, f"timeout: {exc}")
    if isinstance(exc, requests.RequestException):
        return TransientProviderError(provider, f"network error: {exc}")
    if isinstance(exc, ValueError):
        # JSON decode failures surface as ValueError
        return SchemaValidationError(provider, f"invalid JSON: {exc}")
    return TransientProviderError(provider, str(exc))
