"""Tests for the shared provider gateway: breaker + retry + governor + schema."""

from unittest.mock import MagicMock

import pytest
import requests

from clients.base import OutcomeReport, ProviderClient
from clients.circuit_breaker import BreakerState, CircuitBreaker
from clients.errors import (
    CircuitOpenError, ClientRequestError, SchemaValidationError, TransientProviderError,
)
from clients.retry import RetryPolicy
from clients.schemas import KalshiMarketsResponse
from config import ProviderLimits


class DummyClient(ProviderClient):
    name = "dummy"

    def list_active(self, page_token=None):
        page = self._get_json("/markets", schema=KalshiMarketsResponse)
        return page.markets, page.cursor

    def get_one(self, native_id):
        return None

    def get_outcome(self, native_id):
        return OutcomeReport(resolved=False)

    def get_trades(self, native_id):
        return []

    def normalize(self, raw):
        raise NotImplementedError


def _response(status=200, payload=None, headers=None):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload if payload is not None else {"markets": []}
    resp.text = "body"
    resp.headers = headers or {}
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def governor():
    return MagicMock()


def _client(session, governor, threshold=5, attempts=3):
    breaker = CircuitBreaker("dummy", failure_threshold=threshold, cooldown_seconds=30)
    retry = RetryPolicy(max_attempts=attempts, jitter=0.0, sleep=lambda s: None)
    return DummyClient("https://api.example.com", ProviderLimits(timeout=7),
                       governor=governor, breaker=breaker, retry=retry, session=session)


class TestGateway:
    def test_success_path(self, session, governor):
        session.request.return_value = _response(payload={
            "markets": [{"ticker": "ABC"}], "cursor": "next",
        })
        client = _client(session, governor)

        markets, cursor = client.list_active()

        assert markets[0].ticker == "ABC"
        assert cursor == "next"
        kwargs = session.request.call_args.kwargs
        assert kwargs["url"] == "https://api.example.com/markets"
        assert kwargs["timeout"] == 7
        governor.acquire.assert_called_once_with("dummy")

    def test_headers_feed_governor(self, session, governor):
        headers = {"x-ratelimit-remaining": "10"}
        session.request.return_value = _response(headers=headers)
        client = _client(session, governor)
        client.list_active()
        governor.update_from_headers.assert_called_with("dummy", headers)

    def test_4xx_not_retried_and_not_counted(self, session, governor):
        session.request.return_value = _response(status=404)
        client = _client(session, governor)

        with pytest.raises(ClientRequestError):
            client.list_active()

        assert session.request.call_count == 1
        assert client.breaker.failure_count == 0

    def test_5xx_retried_up_to_cap(self, session, governor):
        session.request.return_value = _response(status=503)
        client = _client(session, governor, threshold=10, attempts=3)

        with pytest.raises(TransientProviderError):
            client.list_active()

        assert session.request.call_count == 3
        assert governor.acquire.call_count == 3
        assert client.breaker.failure_count == 3

    def test_network_error_is_transient(self, session, governor):
        session.request.side_effect = requests.ConnectionError("reset")
        client = _client(session, governor, attempts=2)
        with pytest.raises(TransientProviderError):
            client.list_active()
        assert session.request.call_count == 2

    def test_breaker_trips_mid_retry_loop(self, session, governor):
        session.request.return_value = _response(status=500)
        client = _client(session, governor, threshold=2, attempts=5)

        with pytest.raises(TransientProviderError):
            client.list_active()

        assert session.request.call_count == 2
        assert client.breaker.state == BreakerState.OPEN

    def test_open_breaker_fails_fast_without_io(self, session, governor, caplog):
        session.request.return_value = _response(status=500)
        client = _client(session, governor, threshold=1, attempts=1)
        with pytest.raises(TransientProviderError):
            client.list_active()
        session.request.reset_mock()

        with pytest.raises(CircuitOpenError):
            client.list_active()

        session.request.assert_not_called()
        assert "circuit open, skipping" in caplog.text

    def test_schema_violation_not_retried_but_counted(self, session, governor):
        session.request.return_value = _response(payload={"markets": [{"title": "no ticker"}]})
        client = _client(session, governor)

        with pytest.raises(SchemaValidationError):
            client.list_active()

        assert session.request.call_count == 1
        assert client.breaker.failure_count == 1

    def test_invalid_json_is_schema_error(self, session, governor):
        resp = _response()
        resp.json.side_effect = ValueError("Expecting value")
        session.request.return_value = resp
        client = _client(session, governor)
        with pytest.raises(SchemaValidationError):
            client.list_active()

    def test_success_resets_failure_count(self, session, governor):
        session.request.side_effect = [_response(status=500), _response()]
        client = _client(session, governor)
        client.list_active()
        assert client.breaker.failure_count == 0

    def test_health_check(self, session, governor):
        session.request.return_value = _response(status=500)
        client = _client(session, governor, attempts=1)
        assert client.health_check() is False
        session.request.return_value = _response()
        assert client.health_check() is True
