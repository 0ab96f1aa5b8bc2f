"""Tests for the retry policy and error taxonomy."""

from unittest.mock import MagicMock

import pytest
import requests

from clients.errors import (
    ClientRequestError, SchemaValidationError, TransientProviderError,
    classify_http_error, error_for_status,
)
from clients.retry import RetryPolicy


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0,
                       jitter=0.0, sleep=sleeps.append)


class TestErrorMapping:
    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_transient_statuses(self, status):
        err = error_for_status("kalshi", status)
        assert isinstance(err, TransientProviderError)
        assert err.retryable
        assert err.status_code == status

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_statuses(self, status):
        err = error_for_status("kalshi", status)
        assert isinstance(err, ClientRequestError)
        assert not err.retryable
        assert not err.counts_as_failure

    def test_timeout_is_transient(self):
        err = classify_http_error("polymarket", requests.Timeout("slow"))
        assert isinstance(err, TransientProviderError)

    def test_connection_error_is_transient(self):
        err = classify_http_error("polymarket", requests.ConnectionError("reset"))
        assert isinstance(err, TransientProviderError)

    def test_bad_json_is_schema_error(self):
        err = classify_http_error("polymarket", ValueError("Expecting value"))
        assert isinstance(err, SchemaValidationError)
        assert err.counts_as_failure


class TestRetryPolicy:
    def test_success_first_try(self, policy, sleeps):
        assert policy.call(lambda attempt: "ok") == "ok"
        assert sleeps == []

    def test_retries_transient_then_succeeds(self, policy, sleeps):
        fn = MagicMock(side_effect=[
            TransientProviderError("kalshi", "HTTP 503", 503),
            TransientProviderError("kalshi", "HTTP 503", 503),
            "ok",
        ])
        assert policy.call(fn) == "ok"
        assert fn.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_gives_up_at_attempt_cap(self, policy, sleeps):
        fn = MagicMock(side_effect=TransientProviderError("kalshi", "HTTP 500", 500))
        with pytest.raises(TransientProviderError):
            policy.call(fn)
        assert fn.call_count == 3
        assert len(sleeps) == 2

    def test_never_retries_4xx(self, policy, sleeps):
        fn = MagicMock(side_effect=ClientRequestError("kalshi", "HTTP 404", 404))
        with pytest.raises(ClientRequestError):
            policy.call(fn)
        assert fn.call_count == 1
        assert sleeps == []

    def test_never_retries_schema_errors(self, policy):
        fn = MagicMock(side_effect=SchemaValidationError("kalshi", "bad payload"))
        with pytest.raises(SchemaValidationError):
            policy.call(fn)
        assert fn.call_count == 1

    def test_on_failure_can_stop_loop(self, policy):
        fn = MagicMock(side_effect=TransientProviderError("kalshi", "HTTP 500", 500))
        on_failure = MagicMock(return_value=False)
        with pytest.raises(TransientProviderError):
            policy.call(fn, on_failure)
        assert fn.call_count == 1
        on_failure.assert_called_once()

    def test_attempt_number_passed(self, policy):
        seen = []

        def fn(attempt):
            seen.append(attempt)
            if attempt < 2:
                raise TransientProviderError("kalshi", "timeout")
            return attempt

        assert policy.call(fn) == 2
        assert seen == [1, 2]

    def test_delay_capped(self):
        policy = RetryPolicy(base_delay=10, max_delay=15, jitter=0.0)
        assert policy.delay_for(1) == 10
        assert policy.delay_for(2) == 15
        assert policy.delay_for(5) == 15

    def test_jitter_bounds(self):
        policy = RetryPolicy(base_delay=10, max_delay=100, jitter=0.1)
        for _ in range(20):
            assert 9.0 <= policy.delay_for(1) <= 11.0
