"""Tests for the reconciliation engine (SyncAgent)."""

import threading

import pytest

from agents.base import AgentStatus
from agents.sync_agent import SyncAgent
from clients.errors import CircuitOpenError, TransientProviderError
from db.database import DatabaseManager
from db.models import CanonicalMarket, MarketStatus
from db.queries import MarketQueries


class FakeAdapter:
    """In-memory provider: pages of (native_id, yes_bps, status) tuples."""

    def __init__(self, name, pages, fail_on_page=None, error=None, details=None):
        self.name = name
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.error = error or TransientProviderError(name, "HTTP 503", 503)
        self.details = details or {}
        self.calls = 0
        self.get_one_calls = []

    def list_active(self, page_token=None):
        index = int(page_token or 0)
        self.calls += 1
        if self.fail_on_page is not None and index == self.fail_on_page:
            raise self.error
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        return self.pages[index], next_token

    def get_one(self, native_id):
        self.get_one_calls.append(native_id)
        return self.details.get(native_id)

    def normalize(self, raw):
        native_id, yes, status = raw
        return CanonicalMarket(
            provider=self.name,
            native_id=native_id,
            question=f"Question {native_id}?",
            yes_price_bps=yes,
            no_price_bps=10000 - yes,
            status=status,
        )


A = MarketStatus.ACTIVE


@pytest.fixture
def queries(tmp_path):
    db = DatabaseManager(tmp_path / "test.db")
    yield MarketQueries(db)
    with db._connect() as conn:
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")


@pytest.fixture
def agent():
    return SyncAgent(max_pages=10)


class TestSyncProvider:
    def test_first_sync_adds_everything(self, agent, queries):
        adapter = FakeAdapter("polymarket", [[("a", 6000, A), ("b", 4000, A)], [("c", 5000, A)]])
        report = agent.sync_provider(adapter, queries)
        assert report.added == 3
        assert report.pages == 2
        assert report.ok
        assert queries.count_markets("polymarket") == 3

    def test_resync_unchanged_is_idempotent(self, agent, queries):
        pages = [[("a", 6000, A), ("b", 4000, A)], [("c", 5000, A)]]
        agent.sync_provider(FakeAdapter("polymarket", pages), queries)
        report = agent.sync_provider(FakeAdapter("polymarket", pages), queries)
        assert report.unchanged == 3
        assert report.touched == 0

    def test_price_change_counted_as_update(self, agent, queries):
        agent.sync_provider(FakeAdapter("kalshi", [[("a", 6000, A)]]), queries)
        report = agent.sync_provider(FakeAdapter("kalshi", [[("a", 6100, A)]]), queries)
        assert report.updated == 1
        assert queries.get_market("kalshi", "a")["yes_price_bps"] == 6100

    def test_one_sync_log_per_run(self, agent, queries):
        agent.sync_provider(FakeAdapter("kalshi", [[("a", 6000, A)]]), queries)
        agent.sync_provider(FakeAdapter("kalshi", [[("a", 6000, A)]], fail_on_page=0), queries)
        logs = queries.get_sync_logs(provider="kalshi")
        assert len(logs) == 2
        assert sorted(log["status"] for log in logs) == ["failed", "success"]

    def test_failure_keeps_earlier_pages(self, agent, queries):
        adapter = FakeAdapter("polymarket", [[("a", 6000, A)], [("b", 5000, A)]], fail_on_page=1)
        report = agent.sync_provider(adapter, queries)
        assert not report.ok
        assert "HTTP 503" in report.error
        assert report.added == 1
        log = queries.get_sync_logs(provider="polymarket")[0]
        assert log["status"] == "failed"
        assert log["markets_added"] == 1

    def test_page_cap(self, queries):
        agent = SyncAgent(max_pages=2)
        adapter = FakeAdapter("polymarket", [[("a", 1, A)], [("b", 1, A)], [("c", 1, A)]])
        report = agent.sync_provider(adapter, queries)
        assert report.pages == 2
        assert adapter.calls == 2

    def test_stop_event_halts_between_pages(self, agent, queries):
        stop = threading.Event()
        stop.set()
        adapter = FakeAdapter("polymarket", [[("a", 1, A)]])
        report = agent.sync_provider(adapter, queries, stop_event=stop)
        assert adapter.calls == 0
        assert report.pages == 0

    def test_skips_when_already_running(self, agent, queries):
        lock = agent._provider_lock("kalshi")
        lock.acquire()
        try:
            assert agent.is_running("kalshi")
            report = agent.sync_provider(FakeAdapter("kalshi", [[("a", 1, A)]]), queries)
        finally:
            lock.release()
        assert report.skipped
        assert queries.get_sync_logs(provider="kalshi") == []

    def test_unlisted_markets_refreshed(self, agent, queries):
        agent.sync_provider(FakeAdapter("kalshi", [[("a", 6000, A), ("b", 5000, A)]]), queries)
        adapter = FakeAdapter(
            "kalshi", [[("a", 6000, A)]],
            details={"b": ("b", 9900, MarketStatus.RESOLVED)},
        )
        report = agent.sync_provider(adapter, queries)
        assert adapter.get_one_calls == ["b"]
        assert report.refreshed == 1
        assert queries.get_market("kalshi", "b")["status"] == "resolved"

    def test_refresh_failure_does_not_fail_run(self, agent, queries):
        agent.sync_provider(
            FakeAdapter("kalshi", [[("a", 6000, A), ("b", 5000, A), ("c", 4000, A)]]), queries,
        )
        adapter = FakeAdapter(
            "kalshi", [[("a", 6000, A)]],
            details={"c": ("c", 9900, MarketStatus.RESOLVED)},
        )
        broken = adapter.get_one

        def get_one(native_id):
            if native_id == "b":
                adapter.get_one_calls.append(native_id)
                raise TransientProviderError("kalshi", "HTTP 503", 503)
            return broken(native_id)

        adapter.get_one = get_one
        report = agent.sync_provider(adapter, queries)

        assert report.ok
        assert report.refresh_errors == 1
        assert sorted(adapter.get_one_calls) == ["b", "c"]
        assert queries.get_market("kalshi", "c")["status"] == "resolved"
        assert queries.get_sync_logs(provider="kalshi")[0]["status"] == "success"

    def test_open_breaker_stops_refresh(self, agent, queries):
        agent.sync_provider(FakeAdapter("kalshi", [[("a", 6000, A), ("b", 5000, A),
                                                    ("c", 4000, A)]]), queries)
        adapter = FakeAdapter("kalshi", [[("a", 6000, A)]])

        def get_one(native_id):
            adapter.get_one_calls.append(native_id)
            raise CircuitOpenError("kalshi", 30.0)

        adapter.get_one = get_one
        report = agent.sync_provider(adapter, queries)

        assert report.ok
        assert len(adapter.get_one_calls) == 1
        assert report.refresh_errors == 1

    def test_unopened_markets_refreshed(self, agent, queries):
        agent.sync_provider(FakeAdapter("opinion", [[("u", 5000, MarketStatus.UNOPENED)]]), queries)
        adapter = FakeAdapter(
            "opinion", [[]],
            details={"u": ("u", 5500, A)},
        )
        agent.sync_provider(adapter, queries)
        assert adapter.get_one_calls == ["u"]
        assert queries.get_market("opinion", "u")["status"] == "active"

    def test_closed_markets_refreshed_first(self, queries):
        agent = SyncAgent(max_pages=10, refresh_limit=1)
        agent.sync_provider(FakeAdapter("kalshi", [[
            ("a1", 6000, A), ("a2", 6000, A), ("z", 5000, MarketStatus.CLOSED),
        ]]), queries)
        adapter = FakeAdapter("kalshi", [[]])
        agent.sync_provider(adapter, queries)
        assert adapter.get_one_calls == ["z"]


class TestSyncExecute:
    def test_provider_failure_isolated(self, agent, queries):
        providers = {
            "polymarket": FakeAdapter("polymarket", [[("a", 6000, A)]]),
            "kalshi": FakeAdapter("kalshi", [[("k", 5000, A)]], fail_on_page=0),
            "opinion": FakeAdapter("opinion", [[("o", 5000, A)]], fail_on_page=0,
                                   error=CircuitOpenError("opinion", 12.0)),
        }
        result = agent.run({"queries": queries, "providers": providers})

        assert result.status == AgentStatus.SUCCESS
        assert result.items_processed == 1
        assert result.data["providers"]["polymarket"]["added"] == 1
        assert result.data["providers"]["kalshi"]["error"]
        assert len(result.data["errors"]) == 2
        assert queries.count_markets("polymarket") == 1
        assert len(queries.get_sync_logs()) == 3

    def test_no_providers(self, agent, queries):
        result = agent.run({"queries": queries, "providers": {}})
        assert result.status == AgentStatus.SUCCESS
        assert "no providers" in result.summary
