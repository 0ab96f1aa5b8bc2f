"""Tests for database schema creation and CRUD operations.

Supports both SQLite (default) and PostgreSQL backends.
Set DATABASE_URL env var to run tests against PostgreSQL.
"""

import os
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from db.database import DatabaseManager
from db.queries import ADDED, UNCHANGED, UPDATED, MarketQueries
from db.models import (
    ActionStatus, AgentLog, CanonicalMarket, MarketStatus, MirrorMarket,
    Outcome, ScheduledResolutionAction, SyncLogEntry, WhaleTrade,
)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test.db"


@pytest.fixture
def db(db_path):
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        mgr = DatabaseManager(database_url=database_url)
        yield mgr
        # Clean up test data from shared PostgreSQL database
        with mgr._connect() as conn:
            for table in [
                "agent_logs", "rejected_matches", "scheduled_actions",
                "mirror_markets", "whale_trades", "sync_logs", "markets",
            ]:
                conn.execute(f"TRUNCATE {table} CASCADE")
    else:
        mgr = DatabaseManager(db_path=db_path)
        yield mgr
        # Close WAL connections to avoid Windows PermissionError on cleanup
        with mgr._connect() as conn:
            conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")


@pytest.fixture
def queries(db):
    return MarketQueries(db)


def _market(native_id="m1", provider="polymarket", yes=6500, **kwargs):
    return CanonicalMarket(
        provider=provider,
        native_id=native_id,
        question=kwargs.pop("question", "Will it rain tomorrow?"),
        yes_price_bps=yes,
        no_price_bps=10000 - yes,
        volume=kwargs.pop("volume", "1000"),
        status=kwargs.pop("status", MarketStatus.ACTIVE),
        **kwargs,
    )


def _action(market_id, native_id="m1", provider="polymarket", when=None):
    when = when or datetime.now(timezone.utc)
    return ScheduledResolutionAction(
        market_id=market_id,
        external_market_id=native_id,
        mirror_key=f"mirror-{native_id}",
        oracle_source=provider,
        outcome="yes",
        scheduled_for=when.isoformat(timespec="microseconds"),
    )


class TestDatabaseSchema:
    def test_schema_creates_all_tables(self, db):
        with db._connect() as conn:
            if db.backend == "postgres":
                rows = conn.execute(
                    "SELECT table_name AS name FROM information_schema.tables "
                    "WHERE table_schema='public'"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
        names = {r["name"] for r in rows}
        for table in ["markets", "sync_logs", "whale_trades", "mirror_markets",
                      "scheduled_actions", "rejected_matches", "agent_logs"]:
            assert table in names

    def test_schema_idempotent(self, db_path):
        DatabaseManager(db_path=db_path)
        DatabaseManager(db_path=db_path)

    @pytest.mark.skipif(os.getenv("DATABASE_URL"), reason="sqlite-specific")
    def test_price_sum_enforced(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            with db._connect() as conn:
                conn.execute(
                    "INSERT INTO markets (provider, native_id, question, "
                    "yes_price_bps, no_price_bps) VALUES ('p', 'x', 'q', 6000, 5000)"
                )


class TestMarketUpsert:
    def test_insert_then_unchanged(self, queries):
        market_id, change = queries.upsert_market(_market())
        assert change == ADDED
        same_id, change = queries.upsert_market(_market())
        assert change == UNCHANGED
        assert same_id == market_id
        assert queries.count_markets() == 1

    def test_unchanged_does_not_write(self, queries):
        queries.upsert_market(_market())
        before = queries.get_market("polymarket", "m1")["last_synced_at"]
        queries.upsert_market(_market())
        assert queries.get_market("polymarket", "m1")["last_synced_at"] == before

    def test_price_change_updates(self, queries):
        queries.upsert_market(_market(yes=6500))
        _, change = queries.upsert_market(_market(yes=6600))
        assert change == UPDATED
        row = queries.get_market("polymarket", "m1")
        assert row["yes_price_bps"] == 6600
        assert row["no_price_bps"] == 3400

    def test_volume_change_updates(self, queries):
        queries.upsert_market(_market(volume="1000"))
        _, change = queries.upsert_market(_market(volume="1500.5"))
        assert change == UPDATED

    def test_status_never_regresses(self, queries):
        queries.upsert_market(_market(status=MarketStatus.CLOSED))
        _, change = queries.upsert_market(_market(status=MarketStatus.ACTIVE))
        assert change == UNCHANGED
        assert queries.get_market("polymarket", "m1")["status"] == "closed"

        queries.upsert_market(_market(status=MarketStatus.ACTIVE, yes=7000))
        assert queries.get_market("polymarket", "m1")["status"] == "closed"

    def test_status_advances(self, queries):
        queries.upsert_market(_market(status=MarketStatus.ACTIVE))
        _, change = queries.upsert_market(_market(status=MarketStatus.RESOLVED))
        assert change == UPDATED
        assert queries.get_market("polymarket", "m1")["status"] == "resolved"

    def test_same_native_id_different_providers(self, queries):
        queries.upsert_market(_market(provider="polymarket"))
        queries.upsert_market(_market(provider="kalshi"))
        assert queries.count_markets() == 2
        assert queries.count_markets("kalshi") == 1

    def test_active_grouped_by_provider(self, queries):
        queries.upsert_market(_market("a", provider="polymarket"))
        queries.upsert_market(_market("b", provider="kalshi"))
        queries.upsert_market(_market("c", provider="kalshi", status=MarketStatus.CLOSED))
        grouped = queries.get_active_markets_by_provider()
        assert sorted(grouped) == ["kalshi", "polymarket"]
        assert [m.native_id for m in grouped["kalshi"]] == ["b"]
        assert grouped["kalshi"][0].status == MarketStatus.ACTIVE

    def test_markets_ordered_by_volume(self, queries):
        queries.upsert_market(_market("small", volume="99.5"))
        queries.upsert_market(_market("big", volume="1000"))
        rows = queries.get_markets(provider="polymarket", status="active", limit=1)
        assert rows[0]["native_id"] == "big"

    def test_outcome_set_only_by_resolution(self, queries):
        market_id, _ = queries.upsert_market(_market(status=MarketStatus.RESOLVED))
        assert [r["id"] for r in queries.get_resolved_without_outcome()] == [market_id]
        queries.set_market_outcome(market_id, Outcome.YES)
        assert queries.get_resolved_without_outcome() == []
        queries.upsert_market(_market(status=MarketStatus.RESOLVED, yes=9990))
        assert queries.get_market_by_id(market_id)["outcome"] == "yes"


class TestSyncLogs:
    def test_insert_and_read(self, queries):
        queries.insert_sync_log(SyncLogEntry(
            provider="kalshi", status="success", markets_added=3,
            records_touched=3, pages_fetched=1,
        ))
        queries.insert_sync_log(SyncLogEntry(provider="polymarket", status="failed",
                                             error="HTTP 503"))
        logs = queries.get_sync_logs()
        assert len(logs) == 2
        kalshi = queries.get_sync_logs(provider="kalshi")
        assert kalshi[0]["markets_added"] == 3
        assert kalshi[0]["action"] == "full_sync"


class TestWhaleTrades:
    def test_insert_idempotent(self, queries):
        trade = WhaleTrade(provider="polymarket", trade_id="0xtx-0",
                           usd_notional="15000.00", trade_timestamp=1)
        assert queries.insert_whale_trade(trade) is True
        assert queries.insert_whale_trade(trade) is False
        assert len(queries.get_whale_trades()) == 1

    def test_same_trade_id_other_provider(self, queries):
        queries.insert_whale_trade(WhaleTrade(provider="polymarket", trade_id="t",
                                              usd_notional="1"))
        assert queries.insert_whale_trade(WhaleTrade(provider="kalshi", trade_id="t",
                                                     usd_notional="1"))


class TestMirrorMarkets:
    def test_find_unresolved(self, queries):
        queries.upsert_mirror_market(MirrorMarket(mirror_key="mk", provider="kalshi",
                                                  native_id="FED"))
        mirror = queries.find_unresolved_mirror("kalshi", "FED")
        assert mirror.mirror_key == "mk"
        assert mirror.resolved is False

    def test_resolved_mirror_hidden(self, queries):
        queries.upsert_mirror_market(MirrorMarket(mirror_key="mk", provider="kalshi",
                                                  native_id="FED"))
        queries.upsert_mirror_market(MirrorMarket(mirror_key="mk", provider="kalshi",
                                                  native_id="FED", resolved=True))
        assert queries.find_unresolved_mirror("kalshi", "FED") is None


class TestScheduledActions:
    def test_one_open_action_per_market(self, queries):
        market_id, _ = queries.upsert_market(_market())
        first = queries.reserve_action(_action(market_id))
        second = queries.reserve_action(_action(market_id))
        assert first is not None
        assert second is None
        assert len(queries.get_actions()) == 1

    def test_new_action_allowed_after_terminal(self, queries):
        market_id, _ = queries.upsert_market(_market())
        first = queries.reserve_action(_action(market_id))
        queries.transition_action(first, ActionStatus.PENDING, ActionStatus.FAILED, "boom")
        assert queries.reserve_action(_action(market_id)) is not None

    def test_conditional_transition(self, queries):
        market_id, _ = queries.upsert_market(_market())
        action_id = queries.reserve_action(_action(market_id))
        assert queries.transition_action(action_id, ActionStatus.PENDING, ActionStatus.READY)
        assert not queries.transition_action(action_id, ActionStatus.PENDING, ActionStatus.READY)
        assert queries.get_action(action_id)["status"] == "ready"

    def test_due_actions(self, queries):
        now = datetime.now(timezone.utc)
        a_id, _ = queries.upsert_market(_market("a"))
        b_id, _ = queries.upsert_market(_market("b"))
        due = queries.reserve_action(_action(a_id, "a", when=now - timedelta(minutes=1)))
        queries.reserve_action(_action(b_id, "b", when=now + timedelta(minutes=5)))
        assert [r["id"] for r in queries.get_due_actions(now)] == [due]

    def test_open_action_lookup_and_executor_id(self, queries):
        market_id, _ = queries.upsert_market(_market())
        action_id = queries.reserve_action(_action(market_id))
        queries.set_executor_action_id(action_id, "ex-9")
        row = queries.get_open_action("polymarket", "m1")
        assert row["id"] == action_id
        assert row["executor_action_id"] == "ex-9"


class TestRejectedMatches:
    def test_pairs_stored_sorted(self, queries):
        a, _ = queries.upsert_market(_market("a"))
        b, _ = queries.upsert_market(_market("b", provider="kalshi"))
        queries.insert_rejected_match(b, a, "different years")
        queries.insert_rejected_match(a, b)
        assert queries.get_rejected_pairs() == {(min(a, b), max(a, b))}


class TestAgentLogs:
    def test_insert_and_filter(self, queries):
        queries.insert_agent_log(AgentLog(agent_name="sync", status="success",
                                          items_processed=5))
        queries.insert_agent_log(AgentLog(agent_name="whale", status="error", error="x"))
        assert len(queries.get_agent_logs()) == 2
        assert queries.get_agent_logs(agent_name="sync")[0]["items_processed"] == 5
