"""Named query functions for all database operations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from .database import DatabaseManager
from .models import (
    ActionStatus, AgentLog, CanonicalMarket, MarketStatus, MirrorMarket,
    NON_TERMINAL_ACTION_STATUSES, Outcome, ScheduledResolutionAction,
    SyncLogEntry, WhaleTrade,
)

import json

ADDED = "added"
UPDATED = "updated"
UNCHANGED = "unchanged"


def _now() -> str:
    return _iso(datetime.now(timezone.utc))


def _iso(moment: datetime) -> str:
    """Fixed-width UTC ISO string so stored timestamps compare as text."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def market_from_row(row: Dict[str, Any]) -> CanonicalMarket:
    """Build a CanonicalMarket from a ``markets`` row dict."""
    return CanonicalMarket(
        id=row["id"],
        provider=row["provider"],
        native_id=row["native_id"],
        question=row["question"],
        description=row.get("description") or "",
        category=row.get("category") or "",
        tags=json.loads(row.get("tags") or "[]"),
        yes_price_bps=row["yes_price_bps"],
        no_price_bps=row["no_price_bps"],
        volume=row.get("volume") or "0",
        liquidity=row.get("liquidity") or "0",
        end_time=row.get("end_time"),
        status=MarketStatus(row["status"]),
        outcome=Outcome(row["outcome"]),
        url=row.get("url") or "",
        metadata=json.loads(row.get("metadata") or "{}"),
        last_synced_at=row.get("last_synced_at"),
    )


def _market_changed(existing: Dict[str, Any], market: CanonicalMarket,
                    status: MarketStatus) -> bool:
    return (
        existing["yes_price_bps"] != market.yes_price_bps
        or existing["no_price_bps"] != market.no_price_bps
        or (existing.get("volume") or "0") != market.volume
        or existing["status"] != status.value
    )


class MarketQueries:
    def __init__(self, db: DatabaseManager) -> None:
        self.db = db

    # ── Markets ──────────────────────────────────────────────

    def upsert_market(self, market: CanonicalMarket) -> Tuple[int, str]:
        """Insert or update a market with change detection.

        Returns ``(id, change)`` where change is "added", "updated" or
        "unchanged". Nothing is written when price, volume and status all
        match. A stored status is never replaced by an earlier one.
        """
        now = _now()
        with self.db._connect() as conn:
            existing = conn.execute(
                "SELECT * FROM markets WHERE provider=? AND native_id=?",
                (market.provider, market.native_id),
            ).fetchone()

            if existing is None:
                cursor = conn.execute(self.db._returning_id("""
                    INSERT INTO markets (provider, native_id, question, description,
                        category, tags, yes_price_bps, no_price_bps, volume, liquidity,
                        end_time, status, outcome, url, metadata, last_synced_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(provider, native_id) DO NOTHING
                """), (
                    market.provider, market.native_id, market.question,
                    market.description, market.category, json.dumps(market.tags),
                    market.yes_price_bps, market.no_price_bps, market.volume,
                    market.liquidity, market.end_time, market.status.value,
                    market.outcome.value, market.url, json.dumps(market.metadata),
                    now,
                ))
                new_id = self.db._last_id(cursor)
                if new_id is not None:
                    return new_id, ADDED
                # Lost an insert race; fall through to the compare path
                existing = conn.execute(
                    "SELECT * FROM markets WHERE provider=? AND native_id=?",
                    (market.provider, market.native_id),
                ).fetchone()

            existing = dict(existing)
            stored_status = MarketStatus(existing["status"])
            status = market.status if market.status.rank >= stored_status.rank else stored_status

            if not _market_changed(existing, market, status):
                return existing["id"], UNCHANGED

            conn.execute("""
                UPDATE markets SET question=?, description=?, category=?, tags=?,
                    yes_price_bps=?, no_price_bps=?, volume=?, liquidity=?,
                    end_time=?, status=?, url=?, metadata=?, last_synced_at=?
                WHERE id=?
            """, (
                market.question, market.description, market.category,
                json.dumps(market.tags), market.yes_price_bps, market.no_price_bps,
                market.volume, market.liquidity, market.end_time, status.value,
                market.url, json.dumps(market.metadata), now, existing["id"],
            ))
            return existing["id"], UPDATED

    def get_market(self, provider: str, native_id: str) -> Optional[Dict[str, Any]]:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM markets WHERE provider=? AND native_id=?",
                (provider, native_id),
            ).fetchone()
            return dict(row) if row else None

    def get_market_by_id(self, market_id: int) -> Optional[Dict[str, Any]]:
        with self.db._connect() as conn:
            row = conn.execute("SELECT * FROM markets WHERE id=?", (market_id,)).fetchone()
            return dict(row) if row else None

    def get_markets(self, provider: Optional[str] = None,
                    status: Optional[str] = None,
                    limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Markets filtered by provider/status, largest volume first."""
        clauses: List[str] = []
        params: List[Any] = []
        if provider:
            clauses.append("provider=?")
            params.append(provider)
        if status:
            clauses.append("status=?")
            params.append(status)
        sql = "SELECT * FROM markets"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY CAST(volume AS DOUBLE PRECISION) DESC, id"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        with self.db._connect() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
            return [dict(r) for r in rows]

    def get_refresh_candidates(self, provider: str) -> List[Dict[str, Any]]:
        """Not-yet-resolved markets of a provider, closed first, then stalest first."""
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM markets WHERE provider=? AND status IN (?, ?, ?) "
                "ORDER BY CASE status WHEN ? THEN 0 ELSE 1 END, "
                "COALESCE(last_synced_at, ''), id",
                (provider, MarketStatus.CLOSED.value, MarketStatus.UNOPENED.value,
                 MarketStatus.ACTIVE.value, MarketStatus.CLOSED.value),
            ).fetchall()
            return [dict(r) for r in rows]

    def get_active_markets_by_provider(self) -> Dict[str, List[CanonicalMarket]]:
        grouped: Dict[str, List[CanonicalMarket]] = {}
        for row in self.get_markets(status=MarketStatus.ACTIVE.value):
            grouped.setdefault(row["provider"], []).append(market_from_row(row))
        return grouped

    def get_resolved_without_outcome(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM markets WHERE status=? AND outcome=? ORDER BY id LIMIT ?",
                (MarketStatus.RESOLVED.value, Outcome.UNSET.value, limit),
            ).fetchall()
            return [dict(r) for r in rows]

    def set_market_outcome(self, market_id: int, outcome: Outcome) -> None:
        with self.db._connect() as conn:
            conn.execute(
                "UPDATE markets SET outcome=? WHERE id=?",
                (outcome.value, market_id),
            )

    def count_markets(self, provider: Optional[str] = None) -> int:
        with self.db._connect() as conn:
            if provider:
                row = conn.execute(
                    "SELECT COUNT(*) AS n FROM markets WHERE provider=?", (provider,),
                ).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS n FROM markets").fetchone()
            return row["n"]

    # ── Sync Logs ────────────────────────────────────────────

    def insert_sync_log(self, entry: SyncLogEntry) -> int:
        with self.db._connect() as conn:
            cursor = conn.execute(self.db._returning_id("""
                INSERT INTO sync_logs (provider, action, status, markets_added,
                    markets_updated, markets_unchanged, records_touched,
                    pages_fetched, duration_seconds, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """), (
                entry.provider, entry.action, entry.status, entry.markets_added,
                entry.markets_updated, entry.markets_unchanged,
                entry.records_touched, entry.pages_fetched,
                entry.duration_seconds, entry.error, _now(),
            ))
            return self.db._last_id(cursor)

    def get_sync_logs(self, provider: Optional[str] = None,
                      limit: int = 50) -> List[Dict[str, Any]]:
        with self.db._connect() as conn:
            if provider:
                rows = conn.execute(
                    "SELECT * FROM sync_logs WHERE provider=? ORDER BY id DESC LIMIT ?",
                    (provider, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?", (limit,),
                ).fetchall()
            return [dict(r) for r in rows]

    # ── Whale Trades ─────────────────────────────────────────

    def insert_whale_trade(self, trade: WhaleTrade) -> bool:
        """Store a whale trade. Returns False if it was already stored."""
        with self.db._connect() as conn:
            cursor = conn.execute(self.db._returning_id("""
                INSERT INTO whale_trades (provider, trade_id, market_id,
                    native_market_id, market_question, side, outcome_side,
                    usd_notional, shares, price_bps, trade_timestamp, trader,
                    tx_hash, detected_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, trade_id) DO NOTHING
            """), (
                trade.provider, trade.trade_id, trade.market_id,
                trade.native_market_id, trade.market_question, trade.side,
                trade.outcome_side, trade.usd_notional, trade.shares,
                trade.price_bps, trade.trade_timestamp, trade.trader,
                trade.tx_hash, _now(),
            ))
            return self.db._last_id(cursor) is not None

    def get_whale_trades(self, provider: Optional[str] = None,
                         limit: int = 100) -> List[Dict[str, Any]]:
        with self.db._connect() as conn:
            if provider:
                rows = conn.execute(
                    "SELECT * FROM whale_trades WHERE provider=? "
                    "ORDER BY trade_timestamp DESC LIMIT ?",
                    (provider, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM whale_trades ORDER BY trade_timestamp DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            return [dict(r) for r in rows]

    # ── Mirror Markets ───────────────────────────────────────

    def upsert_mirror_market(self, mirror: MirrorMarket) -> None:
        with self.db._connect() as conn:
            conn.execute("""
                INSERT INTO mirror_markets (mirror_key, provider, native_id, resolved, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(mirror_key) DO UPDATE SET
                    provider=excluded.provider,
                    native_id=excluded.native_id,
                    resolved=excluded.resolved
            """, (mirror.mirror_key, mirror.provider, mirror.native_id,
                  int(mirror.resolved), _now()))

    def find_unresolved_mirror(self, provider: str,
                               native_id: str) -> Optional[MirrorMarket]:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mirror_markets WHERE provider=? AND native_id=? "
                "AND resolved=0 ORDER BY id LIMIT 1",
                (provider, native_id),
            ).fetchone()
            if not row:
                return None
            row = dict(row)
            return MirrorMarket(
                id=row["id"],
                mirror_key=row["mirror_key"],
                provider=row["provider"],
                native_id=row["native_id"],
                resolved=bool(row["resolved"]),
                created_at=row.get("created_at"),
            )

    # ── Scheduled Resolution Actions ─────────────────────────

    def reserve_action(self, action: ScheduledResolutionAction) -> Optional[int]:
        """Insert a pending action unless an open one already exists.

        The partial unique index on open actions makes this atomic: a
        concurrent or repeated reservation for the same market is skipped
        and None is returned.
        """
        now = _now()
        with self.db._connect() as conn:
            cursor = conn.execute(self.db._returning_id("""
                INSERT INTO scheduled_actions (market_id, external_market_id,
                    mirror_key, oracle_source, outcome, scheduled_for, status,
                    created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT DO NOTHING
            """), (
                action.market_id, action.external_market_id, action.mirror_key,
                action.oracle_source, action.outcome, action.scheduled_for,
                ActionStatus.PENDING.value, now, now,
            ))
            return self.db._last_id(cursor)

    def get_open_action(self, oracle_source: str,
                        external_market_id: str) -> Optional[Dict[str, Any]]:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_actions WHERE oracle_source=? "
                "AND external_market_id=? AND status IN (?, ?, ?)",
                (oracle_source, external_market_id) + NON_TERMINAL_ACTION_STATUSES,
            ).fetchone()
            return dict(row) if row else None

    def get_action(self, action_id: int) -> Optional[Dict[str, Any]]:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_actions WHERE id=?", (action_id,),
            ).fetchone()
            return dict(row) if row else None

    def get_actions(self, status: Optional[str] = None,
                    limit: int = 100) -> List[Dict[str, Any]]:
        with self.db._connect() as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM scheduled_actions WHERE status=? ORDER BY id LIMIT ?",
                    (status, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM scheduled_actions ORDER BY id LIMIT ?", (limit,),
                ).fetchall()
            return [dict(r) for r in rows]

    def get_due_actions(self, now: datetime, limit: int = 10) -> List[Dict[str, Any]]:
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM scheduled_actions WHERE status=? AND scheduled_for<=? "
                "ORDER BY scheduled_for LIMIT ?",
                (ActionStatus.PENDING.value, _iso(now), limit),
            ).fetchall()
            return [dict(r) for r in rows]

    def set_executor_action_id(self, action_id: int, executor_action_id: str) -> None:
        with self.db._connect() as conn:
            conn.execute(
                "UPDATE scheduled_actions SET executor_action_id=?, updated_at=? WHERE id=?",
                (executor_action_id, _now(), action_id),
            )

    def transition_action(self, action_id: int, from_status: ActionStatus,
                          to_status: ActionStatus,
                          error: Optional[str] = None) -> bool:
        """Move an action between states only if it is still in ``from_status``.

        Returns False when another poller got there first.
        """
        with self.db._connect() as conn:
            cursor = conn.execute(
                "UPDATE scheduled_actions SET status=?, error=?, updated_at=? "
                "WHERE id=? AND status=?",
                (to_status.value, error, _now(), action_id, from_status.value),
            )
            return cursor.rowcount == 1

    # ── Rejected Matches ─────────────────────────────────────

    def insert_rejected_match(self, market_a_id: int, market_b_id: int,
                              reason: str = "") -> None:
        low, high = sorted((market_a_id, market_b_id))
        with self.db._connect() as conn:
            conn.execute("""
                INSERT INTO rejected_matches (market_a_id, market_b_id, reason, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(market_a_id, market_b_id) DO NOTHING
            """, (low, high, reason, _now()))

    def get_rejected_pairs(self) -> Set[Tuple[int, int]]:
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT market_a_id, market_b_id FROM rejected_matches",
            ).fetchall()
            return {(r["market_a_id"], r["market_b_id"]) for r in rows}

    # ── Agent Logs ───────────────────────────────────────────

    def insert_agent_log(self, log: AgentLog) -> int:
        with self.db._connect() as conn:
            cursor = conn.execute(self.db._returning_id("""
                INSERT INTO agent_logs (agent_name, status, started_at,
                    completed_at, duration_seconds, items_processed, summary, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """), (log.agent_name, log.status, log.started_at, log.completed_at,
                   log.duration_seconds, log.items_processed, log.summary, log.error))
            return self.db._last_id(cursor)

    def get_agent_logs(self, agent_name: Optional[str] = None,
                       limit: int = 50) -> List[Dict[str, Any]]:
        with self.db._connect() as conn:
            if agent_name:
                rows = conn.execute(
                    "SELECT * FROM agent_logs WHERE agent_name=? ORDER BY id DESC LIMIT ?",
                    (agent_name, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM agent_logs ORDER BY id DESC LIMIT ?", (limit,),
                ).fetchall()
            return [dict(r) for r in rows]
