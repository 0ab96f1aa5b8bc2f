"""Database manager with dual SQLite / PostgreSQL backend.

When DATABASE_URL is provided, uses PostgreSQL via psycopg2.
Otherwise, falls back to SQLite for local development and tests.

The _PgConnectionWrapper class bridges psycopg2's cursor-based API
to match sqlite3's conn.execute() pattern, so queries.py is written
once against a single interface.

Store-level invariants live in the schema rather than in Python:
- markets: one row per (provider, native_id), yes + no = 10000
- whale_trades: one row per (provider, trade_id)
- scheduled_actions: at most one pending/ready/executing row per
  external market (partial unique index)
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Optional
import sqlite3


# ---------------------------------------------------------------------------
# PostgreSQL connection wrapper
# ---------------------------------------------------------------------------

class _PgConnectionWrapper:
    """Wraps a psycopg2 connection to match sqlite3's conn.execute() API.

    Also translates ``?`` placeholders (sqlite3) to ``%s`` (psycopg2).
    """

    def __init__(self, pg_conn) -> None:
        self._conn = pg_conn

    def execute(self, sql: str, params=None):
        # Escape literal % so psycopg2 doesn't read them as format specifiers
        escaped = sql.replace("%", "%%")
        translated = escaped.replace("?", "%s")
        cursor = self._conn.cursor()
        cursor.execute(translated, params or ())
        return cursor

    def commit(self) -> None:
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Database manager
# ---------------------------------------------------------------------------

class DatabaseManager:
    def __init__(self, db_path: Optional[Path] = None,
                 database_url: Optional[str] = None) -> None:
        self.database_url = database_url
        self.db_path = db_path

        if self.database_url:
            self._backend = "postgres"
        else:
            self._backend = "sqlite"
            if self.db_path:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._ensure_schema()

    @property
    def backend(self) -> str:
        return self._backend

    # ── Connection ────────────────────────────────────────────

    @contextmanager
    def _connect(self):
        """Yield a connection-like object for the active backend.

        Both backends auto-commit on clean exit and rollback on exception.
        """
        if self._backend == "postgres":
            import psycopg2
            from psycopg2.extras import RealDictCursor

            conn = psycopg2.connect(self.database_url,
                                    cursor_factory=RealDictCursor)
            wrapper = _PgConnectionWrapper(conn)
            try:
                yield wrapper
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        else:
            conn = sqlite3.connect(str(self.db_path), timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    # ── Helpers for queries.py ────────────────────────────────

    def _returning_id(self, sql: str) -> str:
        """Append ``RETURNING id`` to an INSERT for PostgreSQL."""
        if self._backend == "postgres":
            return sql.rstrip() + " RETURNING id"
        return sql

    def _last_id(self, cursor) -> Optional[int]:
        """Id of the row an INSERT created, or None when nothing was inserted.

        PostgreSQL: reads from RETURNING clause via fetchone().
        SQLite: uses cursor.lastrowid, guarded by rowcount so an
        ``ON CONFLICT DO NOTHING`` that skipped the row reports None.
        """
        if self._backend == "postgres":
            row = cursor.fetchone()
            if row is None:
                return None
            return row["id"] if isinstance(row, dict) else row[0]
        if cursor.rowcount == 0:
            return None
        return cursor.lastrowid

    # ── Schema ────────────────────────────────────────────────

    def _ensure_schema(self) -> None:
        if self._backend == "postgres":
            self._ensure_schema_postgres()
        else:
            self._ensure_schema_sqlite()

    def _ensure_schema_sqlite(self) -> None:
        with self._connect() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS markets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    native_id TEXT NOT NULL,
                    question TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    category TEXT DEFAULT '',
                    tags TEXT DEFAULT '[]',
                    yes_price_bps INTEGER NOT NULL DEFAULT 5000,
                    no_price_bps INTEGER NOT NULL DEFAULT 5000,
                    volume TEXT DEFAULT '0',
                    liquidity TEXT DEFAULT '0',
                    end_time TEXT,
                    status TEXT NOT NULL DEFAULT 'unopened',
                    outcome TEXT NOT NULL DEFAULT 'unset',
                    url TEXT DEFAULT '',
                    metadata TEXT DEFAULT '{}',
                    last_synced_at TEXT,
                    created_at TEXT DEFAULT (datetime('now')),
                    UNIQUE(provider, native_id),
                    CHECK (yes_price_bps + no_price_bps = 10000)
                );

                CREATE TABLE IF NOT EXISTS sync_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    action TEXT NOT NULL DEFAULT 'full_sync',
                    status TEXT NOT NULL,
                    markets_added INTEGER DEFAULT 0,
                    markets_updated INTEGER DEFAULT 0,
                    markets_unchanged INTEGER DEFAULT 0,
                    records_touched INTEGER DEFAULT 0,
                    pages_fetched INTEGER DEFAULT 0,
                    duration_seconds REAL,
                    error TEXT,
                    created_at TEXT DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS whale_trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    provider TEXT NOT NULL,
                    trade_id TEXT NOT NULL,
                    market_id INTEGER REFERENCES markets(id),
                    native_market_id TEXT DEFAULT '',
                    market_question TEXT DEFAULT '',
                    side TEXT DEFAULT '',
                    outcome_side TEXT DEFAULT '',
                    usd_notional TEXT NOT NULL,
                    shares TEXT DEFAULT '0',
                    price_bps INTEGER,
                    trade_timestamp INTEGER,
                    trader TEXT,
                    tx_hash TEXT,
                    detected_at TEXT DEFAULT (datetime('now')),
                    UNIQUE(provider, trade_id)
                );

                CREATE TABLE IF NOT EXISTS mirror_markets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    mirror_key TEXT NOT NULL UNIQUE,
                    provider TEXT NOT NULL,
                    native_id TEXT NOT NULL,
                    resolved INTEGER DEFAULT 0,
                    created_at TEXT DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS scheduled_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    market_id INTEGER REFERENCES markets(id),
                    external_market_id TEXT NOT NULL,
                    mirror_key TEXT NOT NULL,
                    oracle_source TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    scheduled_for TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    executor_action_id TEXT,
                    error TEXT,
                    created_at TEXT DEFAULT (datetime('now')),
                    updated_at TEXT DEFAULT (datetime('now'))
                );

                CREATE TABLE IF NOT EXISTS rejected_matches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    market_a_id INTEGER NOT NULL REFERENCES markets(id),
                    market_b_id INTEGER NOT NULL REFERENCES markets(id),
                    reason TEXT DEFAULT '',
                    created_at TEXT DEFAULT (datetime('now')),
                    UNIQUE(market_a_id, market_b_id)
                );

                CREATE TABLE IF NOT EXISTS agent_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    duration_seconds REAL,
                    items_processed INTEGER DEFAULT 0,
                    summary TEXT DEFAULT '',
                    error TEXT
                );

                CREATE UNIQUE INDEX IF NOT EXISTS uq_scheduled_actions_open
                    ON scheduled_actions(oracle_source, external_market_id)
                    WHERE status IN ('pending', 'ready', 'executing');

                -- Performance indexes
                CREATE INDEX IF NOT EXISTS idx_markets_provider_status
                    ON markets(provider, status);
                CREATE INDEX IF NOT EXISTS idx_markets_status_outcome
                    ON markets(status, outcome);
                CREATE INDEX IF NOT EXISTS idx_sync_logs_provider
                    ON sync_logs(provider, created_at);
                CREATE INDEX IF NOT EXISTS idx_whale_trades_timestamp
                    ON whale_trades(trade_timestamp);
                CREATE INDEX IF NOT EXISTS idx_mirror_markets_source
                    ON mirror_markets(provider, native_id);
                CREATE INDEX IF NOT EXISTS idx_scheduled_actions_due
                    ON scheduled_actions(status, scheduled_for);
                CREATE INDEX IF NOT EXISTS idx_agent_logs_name
                    ON agent_logs(agent_name, started_at);
            """)

    def _ensure_schema_postgres(self) -> None:
        with self._connect() as conn:
            # psycopg2 has no executescript(), one statement per execute()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS markets (
                    id SERIAL PRIMARY KEY,
                    provider TEXT NOT NULL,
                    native_id TEXT NOT NULL,
                    question TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    category TEXT DEFAULT '',
                    tags TEXT DEFAULT '[]',
                    yes_price_bps INTEGER NOT NULL DEFAULT 5000,
                    no_price_bps INTEGER NOT NULL DEFAULT 5000,
                    volume TEXT DEFAULT '0',
                    liquidity TEXT DEFAULT '0',
                    end_time TEXT,
                    status TEXT NOT NULL DEFAULT 'unopened',
                    outcome TEXT NOT NULL DEFAULT 'unset',
                    url TEXT DEFAULT '',
                    metadata TEXT DEFAULT '{}',
                    last_synced_at TEXT,
                    created_at TEXT DEFAULT '',
                    UNIQUE(provider, native_id),
                    CHECK (yes_price_bps + no_price_bps = 10000)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_logs (
                    id SERIAL PRIMARY KEY,
                    provider TEXT NOT NULL,
                    action TEXT NOT NULL DEFAULT 'full_sync',
                    status TEXT NOT NULL,
                    markets_added INTEGER DEFAULT 0,
                    markets_updated INTEGER DEFAULT 0,
                    markets_unchanged INTEGER DEFAULT 0,
                    records_touched INTEGER DEFAULT 0,
                    pages_fetched INTEGER DEFAULT 0,
                    duration_seconds DOUBLE PRECISION,
                    error TEXT,
                    created_at TEXT DEFAULT ''
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS whale_trades (
                    id SERIAL PRIMARY KEY,
                    provider TEXT NOT NULL,
                    trade_id TEXT NOT NULL,
                    market_id INTEGER REFERENCES markets(id),
                    native_market_id TEXT DEFAULT '',
                    market_question TEXT DEFAULT '',
                    side TEXT DEFAULT '',
                    outcome_side TEXT DEFAULT '',
                    usd_notional TEXT NOT NULL,
                    shares TEXT DEFAULT '0',
                    price_bps INTEGER,
                    trade_timestamp BIGINT,
                    trader TEXT,
                    tx_hash TEXT,
                    detected_at TEXT DEFAULT '',
                    UNIQUE(provider, trade_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS mirror_markets (
                    id SERIAL PRIMARY KEY,
                    mirror_key TEXT NOT NULL UNIQUE,
                    provider TEXT NOT NULL,
                    native_id TEXT NOT NULL,
                    resolved INTEGER DEFAULT 0,
                    created_at TEXT DEFAULT ''
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_actions (
                    id SERIAL PRIMARY KEY,
                    market_id INTEGER REFERENCES markets(id),
                    external_market_id TEXT NOT NULL,
                    mirror_key TEXT NOT NULL,
                    oracle_source TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    scheduled_for TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    executor_action_id TEXT,
                    error TEXT,
                    created_at TEXT DEFAULT '',
                    updated_at TEXT DEFAULT ''
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS rejected_matches (
                    id SERIAL PRIMARY KEY,
                    market_a_id INTEGER NOT NULL REFERENCES markets(id),
                    market_b_id INTEGER NOT NULL REFERENCES markets(id),
                    reason TEXT DEFAULT '',
                    created_at TEXT DEFAULT '',
                    UNIQUE(market_a_id, market_b_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS agent_logs (
                    id SERIAL PRIMARY KEY,
                    agent_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    duration_seconds DOUBLE PRECISION,
                    items_processed INTEGER DEFAULT 0,
                    summary TEXT DEFAULT '',
                    error TEXT
                )
            """)

            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_scheduled_actions_open
                    ON scheduled_actions(oracle_source, external_market_id)
                    WHERE status IN ('pending', 'ready', 'executing')
            """)

            # Indexes
            conn.execute("CREATE INDEX IF NOT EXISTS idx_markets_provider_status ON markets(provider, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_markets_status_outcome ON markets(status, outcome)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sync_logs_provider ON sync_logs(provider, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_whale_trades_timestamp ON whale_trades(trade_timestamp)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_mirror_markets_source ON mirror_markets(provider, native_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_actions_due ON scheduled_actions(status, scheduled_for)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_agent_logs_name ON agent_logs(agent_name, started_at)")
