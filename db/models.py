"""Data models for canonical market pipeline entities."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class MarketStatus(Enum):
    UNOPENED = "unopened"
    ACTIVE = "active"
    CLOSED = "closed"
    RESOLVED = "resolved"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MarketStatus.UNOPENED: 0,
    MarketStatus.ACTIVE: 1,
    MarketStatus.CLOSED: 2,
    MarketStatus.RESOLVED: 3,
}


class Outcome(Enum):
    YES = "yes"
    NO = "no"
    INVALID = "invalid"
    UNSET = "unset"


class ActionStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"


NON_TERMINAL_ACTION_STATUSES = (
    ActionStatus.PENDING.value,
    ActionStatus.READY.value,
    ActionStatus.EXECUTING.value,
)


@dataclass
class CanonicalMarket:
    """Provider-agnostic market representation."""
    id: Optional[int] = None
    provider: str = ""                  # "polymarket", "kalshi", "opinion"
    native_id: str = ""                 # original ID from provider
    question: str = ""
    description: str = ""
    category: str = ""
    tags: List[str] = field(default_factory=list)
    yes_price_bps: int = 5000
    no_price_bps: int = 5000            # always 10000 - yes_price_bps
    volume: str = "0"                   # decimal string, USD
    liquidity: str = "0"                # decimal string, USD
    end_time: Optional[str] = None      # ISO-8601
    status: MarketStatus = MarketStatus.UNOPENED
    outcome: Outcome = Outcome.UNSET
    url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    last_synced_at: Optional[str] = None


@dataclass
class SyncLogEntry:
    """One row per provider sync run. Never updated after insert."""
    id: Optional[int] = None
    provider: str = ""
    action: str = "full_sync"
    status: str = ""                    # success, failed
    markets_added: int = 0
    markets_updated: int = 0
    markets_unchanged: int = 0
    records_touched: int = 0            # added + updated
    pages_fetched: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class TradeRecord:
    """A single fill as reported by a provider, already in USD terms."""
    trade_id: str = ""
    native_market_id: str = ""
    side: str = ""                      # buy, sell
    outcome_side: str = ""              # yes, no
    shares: str = "0"                   # decimal string
    price_bps: int = 0
    usd_notional: str = "0"             # decimal string, cents precision
    timestamp: Optional[int] = None     # unix seconds
    trader: Optional[str] = None
    tx_hash: Optional[str] = None


@dataclass
class WhaleTrade:
    """A trade whose USD notional met the whale threshold."""
    id: Optional[int] = None
    provider: str = ""
    trade_id: str = ""
    market_id: Optional[int] = None
    native_market_id: str = ""
    market_question: str = ""
    side: str = ""
    outcome_side: str = ""
    usd_notional: str = "0"
    shares: str = "0"
    price_bps: int = 0
    trade_timestamp: Optional[int] = None
    trader: Optional[str] = None
    tx_hash: Optional[str] = None
    detected_at: Optional[str] = None


@dataclass
class ArbitrageLeg:
    provider: str
    market_id: Optional[int]
    native_id: str
    question: str
    yes_price_bps: int
    no_price_bps: int


@dataclass
class ArbitrageOpportunity:
    """Cross-provider complementary-cost gap. Held in memory only."""
    market_a: ArbitrageLeg
    market_b: ArbitrageLeg
    spread_bps: int
    cost_bps: int
    profit_bps: int
    potential_profit: float             # percentage points
    strategy: str                       # yes_a_no_b, yes_b_no_a
    confidence: float                   # matcher similarity
    detected_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class MirrorMarket:
    """On-chain market that echoes an external market's lifecycle."""
    id: Optional[int] = None
    mirror_key: str = ""
    provider: str = ""
    native_id: str = ""
    resolved: bool = False
    created_at: Optional[str] = None


@dataclass
class ScheduledResolutionAction:
    id: Optional[int] = None
    market_id: Optional[int] = None
    external_market_id: str = ""        # provider native id
    mirror_key: str = ""
    oracle_source: str = ""             # provider that reported the outcome
    outcome: str = ""
    scheduled_for: Optional[str] = None # ISO-8601 UTC
    status: ActionStatus = ActionStatus.PENDING
    executor_action_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class AgentLog:
    """Execution log entry for an agent run."""
    id: Optional[int] = None
    agent_name: str = ""
    status: str = ""                    # running, success, error
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    items_processed: int = 0
    summary: str = ""
    error: Optional[str] = None
