from .database import DatabaseManager
from .models import (
    ActionStatus, AgentLog, ArbitrageLeg, ArbitrageOpportunity,
    CanonicalMarket, MarketStatus, MirrorMarket, Outcome,
    ScheduledResolutionAction, SyncLogEntry, TradeRecord, WhaleTrade,
)
from .queries import MarketQueries

__all__ = [
    "DatabaseManager",
    "ActionStatus",
    "AgentLog",
    "ArbitrageLeg",
    "ArbitrageOpportunity",
    "CanonicalMarket",
    "MarketStatus",
    "MirrorMarket",
    "Outcome",
    "ScheduledResolutionAction",
    "SyncLogEntry",
    "TradeRecord",
    "WhaleTrade",
    "MarketQueries",
]
