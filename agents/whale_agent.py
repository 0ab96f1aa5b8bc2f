"""Whale Trade Monitoring Agent.

Scans recent trades on the highest-volume active markets of every
provider and stores the ones whose USD notional meets the whale
threshold (default $10,000, inclusive). Notional arithmetic is Decimal
throughout; adapters already convert their unit conventions to USD.

Inserts are keyed on (provider, trade_id), so re-scanning the same trade
window stores nothing new.

Schedule: Every 5 minutes.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Union

from .base import AgentResult, AgentStatus, BaseAgent
from clients.base import ProviderClient
from db.market_math import decimal_str
from db.models import CanonicalMarket, MarketStatus, WhaleTrade
from db.queries import MarketQueries, market_from_row

logger = logging.getLogger(__name__)

_DEFAULT_THRESHOLD = Decimal("10000")
_DEFAULT_MARKETS_PER_SCAN = 20


def detect_whale_trades(adapter: ProviderClient, market: CanonicalMarket,
                        threshold_usd: Union[Decimal, str],
                        queries: MarketQueries) -> List[WhaleTrade]:
    """Fetch trades for one market and store those at or above the threshold.

    Returns only the whale trades that were newly stored.
    """
    threshold = Decimal(str(threshold_usd))
    stored: List[WhaleTrade] = []
    for trade in adapter.get_trades(market.native_id):
        notional = Decimal(decimal_str(trade.usd_notional))
        if notional < threshold:
            continue
        whale = WhaleTrade(
            provider=adapter.name,
            trade_id=trade.trade_id,
            market_id=market.id,
            native_market_id=market.native_id,
            market_question=market.question,
            side=trade.side,
            outcome_side=trade.outcome_side,
            usd_notional=trade.usd_notional,
            shares=trade.shares,
            price_bps=trade.price_bps,
            trade_timestamp=trade.timestamp,
            trader=trade.trader,
            tx_hash=trade.tx_hash,
        )
        if queries.insert_whale_trade(whale):
            stored.append(whale)
    return stored


class WhaleAgent(BaseAgent):
    def __init__(self, config: Any = None) -> None:
        super().__init__(name="whale", config=config)
        whale = getattr(config, "whale", None)
        self.threshold = Decimal(whale.threshold_usd) if whale else _DEFAULT_THRESHOLD
        self.markets_per_scan = whale.markets_per_scan if whale else _DEFAULT_MARKETS_PER_SCAN

    def execute(self, context: Dict[str, Any]) -> AgentResult:
        queries = context["queries"]
        providers: Dict[str, ProviderClient] = context.get("providers") or {}

        if not providers:
            return AgentResult(
                agent_name=self.name,
                status=AgentStatus.SUCCESS,
                summary="Skipped -- no providers configured.",
                items_processed=0,
            )

        errors: List[str] = []
        stored: List[WhaleTrade] = []
        markets_scanned = 0

        for name, adapter in providers.items():
            rows = queries.get_markets(
                provider=name, status=MarketStatus.ACTIVE.value,
                limit=self.markets_per_scan,
            )
            for row in rows:
                market = market_from_row(row)
                try:
                    stored.extend(detect_whale_trades(adapter, market, self.threshold, queries))
                    markets_scanned += 1
                except Exception as e:
                    logger.warning("Whale scan %s %s failed: %s", name, market.native_id, e)
                    errors.append(f"{name}:{market.native_id}: {e}")

        for whale in stored:
            logger.info(
                "Whale %s %s $%s on %s (%s)", whale.provider, whale.side,
                whale.usd_notional, whale.native_market_id, whale.outcome_side,
            )

        error_summary = f" ({len(errors)} errors)" if errors else ""
        return AgentResult(
            agent_name=self.name,
            status=AgentStatus.SUCCESS,
            items_processed=len(stored),
            summary=(
                f"Stored {len(stored)} whale trades from "
                f"{markets_scanned} markets{error_summary}."
            ),
            data={
                "trades_stored": len(stored),
                "markets_scanned": markets_scanned,
                "errors": errors[:10],
            },
        )
