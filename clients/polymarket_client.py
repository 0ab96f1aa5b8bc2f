"""Polymarket adapter: Gamma (markets) + Data API (trade tape).

Gamma API: https://gamma-api.polymarket.com (no auth)
  - /markets: offset-paginated listing, also filterable by condition_ids
Data API: https://data-api.polymarket.com (no auth)
  - /trades: fills for a market, size in shares and price in USD/share

Markets are keyed by their condition id. Prices arrive as raw
probabilities in ``outcomePrices`` (a JSON-encoded list of strings).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from config import PolymarketConfig
from db.market_math import complement, decimal_str, probability_to_bps, usd_notional
from db.models import CanonicalMarket, MarketStatus, Outcome, TradeRecord
from .base import OutcomeReport, ProviderClient
from .circuit_breaker import CircuitBreaker
from .errors import ClientRequestError
from .rate_governor import RateGovernor
from .retry import RetryPolicy
from .schemas import (
    PolymarketMarket, PolymarketMarketList, PolymarketTrade, PolymarketTradeList,
)

logger = logging.getLogger(__name__)

# Final outcomePrices at or above this are treated as the settled side
_SETTLED_BPS = 9900


def parse_outcome_prices(value: Any) -> List[Any]:
    """``outcomePrices`` arrives as a JSON string or as a list."""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return []
    return list(value) if isinstance(value, list) else []


def fill_id(trade: PolymarketTrade) -> str:
    """Identity of one fill. A single transaction can fill several wallets
    on the same outcome, so the hash alone is not unique."""
    parts = [
        trade.transaction_hash or "",
        "" if trade.outcome_index is None else str(trade.outcome_index),
        (trade.proxy_wallet or "").lower(),
        (trade.side or "").lower(),
        decimal_str(trade.size),
        decimal_str(trade.price),
    ]
    return "-".join(parts)


def polymarket_status(market: PolymarketMarket) -> MarketStatus:
    if market.resolved or (market.uma_resolution_status or "").lower() == "resolved":
        return MarketStatus.RESOLVED
    if market.closed:
        return MarketStatus.CLOSED
    if market.active:
        return MarketStatus.ACTIVE
    return MarketStatus.UNOPENED


class PolymarketClient(ProviderClient):
    name = "polymarket"

    def __init__(self, config: PolymarketConfig,
                 governor: Optional[RateGovernor] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 retry: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None) -> None:
        super().__init__(config.gamma_url, config.limits, governor, breaker, retry, session)
        self.config = config
        self.data_api_url = config.data_api_url.rstrip("/")
        self.session.headers.update({"User-Agent": "market-pipeline/1.0"})

    # ── Gamma API (Markets) ──────────────────────────────────

    def list_active(self, page_token: Optional[str] = None
                    ) -> Tuple[List[PolymarketMarket], Optional[str]]:
        offset = int(page_token or 0)
        page_size = self.config.page_size
        params: Dict[str, Any] = {
            "limit": page_size,
            "offset": offset,
            "active": "true",
            "closed": "false",
        }
        page = self._get_json("/markets", params=params, schema=PolymarketMarketList,
                              operation="list_active", entity_id=f"offset={offset}")
        markets = page.root
        if len(markets) < page_size:
            return markets, None
        return markets, str(offset + page_size)

    def get_one(self, native_id: str) -> Optional[PolymarketMarket]:
        try:
            page = self._get_json("/markets", params={"condition_ids": native_id},
                                  schema=PolymarketMarketList,
                                  operation="get_one", entity_id=native_id)
        except ClientRequestError as exc:
            if exc.status_code == 404:
                return None
            raise
        return page.root[0] if page.root else None

    def get_outcome(self, native_id: str) -> OutcomeReport:
        market = self.get_one(native_id)
        if market is None or not market.closed:
            return OutcomeReport(resolved=False)
        prices = parse_outcome_prices(market.outcome_prices)
        if len(prices) < 2:
            return OutcomeReport(resolved=False)
        yes_bps = probability_to_bps(prices[0]) or 0
        no_bps = probability_to_bps(prices[1]) or 0
        if yes_bps >= _SETTLED_BPS:
            return OutcomeReport(resolved=True, outcome=Outcome.YES)
        if no_bps >= _SETTLED_BPS:
            return OutcomeReport(resolved=True, outcome=Outcome.NO)
        return OutcomeReport(resolved=False)

    def normalize(self, raw: PolymarketMarket) -> CanonicalMarket:
        prices = parse_outcome_prices(raw.outcome_prices)
        yes_bps, no_bps = complement(probability_to_bps(prices[0]) if prices else None)
        native_id = raw.condition_id or raw.id
        return CanonicalMarket(
            provider=self.name,
            native_id=native_id,
            question=raw.question,
            description=raw.description or "",
            category=raw.category or "",
            yes_price_bps=yes_bps,
            no_price_bps=no_bps,
            volume=decimal_str(raw.volume),
            liquidity=decimal_str(raw.liquidity),
            end_time=raw.end_date,
            status=polymarket_status(raw),
            url=f"https://polymarket.com/market/{raw.slug}" if raw.slug else "",
            metadata={
                "gamma_id": raw.id,
                "slug": raw.slug,
                "outcome_prices": prices,
                "uma_resolution_status": raw.uma_resolution_status,
            },
        )

    # ── Data API (Trades) ────────────────────────────────────

    def get_trades(self, native_id: str, limit: int = 100) -> List[TradeRecord]:
        page = self._get_json("/trades", params={"market": native_id, "limit": limit},
                              schema=PolymarketTradeList,
                              operation="get_trades", entity_id=native_id,
                              base_url=self.data_api_url)
        trades: List[TradeRecord] = []
        for raw in page.root:
            if not raw.transaction_hash:
                continue
            outcome = (raw.outcome or "").lower()
            if outcome not in ("yes", "no"):
                outcome = "no" if raw.outcome_index == 1 else "yes"
            trades.append(TradeRecord(
                trade_id=fill_id(raw),
                native_market_id=raw.condition_id or native_id,
                side=(raw.side or "").lower(),
                outcome_side=outcome,
                shares=decimal_str(raw.size),
                price_bps=probability_to_bps(raw.price) or 0,
                usd_notional=str(usd_notional(raw.size, raw.price)),
                timestamp=raw.timestamp,
                trader=raw.proxy_wallet,
                tx_hash=raw.transaction_hash,
            ))
        return trades
