"""Kalshi Trade API v2 adapter.

Auth: every request carries fresh RSA-PSS headers (see kalshi_auth).
Pagination: opaque ``cursor`` returned with each page.
Prices: integer cents 0-100. The yes price is the bid/ask midpoint when a
real quote exists, otherwise the last trade price.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from config import KalshiConfig
from db.market_math import cents_to_bps, cents_to_usd, complement, decimal_str, usd_notional
from db.models import CanonicalMarket, MarketStatus, Outcome, TradeRecord
from .base import OutcomeReport, ProviderClient
from .circuit_breaker import CircuitBreaker
from .errors import ClientRequestError
from .kalshi_auth import load_private_key, sign_request
from .rate_governor import RateGovernor
from .retry import RetryPolicy
from .schemas import KalshiMarket, KalshiMarketResponse, KalshiMarketsResponse, KalshiTradesResponse

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    "initialized": MarketStatus.UNOPENED,
    "unopened": MarketStatus.UNOPENED,
    "open": MarketStatus.ACTIVE,
    "active": MarketStatus.ACTIVE,
    "closed": MarketStatus.CLOSED,
    "determined": MarketStatus.RESOLVED,
    "settled": MarketStatus.RESOLVED,
    "finalized": MarketStatus.RESOLVED,
}

_RESULT_MAP = {
    "yes": Outcome.YES,
    "no": Outcome.NO,
    "void": Outcome.INVALID,
}


def _epoch_seconds(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp())
    except ValueError:
        return None


def kalshi_yes_bps(market: KalshiMarket) -> Optional[int]:
    bid, ask = market.yes_bid, market.yes_ask
    if bid is not None and ask is not None and (bid > 0 or ask < 100):
        return cents_to_bps((Decimal(str(bid)) + Decimal(str(ask))) / 2)
    if market.last_price:
        return cents_to_bps(market.last_price)
    return None


class KalshiClient(ProviderClient):
    name = "kalshi"

    def __init__(self, config: KalshiConfig,
                 governor: Optional[RateGovernor] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 retry: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None,
                 private_key: Any = None,
                 clock: Optional[Callable[[], float]] = None) -> None:
        super().__init__(config.base_url, config.limits, governor, breaker, retry, session)
        self.config = config
        self._clock = clock or time.time
        self._path_prefix = urlparse(config.base_url).path.rstrip("/")
        self._private_key = private_key or load_private_key(
            config.private_key_pem, config.private_key_path,
        )

    def _auth_headers(self, method: str, path: str) -> Dict[str, str]:
        return sign_request(
            method, f"{self._path_prefix}{path}",
            self.config.api_key_id, self._private_key, self._clock,
        )

    # ── Adapter contract ─────────────────────────────────────

    def list_active(self, page_token: Optional[str] = None
                    ) -> Tuple[List[KalshiMarket], Optional[str]]:
        params: Dict[str, Any] = {"limit": self.config.page_size, "status": "open"}
        if page_token:
            params["cursor"] = page_token
        page = self._get_json("/markets", params=params, schema=KalshiMarketsResponse,
                              operation="list_active", entity_id=page_token or "")
        if not page.markets:
            return [], None
        return page.markets, page.cursor or None

    def get_one(self, native_id: str) -> Optional[KalshiMarket]:
        try:
            resp = self._get_json(f"/markets/{native_id}", schema=KalshiMarketResponse,
                                  operation="get_one", entity_id=native_id)
        except ClientRequestError as exc:
            if exc.status_code == 404:
                return None
            raise
        return resp.market

    def get_outcome(self, native_id: str) -> OutcomeReport:
        market = self.get_one(native_id)
        if market is None:
            return OutcomeReport(resolved=False)
        status = _STATUS_MAP.get((market.status or "").lower())
        outcome = _RESULT_MAP.get((market.result or "").lower())
        if status != MarketStatus.RESOLVED or outcome is None:
            return OutcomeReport(resolved=False)
        return OutcomeReport(resolved=True, outcome=outcome)

    def get_trades(self, native_id: str, limit: int = 100) -> List[TradeRecord]:
        resp = self._get_json("/markets/trades",
                              params={"ticker": native_id, "limit": limit},
                              schema=KalshiTradesResponse,
                              operation="get_trades", entity_id=native_id)
        trades: List[TradeRecord] = []
        for trade in resp.trades:
            side = (trade.taker_side or "yes").lower()
            cents = trade.yes_price if side == "yes" else trade.no_price
            if cents is None:
                cents = 0
            unit_price = Decimal(str(cents)) / 100
            trades.append(TradeRecord(
                trade_id=trade.trade_id,
                native_market_id=trade.ticker or native_id,
                side="buy",
                outcome_side=side,
                shares=decimal_str(trade.count),
                price_bps=cents_to_bps(cents) or 0,
                usd_notional=str(usd_notional(trade.count, unit_price)),
                timestamp=_epoch_seconds(trade.created_time),
            ))
        return trades

    def normalize(self, raw: KalshiMarket) -> CanonicalMarket:
        yes_bps, no_bps = complement(kalshi_yes_bps(raw))
        status = _STATUS_MAP.get((raw.status or "").lower(), MarketStatus.UNOPENED)
        return CanonicalMarket(
            provider=self.name,
            native_id=raw.ticker,
            question=raw.title or raw.ticker,
            description=raw.subtitle or raw.rules_primary or "",
            category=raw.category or "",
            tags=[raw.event_ticker] if raw.event_ticker else [],
            yes_price_bps=yes_bps,
            no_price_bps=no_bps,
            volume=decimal_str(raw.volume),
            liquidity=cents_to_usd(raw.liquidity),
            end_time=raw.close_time,
            status=status,
            url=f"https://kalshi.com/markets/{raw.ticker}",
            metadata={
                "event_ticker": raw.event_ticker,
                "yes_bid": raw.yes_bid,
                "yes_ask": raw.yes_ask,
                "last_price": raw.last_price,
                "result": raw.result,
            },
        )
