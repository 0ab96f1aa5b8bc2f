"""Opinion (opinion.trade) OpenAPI adapter.

Auth: static ``apikey`` header.
Pagination: page number, at most 20 markets per page.
Envelope: ``{"code": 0, "msg": "...", "result": {...}}``; any non-zero
code is a failed call even when HTTP says 200.
Prices: the listing carries no price, so the YES token's latest trade
price is fetched per market from /token/latest-price (raw probability).
Latest prices are cached for a short TTL to keep a full sync within
the rate budget.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from config import OpinionConfig
from db.market_math import complement, decimal_str, probability_to_bps
from db.models import CanonicalMarket, MarketStatus, Outcome, TradeRecord
from .base import OutcomeReport, ProviderClient
from .circuit_breaker import CircuitBreaker
from .errors import ClientRequestError, SchemaValidationError
from .rate_governor import RateGovernor
from .retry import RetryPolicy
from .schemas import (
    OpinionMarket, OpinionMarketDetailResponse, OpinionMarketsResponse,
    OpinionPriceResponse,
)

logger = logging.getLogger(__name__)

_STATUS_MAP = {
    1: MarketStatus.UNOPENED,   # Created
    2: MarketStatus.ACTIVE,     # Activated
    3: MarketStatus.CLOSED,     # Resolving
    4: MarketStatus.RESOLVED,   # Resolved
    5: MarketStatus.CLOSED,     # Failed
    6: MarketStatus.CLOSED,     # Deleted
}
_RESOLVED = 4
_MAX_PAGE_SIZE = 20
_PRICE_TTL_SECONDS = 30.0


def _iso_from_epoch(value: Any) -> Optional[str]:
    """cutoffAt is epoch seconds (sometimes as a string) or an ISO string."""
    if value in (None, "", 0, "0"):
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return str(value)
    if seconds > 1e12:
        seconds /= 1000.0
    return datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()


class OpinionClient(ProviderClient):
    name = "opinion"

    def __init__(self, config: OpinionConfig,
                 governor: Optional[RateGovernor] = None,
                 breaker: Optional[CircuitBreaker] = None,
                 retry: Optional[RetryPolicy] = None,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        super().__init__(config.base_url, config.limits, governor, breaker, retry, session)
        self.config = config
        self._clock = clock
        self._price_cache: Dict[str, Tuple[float, Optional[int]]] = {}
        self._cache_lock = threading.Lock()

    def _auth_headers(self, method: str, path: str) -> Dict[str, str]:
        if self.config.api_key:
            return {"apikey": self.config.api_key}
        return {}

    def _get_envelope(self, path: str, params: Optional[Dict[str, Any]],
                      schema, operation: str, entity_id: str = "") -> Any:
        resp = self._get_json(path, params=params, schema=schema,
                              operation=operation, entity_id=entity_id)
        if resp.code != 0:
            raise SchemaValidationError(self.name, f"{path} returned code {resp.code}: {resp.msg}")
        return resp

    # ── Adapter contract ─────────────────────────────────────

    def list_active(self, page_token: Optional[str] = None
                    ) -> Tuple[List[OpinionMarket], Optional[str]]:
        page = int(page_token or 1)
        page_size = min(self.config.page_size, _MAX_PAGE_SIZE)
        params = {
            "page": page,
            "limit": page_size,
            "status": "activated",
            "marketType": 0,
            "sortBy": 3,            # volume
        }
        resp = self._get_envelope("/market", params, OpinionMarketsResponse,
                                  "list_active", f"page={page}")
        markets = resp.result.items
        if len(markets) < page_size:
            return markets, None
        return markets, str(page + 1)

    def get_one(self, native_id: str) -> Optional[OpinionMarket]:
        try:
            resp = self._get_envelope(f"/market/{native_id}", None,
                                      OpinionMarketDetailResponse, "get_one", native_id)
        except ClientRequestError as exc:
            if exc.status_code == 404:
                return None
            raise
        return resp.result

    def get_outcome(self, native_id: str) -> OutcomeReport:
        market = self.get_one(native_id)
        if market is None or market.status != _RESOLVED or not market.result_token_id:
            return OutcomeReport(resolved=False)
        if market.result_token_id == market.yes_token_id:
            return OutcomeReport(resolved=True, outcome=Outcome.YES)
        if market.result_token_id == market.no_token_id:
            return OutcomeReport(resolved=True, outcome=Outcome.NO)
        return OutcomeReport(resolved=False)

    def get_trades(self, native_id: str) -> List[TradeRecord]:
        """Opinion exposes no public trade tape."""
        return []

    def latest_price_bps(self, token_id: str) -> Optional[int]:
        """YES token price in bps, cached briefly. None if unavailable."""
        if not token_id:
            return None
        now = self._clock()
        with self._cache_lock:
            cached = self._price_cache.get(token_id)
            if cached and now - cached[0] < _PRICE_TTL_SECONDS:
                return cached[1]
        resp = self._get_envelope("/token/latest-price", {"token_id": token_id},
                                  OpinionPriceResponse, "latest_price", token_id)
        bps = probability_to_bps(resp.result.price) if resp.result else None
        with self._cache_lock:
            self._price_cache[token_id] = (now, bps)
        return bps

    def normalize(self, raw: OpinionMarket) -> CanonicalMarket:
        yes_bps: Optional[int] = None
        try:
            yes_bps = self.latest_price_bps(raw.yes_token_id)
        except (ClientRequestError, SchemaValidationError) as exc:
            # A token without a usable price degrades to 50/50
            logger.warning("opinion price for market %s unavailable: %s", raw.market_id, exc)
        yes_bps, no_bps = complement(yes_bps)
        return CanonicalMarket(
            provider=self.name,
            native_id=str(raw.market_id),
            question=raw.market_title,
            yes_price_bps=yes_bps,
            no_price_bps=no_bps,
            volume=decimal_str(raw.volume),
            end_time=_iso_from_epoch(raw.cutoff_at),
            status=_STATUS_MAP.get(raw.status, MarketStatus.UNOPENED),
            url=f"https://opinion.trade/market/{raw.market_id}",
            metadata={
                "yes_token_id": raw.yes_token_id,
                "no_token_id": raw.no_token_id,
                "volume_24h": raw.volume_24h,
                "status_enum": raw.status_enum,
            },
        )
