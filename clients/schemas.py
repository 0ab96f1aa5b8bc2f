"""Pydantic models for provider API payloads.

Responses are validated on ingestion; a payload that does not fit is a
SchemaValidationError and the page is never partially trusted. Models
keep unknown fields (``extra="allow"``) so the raw payload can still be
stored as market metadata.
"""

from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


def _as_str(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    return value


# ── Polymarket ───────────────────────────────────────────────

class PolymarketMarket(_Payload):
    id: str
    question: str = ""
    condition_id: Optional[str] = Field(default=None, alias="conditionId")
    slug: Optional[str] = None
    description: Optional[str] = ""
    category: Optional[str] = None
    outcomes: Optional[Union[str, List[str]]] = None
    outcome_prices: Optional[Union[str, List[Any]]] = Field(default=None, alias="outcomePrices")
    volume: Optional[Any] = None
    liquidity: Optional[Any] = None
    end_date: Optional[str] = Field(default=None, alias="endDate")
    active: Optional[bool] = None
    closed: Optional[bool] = None
    resolved: Optional[bool] = None
    uma_resolution_status: Optional[str] = Field(default=None, alias="umaResolutionStatus")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _as_str(value)


class PolymarketMarketList(RootModel[List[PolymarketMarket]]):
    pass


class PolymarketTrade(_Payload):
    proxy_wallet: Optional[str] = Field(default=None, alias="proxyWallet")
    side: Optional[str] = None
    size: Any = 0
    price: Any = 0
    timestamp: Optional[int] = None
    transaction_hash: Optional[str] = Field(default=None, alias="transactionHash")
    condition_id: Optional[str] = Field(default=None, alias="conditionId")
    outcome: Optional[str] = None
    outcome_index: Optional[int] = Field(default=None, alias="outcomeIndex")


class PolymarketTradeList(RootModel[List[PolymarketTrade]]):
    pass


# ── Kalshi ───────────────────────────────────────────────────

class KalshiMarket(_Payload):
    ticker: str
    title: str = ""
    subtitle: Optional[str] = None
    event_ticker: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    yes_bid: Optional[float] = None
    yes_ask: Optional[float] = None
    last_price: Optional[float] = None
    volume: Optional[Any] = None
    liquidity: Optional[Any] = None
    close_time: Optional[str] = None
    result: Optional[str] = None
    rules_primary: Optional[str] = None


class KalshiMarketsResponse(_Payload):
    markets: List[KalshiMarket] = Field(default_factory=list)
    cursor: Optional[str] = None


class KalshiMarketResponse(_Payload):
    market: KalshiMarket


class KalshiTrade(_Payload):
    trade_id: str
    ticker: Optional[str] = None
    count: Any = 0
    yes_price: Optional[float] = None
    no_price: Optional[float] = None
    taker_side: Optional[str] = None
    created_time: Optional[str] = None


class KalshiTradesResponse(_Payload):
    trades: List[KalshiTrade] = Field(default_factory=list)
    cursor: Optional[str] = None


# ── Opinion ──────────────────────────────────────────────────

class OpinionMarket(_Payload):
    market_id: int = Field(alias="marketId")
    market_title: str = Field(alias="marketTitle")
    status: int                              # 1=Created .. 6=Deleted
    status_enum: str = Field(default="", alias="statusEnum")
    volume: Optional[str] = "0"
    volume_24h: Optional[str] = Field(default=None, alias="volume24h")
    yes_token_id: str = Field(default="", alias="yesTokenId")
    no_token_id: str = Field(default="", alias="noTokenId")
    result_token_id: Optional[str] = Field(default=None, alias="resultTokenId")
    cutoff_at: Optional[Any] = Field(default="", alias="cutoffAt")
    resolved_at: Optional[Any] = Field(default=None, alias="resolvedAt")

    @field_validator("volume", "volume_24h", mode="before")
    @classmethod
    def _coerce_amount(cls, value: Any) -> Any:
        return _as_str(value)


class OpinionMarketPage(_Payload):
    total: int = 0
    items: List[OpinionMarket] = Field(default_factory=list, alias="list")


class OpinionEnvelope(_Payload):
    code: int
    msg: str = ""


class OpinionMarketsResponse(OpinionEnvelope):
    result: OpinionMarketPage = Field(default_factory=OpinionMarketPage)


class OpinionMarketDetailResponse(OpinionEnvelope):
    result: Optional[OpinionMarket] = None


class OpinionPrice(_Payload):
    token_id: str = Field(default="", alias="tokenId")
    price: str

    @field_validator("price", mode="before")
    @classmethod
    def _coerce_price(cls, value: Any) -> Any:
        return _as_str(value)


class OpinionPriceResponse(OpinionEnvelope):
    result: Optional[OpinionPrice] = None
