"""Configuration dataclasses and .env loading for the market pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import os

from dotenv import load_dotenv

load_dotenv()

# Project root
PROJECT_DIR = Path(__file__).resolve().parent
DATA_DIR = PROJECT_DIR / "data"
DB_PATH = DATA_DIR / "markets.db"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class ProviderLimits:
    """Rate budget, breaker and timeout settings shared by every provider."""
    rate_limit: int = 50                     # requests per window
    rate_window_seconds: float = 60.0
    breaker_threshold: int = 5               # consecutive failures before open
    breaker_cooldown_seconds: float = 30.0
    breaker_backoff_multiplier: float = 1.0  # 1.0 keeps the same cooldown
    breaker_max_cooldown_seconds: float = 300.0
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    timeout: float = 30.0

    @classmethod
    def from_env(cls, prefix: str, rate_limit: int = 50) -> ProviderLimits:
        return cls(
            rate_limit=_env_int(f"{prefix}_RATE_LIMIT", rate_limit),
            rate_window_seconds=_env_float(f"{prefix}_RATE_WINDOW_SECONDS", 60.0),
            breaker_threshold=_env_int(f"{prefix}_BREAKER_THRESHOLD", 5),
            breaker_cooldown_seconds=_env_float(f"{prefix}_BREAKER_COOLDOWN_SECONDS", 30.0),
            max_attempts=_env_int(f"{prefix}_MAX_ATTEMPTS", 3),
            timeout=_env_float(f"{prefix}_TIMEOUT", 30.0),
        )


@dataclass
class KalshiConfig:
    api_key_id: str = ""
    private_key_path: str = ""
    private_key_pem: str = ""               # inline PEM, wins over the path
    base_url: str = "https://api.elections.kalshi.com/trade-api/v2"
    page_size: int = 200
    limits: ProviderLimits = field(default_factory=ProviderLimits)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key_id and (self.private_key_pem or self.private_key_path))

    @classmethod
    def from_env(cls) -> KalshiConfig:
        return cls(
            api_key_id=os.getenv("KALSHI_API_KEY_ID", ""),
            private_key_path=os.getenv("KALSHI_PRIVATE_KEY_PATH", ""),
            private_key_pem=os.getenv("KALSHI_PRIVATE_KEY", "").replace("\\n", "\n"),
            base_url=os.getenv("KALSHI_BASE_URL", cls.base_url),
            limits=ProviderLimits.from_env("KALSHI", rate_limit=50),
        )


@dataclass
class PolymarketConfig:
    gamma_url: str = "https://gamma-api.polymarket.com"
    data_api_url: str = "https://data-api.polymarket.com"
    page_size: int = 100
    limits: ProviderLimits = field(default_factory=lambda: ProviderLimits(rate_limit=100))

    @classmethod
    def from_env(cls) -> PolymarketConfig:
        return cls(limits=ProviderLimits.from_env("POLYMARKET", rate_limit=100))


@dataclass
class OpinionConfig:
    api_key: str = ""
    base_url: str = "https://openapi.opinion.trade/openapi"
    page_size: int = 20                     # API max
    limits: ProviderLimits = field(default_factory=ProviderLimits)

    @classmethod
    def from_env(cls) -> OpinionConfig:
        return cls(
            api_key=os.getenv("OPINION_API_KEY", ""),
            base_url=os.getenv("OPINION_BASE_URL", cls.base_url),
            limits=ProviderLimits.from_env("OPINION", rate_limit=50),
        )


@dataclass
class SchedulerConfig:
    sync_interval_minutes: int = 5
    detection_interval_seconds: int = 60
    execution_interval_seconds: int = 60
    whale_interval_minutes: int = 5
    arbitrage_interval_minutes: int = 5

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        return cls(
            sync_interval_minutes=_env_int("SYNC_INTERVAL_MINUTES", 5),
            detection_interval_seconds=_env_int("RESOLUTION_DETECTION_INTERVAL_SECONDS", 60),
            execution_interval_seconds=_env_int("RESOLUTION_EXECUTION_INTERVAL_SECONDS", 60),
            whale_interval_minutes=_env_int("WHALE_INTERVAL_MINUTES", 5),
            arbitrage_interval_minutes=_env_int("ARBITRAGE_INTERVAL_MINUTES", 5),
        )


@dataclass
class SyncConfig:
    max_pages: int = 20                     # safety cap per provider run


@dataclass
class ResolutionConfig:
    executor_url: str = ""
    executor_api_key: str = ""
    delay_minutes: int = 5                  # manual-review window
    detection_batch: int = 50
    execution_batch: int = 10

    @classmethod
    def from_env(cls) -> ResolutionConfig:
        return cls(
            executor_url=os.getenv("RESOLUTION_EXECUTOR_URL", ""),
            executor_api_key=os.getenv("RESOLUTION_EXECUTOR_API_KEY", ""),
            delay_minutes=_env_int("RESOLUTION_DELAY_MINUTES", 5),
        )


@dataclass
class ArbitrageConfig:
    min_spread_bps: int = 500               # 5 cents
    similarity_threshold: float = 0.7
    ttl_minutes: int = 5

    @classmethod
    def from_env(cls) -> ArbitrageConfig:
        return cls(
            min_spread_bps=_env_int("ARBITRAGE_MIN_SPREAD_BPS", 500),
            similarity_threshold=_env_float("ARBITRAGE_SIMILARITY_THRESHOLD", 0.7),
        )


@dataclass
class WhaleConfig:
    threshold_usd: str = "10000"            # decimal string
    markets_per_scan: int = 20

    @classmethod
    def from_env(cls) -> WhaleConfig:
        return cls(
            threshold_usd=os.getenv("WHALE_THRESHOLD_USD", "10000"),
            markets_per_scan=_env_int("WHALE_MARKETS_PER_SCAN", 20),
        )


@dataclass
class SlackConfig:
    webhook_url: str = ""

    @classmethod
    def from_env(cls) -> SlackConfig:
        return cls(webhook_url=os.getenv("SLACK_WEBHOOK_URL", ""))


@dataclass
class AppConfig:
    kalshi: KalshiConfig = field(default_factory=KalshiConfig)
    polymarket: PolymarketConfig = field(default_factory=PolymarketConfig)
    opinion: OpinionConfig = field(default_factory=OpinionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    resolution: ResolutionConfig = field(default_factory=ResolutionConfig)
    arbitrage: ArbitrageConfig = field(default_factory=ArbitrageConfig)
    whale: WhaleConfig = field(default_factory=WhaleConfig)
    slack: SlackConfig = field(default_factory=SlackConfig)
    db_path: Path = DB_PATH
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> AppConfig:
        return cls(
            kalshi=KalshiConfig.from_env(),
            polymarket=PolymarketConfig.from_env(),
            opinion=OpinionConfig.from_env(),
            scheduler=SchedulerConfig.from_env(),
            sync=SyncConfig(max_pages=_env_int("SYNC_MAX_PAGES", 20)),
            resolution=ResolutionConfig.from_env(),
            arbitrage=ArbitrageConfig.from_env(),
            whale=WhaleConfig.from_env(),
            slack=SlackConfig.from_env(),
            database_url=os.getenv("DATABASE_URL") or None,
        )


def load_config() -> AppConfig:
    """Load configuration from environment variables."""
    return AppConfig.from_env()
