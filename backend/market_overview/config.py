"""
Market Overview - Configuration Settings
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Market data settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # =========================
    # Application Settings
    # =========================
    APP_NAME: str = "Market Overview"
    APP_ENV: str = "development"
    DEBUG: bool = False

    # =========================
    # Redis (optional distributed cache)
    # =========================
    # Empty REDIS_URL selects the in-process cache backend
    REDIS_URL: str = ""

    @field_validator("REDIS_URL", "UPSTOX_ACCESS_TOKEN", "YAHOO_CRUMB", mode="before")
    @classmethod
    def strip_blank(cls, v):
        if v is None:
            return ""
        return str(v).strip()

    @property
    def redis_enabled(self) -> bool:
        return bool(self.REDIS_URL)

    # =========================
    # Data Providers - Credentials
    # =========================
    UPSTOX_ACCESS_TOKEN: str = ""
    UPSTOX_BASE_URL: str = "https://api.upstox.com/v2"

    YAHOO_BASE_URL: str = "https://query1.finance.yahoo.com"
    YAHOO_CRUMB: str = ""

    # =========================
    # Rate Limit Settings (per caller, per provider)
    # =========================
    UPSTOX_RATE_LIMIT_MAX: int = 2000
    UPSTOX_RATE_LIMIT_WINDOW_SECONDS: int = 30 * 60

    YAHOO_RATE_LIMIT_MAX: int = 100
    YAHOO_RATE_LIMIT_WINDOW_SECONDS: int = 60

    DEFAULT_RATE_LIMIT_MAX: int = 1000
    DEFAULT_RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60

    @property
    def rate_limit_configs(self) -> dict:
        """Rate limit configuration keyed by provider name."""
        from market_overview.data_providers.rate_limiter import RateLimitConfig

        return {
            "upstox": RateLimitConfig(
                max_requests=self.UPSTOX_RATE_LIMIT_MAX,
                window_seconds=self.UPSTOX_RATE_LIMIT_WINDOW_SECONDS,
            ),
            "yahoo": RateLimitConfig(
                max_requests=self.YAHOO_RATE_LIMIT_MAX,
                window_seconds=self.YAHOO_RATE_LIMIT_WINDOW_SECONDS,
            ),
            "general": RateLimitConfig(
                max_requests=self.DEFAULT_RATE_LIMIT_MAX,
                window_seconds=self.DEFAULT_RATE_LIMIT_WINDOW_SECONDS,
            ),
        }

    # =========================
    # Cache TTLs (seconds)
    # =========================
    QUOTE_CACHE_TTL: int = 30
    HISTORICAL_CACHE_TTL: int = 3600
    SEARCH_CACHE_TTL: int = 300
    OVERVIEW_CACHE_TTL: int = 30
    STALE_CACHE_TTL: int = 86400

    # =========================
    # Resilience
    # =========================
    PROVIDER_TIMEOUT_SECONDS: float = 5.0
    CREDENTIALS_COOLDOWN_SECONDS: int = 30 * 60
    SYMBOL_UNSUPPORTED_TTL_SECONDS: int = 6 * 3600
    MAINTENANCE_INTERVAL_SECONDS: int = 5 * 60
    SERVE_STALE_ON_FAILURE: bool = True
    DEDUPLICATE_INFLIGHT: bool = True
    MAX_BATCH_SYMBOLS: int = 50

    @field_validator(
        "QUOTE_CACHE_TTL",
        "HISTORICAL_CACHE_TTL",
        "SEARCH_CACHE_TTL",
        "OVERVIEW_CACHE_TTL",
        "STALE_CACHE_TTL",
        "UPSTOX_RATE_LIMIT_WINDOW_SECONDS",
        "YAHOO_RATE_LIMIT_WINDOW_SECONDS",
        "DEFAULT_RATE_LIMIT_WINDOW_SECONDS",
    )
    @classmethod
    def positive_seconds(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive number of seconds")
        return v

    # =========================
    # Logging
    # =========================
    LOG_LEVEL: str = "INFO"
    LOG_TO_FILE: bool = False
    LOG_DIR: str = "logs"


# Create global settings instance
settings = Settings()
