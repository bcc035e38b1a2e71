"""Application configuration with strict environment validation."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"
_DEFAULT_LATENCY_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]


class Settings(BaseSettings):
    """Settings loaded from environment variables or .env file."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE if _ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # --- Observability ---
    LOG_LEVEL: str = "INFO"
    METRICS_ENABLED: bool = True
    METRICS_NAMESPACE: str = "promo_engine"
    METRICS_LATENCY_BUCKETS: list[float] = Field(default_factory=lambda: list(_DEFAULT_LATENCY_BUCKETS))

    # --- Database ---
    DATABASE_URL: str = "sqlite:///./promo_engine.db"
    ASYNC_DATABASE_URL: str | None = None

    # --- Promotion engine bounds (currency minor units) ---
    PROMOTION_MAX_DISCOUNT_AMOUNT: int = 5_000_000
    PROMOTION_HIGH_VALUE_THRESHOLD: int = 500_000
    PROMOTION_HIGH_VALUE_MAX_SHARE: float = 0.8
    PROMOTION_HIGH_VALUE_MAX_USAGE_LIMIT: int = 1000
    PROMOTION_CALCULATION_TOLERANCE: int = 1
    PROMOTION_MAX_ITEM_QUANTITY: int = 1000
    PROMOTION_MAX_UNIT_PRICE: int = 10_000_000
    PROMOTION_MAX_GIFT_QUANTITY: int = 10
    PROMOTION_MAX_GIFT_QUANTITY_PER_ITEM: int = 5

    # --- Read-through cache ---
    PROMOTION_CACHE_ENABLED: bool = True
    PROMOTION_CACHE_ACTIVE_TTL: int = 120
    PROMOTION_CACHE_RULES_TTL: int = 600
    PROMOTION_CACHE_PROMOTION_TTL: int = 300
    PROMOTION_CACHE_MAX_ENTRIES: int = 1000

    @staticmethod
    def _split_float_list(value: str | list[float] | None) -> list[float]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        floats: list[float] = []
        for item in value:
            try:
                floats.append(float(item))
            except (TypeError, ValueError):
                continue
        return floats

    @field_validator("METRICS_LATENCY_BUCKETS", mode="before")
    @classmethod
    def validate_metric_buckets(cls, value: str | list[float] | None) -> list[float]:
        return cls._split_float_list(value) or list(_DEFAULT_LATENCY_BUCKETS)

    @field_validator(
        "PROMOTION_MAX_DISCOUNT_AMOUNT",
        "PROMOTION_HIGH_VALUE_THRESHOLD",
        "PROMOTION_HIGH_VALUE_MAX_USAGE_LIMIT",
        "PROMOTION_MAX_ITEM_QUANTITY",
        "PROMOTION_MAX_UNIT_PRICE",
        "PROMOTION_MAX_GIFT_QUANTITY",
        "PROMOTION_MAX_GIFT_QUANTITY_PER_ITEM",
        "PROMOTION_CACHE_ACTIVE_TTL",
        "PROMOTION_CACHE_RULES_TTL",
        "PROMOTION_CACHE_PROMOTION_TTL",
        "PROMOTION_CACHE_MAX_ENTRIES",
    )
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("PROMOTION_CALCULATION_TOLERANCE")
    @classmethod
    def validate_tolerance(cls, value: int) -> int:
        if value < 0:
            raise ValueError("PROMOTION_CALCULATION_TOLERANCE cannot be negative.")
        return value

    @field_validator("PROMOTION_HIGH_VALUE_MAX_SHARE")
    @classmethod
    def validate_share(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("PROMOTION_HIGH_VALUE_MAX_SHARE must be within (0, 1].")
        return value

    @model_validator(mode="after")
    def ensure_async_database_url(self) -> "Settings":
        """Ensure an async URL is always available."""
        if not self.ASYNC_DATABASE_URL:
            self.ASYNC_DATABASE_URL = self._derive_async_url(self.DATABASE_URL)
        if not self.ASYNC_DATABASE_URL:
            raise ValueError(f"Could not derive async database URL from: {self.DATABASE_URL}")
        return self

    @staticmethod
    def _derive_async_url(url: str | None) -> str | None:
        """Best-effort conversion from sync to async driver."""
        if not url:
            return None
        if "+asyncpg" in url or "+aiosqlite" in url:
            return url
        if url.startswith("sqlite:"):
            return url.replace("sqlite:", "sqlite+aiosqlite:", 1)
        if "://" not in url:
            return url

        scheme, rest = url.split("://", 1)
        if scheme.startswith("postgres"):
            return f"postgresql+asyncpg://{rest}"
        return url


class PromotionLimits(BaseModel):
    """Numeric bounds the engine enforces, decoupled from the environment."""

    model_config = ConfigDict(frozen=True)

    max_discount_amount: int = 5_000_000
    high_value_threshold: int = 500_000
    high_value_max_share: float = 0.8
    high_value_max_usage_limit: int = 1000
    calculation_tolerance: int = 1
    max_item_quantity: int = 1000
    max_unit_price: int = 10_000_000
    max_gift_quantity: int = 10
    max_gift_quantity_per_item: int = 5

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "PromotionLimits":
        source = source or settings
        return cls(
            max_discount_amount=source.PROMOTION_MAX_DISCOUNT_AMOUNT,
            high_value_threshold=source.PROMOTION_HIGH_VALUE_THRESHOLD,
            high_value_max_share=source.PROMOTION_HIGH_VALUE_MAX_SHARE,
            high_value_max_usage_limit=source.PROMOTION_HIGH_VALUE_MAX_USAGE_LIMIT,
            calculation_tolerance=source.PROMOTION_CALCULATION_TOLERANCE,
            max_item_quantity=source.PROMOTION_MAX_ITEM_QUANTITY,
            max_unit_price=source.PROMOTION_MAX_UNIT_PRICE,
            max_gift_quantity=source.PROMOTION_MAX_GIFT_QUANTITY,
            max_gift_quantity_per_item=source.PROMOTION_MAX_GIFT_QUANTITY_PER_ITEM,
        )


settings = Settings()
