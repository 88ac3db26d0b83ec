import json
import logging
from functools import lru_cache
from typing import Optional, Union

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings loaded from environment variables (prefix REVSHARE_)."""

    APP_NAME: str = "Revenue Share Ledger"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: list[str] = ["*"]

    # Dispatcher
    DISPATCH_MAX_ATTEMPTS: int = 3
    DISPATCH_BACKOFF_SECONDS: float = 0.5
    DISPATCH_WORKERS: int = 4  # 0 runs distribution inline

    # Store
    STORE_MAX_TRANSACTION_ATTEMPTS: int = 5

    # Platforms whose transactions are booked net of processor fees
    NET_FEE_PLATFORMS: list[str] = ["stripe_web"]

    # Normalizer fallbacks
    DEFAULT_TENANT_ID: str = "TENANT_UNKNOWN"
    DEFAULT_CURRENCY: str = "brl"
    MOBILE_FALLBACK_PRICE_CENTS: int = 990

    # Stripe API, used to expand invoices with their balance transaction
    STRIPE_SECRET_KEY: Optional[str] = None

    @field_validator("CORS_ORIGINS", "NET_FEE_PLATFORMS", mode="before")
    @classmethod
    def parse_list(cls, v: Union[str, list]):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [item.strip() for item in v.split(",") if item.strip()]
        return v

    model_config = SettingsConfigDict(
        env_prefix="REVSHARE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
