"""Application configuration settings."""
from __future__ import annotations

import json
import os
from decimal import Decimal
from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("POLICYKIT_ENV", "dev").lower()


class Settings(BaseSettings):
    """Environment configuration for the PolicyKit service."""

    app_env: str = Field(default=ENV, validation_alias=AliasChoices("APP_ENV", "POLICYKIT_ENV"))
    database_url: str = "sqlite:///policykit.db"
    LOG_LEVEL: str = "INFO"
    CORS_ALLOW_ORIGINS: list[str] = ["http://localhost:3000"]
    SENTRY_DSN: str | None = None
    PROMETHEUS_ENABLED: bool = True
    ALLOW_DB_CREATE_ALL: bool = False

    # --- Seller paywall --------------------------------------------------
    PAYWALL_SELLER_ADDRESS: str = "0x0000000000000000000000000000000000000000"
    # USDC on Base Sepolia
    PAYWALL_DEFAULT_ASSET: str = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
    PAYWALL_DEFAULT_CHAIN_ID: int = 84532
    PAYWALL_PRICING: dict[str, Any] = Field(default_factory=dict)
    PAYWALL_DEFAULT_PRICE_USD: Decimal | None = None
    PAYWALL_EXPIRY_SECONDS: int = 300
    PAYWALL_VERIFY_SIGNATURES: bool = False
    PAYWALL_CHECK_REPLAY: bool = True
    PAYWALL_NONCE_TTL_SECONDS: int = 86400
    PAYWALL_ASSET_DECIMALS: int = 6

    # --- Caller client ---------------------------------------------------
    CLIENT_AUTO_PAY: bool = True
    CLIENT_MAX_RETRIES: int = 1
    CLIENT_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("PAYWALL_PRICING", mode="before")
    @classmethod
    def _parse_pricing(cls, value: Any) -> Any:
        """Accept the pricing table as a JSON string (e.g. from ``.env``)."""

        if isinstance(value, str):
            value = value.strip()
            return json.loads(value) if value else {}
        return value

    @field_validator("PAYWALL_DEFAULT_PRICE_USD", mode="before")
    @classmethod
    def _empty_price_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class AppInfo(BaseModel):
    name: str = "policykit"
    version: str = "0.1.0"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


__all__ = ["ENV", "Settings", "AppInfo", "get_settings"]
