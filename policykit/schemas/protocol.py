"""Wire and runtime schemas for the payment challenge/response protocol."""
from __future__ import annotations

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic.alias_generators import to_camel

from policykit.config import get_settings

X402_VERSION = 1
ZERO = Decimal("0")


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python; unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class PricingEntry(_WireModel):
    """A configured price; unset fields fall back to the paywall defaults."""

    price_usd: Decimal = Field(ge=ZERO)
    price_in_asset_units: int | None = Field(default=None, ge=0)
    asset: str | None = None
    chain_id: int | None = None
    description: str | None = None
    schemes: list[str] | None = None


class EndpointPricing(_WireModel):
    """Fully resolved price for one endpoint."""

    price_usd: Decimal = Field(ge=ZERO)
    price_in_asset_units: int = Field(ge=0)
    asset: str
    chain_id: int
    description: str | None = None
    schemes: list[str] | None = None


class PaywallConfig(BaseModel):
    """Seller-side paywall configuration."""

    model_config = ConfigDict(frozen=True)

    seller_address: str
    default_asset: str
    default_chain_id: int
    pricing: dict[str, Decimal | PricingEntry] = Field(default_factory=dict)
    default_price_usd: Decimal | None = Field(default=None, ge=ZERO)
    expiry_seconds: int = Field(default=300, gt=0)
    verify_signatures: bool = False
    check_replay: bool = True
    nonce_ttl_seconds: int = Field(default=86400, gt=0)
    asset_decimals: int = Field(default=6, ge=0, le=36)

    @classmethod
    def from_settings(cls, settings: Any = None) -> "PaywallConfig":
        """Build the runtime configuration from application settings."""

        if settings is None:
            settings = get_settings()
        return cls(
            seller_address=settings.PAYWALL_SELLER_ADDRESS,
            default_asset=settings.PAYWALL_DEFAULT_ASSET,
            default_chain_id=settings.PAYWALL_DEFAULT_CHAIN_ID,
            pricing=settings.PAYWALL_PRICING,
            default_price_usd=settings.PAYWALL_DEFAULT_PRICE_USD,
            expiry_seconds=settings.PAYWALL_EXPIRY_SECONDS,
            verify_signatures=settings.PAYWALL_VERIFY_SIGNATURES,
            check_replay=settings.PAYWALL_CHECK_REPLAY,
            nonce_ttl_seconds=settings.PAYWALL_NONCE_TTL_SECONDS,
            asset_decimals=settings.PAYWALL_ASSET_DECIMALS,
        )


class ChallengeExtra(_WireModel):
    price_usd: Decimal = Field(ge=ZERO)
    nonce: str = Field(min_length=1)
    expiry: int


class PaymentChallenge(_WireModel):
    """Payment requirements advertised by the seller with a 402."""

    version: int = Field(default=X402_VERSION, alias="x402Version")
    scheme: str = "exact"
    network: str
    max_amount_required: int = Field(ge=0)
    resource: str = ""
    description: str = ""
    mime_type: str = "application/json"
    pay_to: str
    max_timeout_seconds: int = 300
    asset: str
    extra: ChallengeExtra

    @field_serializer("max_amount_required")
    def _amount_as_string(self, value: int) -> str:
        return str(value)

    @property
    def nonce(self) -> str:
        return self.extra.nonce

    @property
    def expiry(self) -> int:
        return self.extra.expiry

    @property
    def price_usd(self) -> Decimal:
        return self.extra.price_usd


class PaymentProof(_WireModel):
    """Signed authorisation sent by the caller in ``X-PAYMENT``."""

    version: int = Field(default=X402_VERSION, alias="x402Version")
    signature: str = Field(alias="sig", min_length=1)
    payer: str = Field(min_length=1)
    nonce: str = Field(min_length=1)
    expiry: int
    amount: int = Field(ge=0)
    asset: str = Field(alias="token", min_length=1)
    chain_id: int
    settlement_ref: str | None = Field(default=None, alias="txHash")

    @field_serializer("amount")
    def _amount_as_string(self, value: int) -> str:
        return str(value)


class Settlement(_WireModel):
    """Outcome returned to the caller in ``PAYMENT-RESPONSE``."""

    version: int = Field(default=X402_VERSION, alias="x402Version")
    success: bool
    receipt_id: str | None = None
    network: str
    payer: str | None = None
    settlement_ref: str | None = Field(default=None, alias="transaction")
    settled_at: int


class VerificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    code: str | None = None
    reason: str | None = None


class PaywallContext(BaseModel):
    """Payment state handed to protected handlers."""

    model_config = ConfigDict(frozen=True)

    paid: bool
    price_usd: Decimal = ZERO
    nonce: str = ""
    proof: PaymentProof | None = None
    receipt_id: str | None = None


class CatalogEntry(BaseModel):
    endpoint: str
    price_usd: Decimal
    asset: str
    chain_id: int
    network: str
    description: str | None = None


__all__ = [
    "X402_VERSION",
    "PricingEntry",
    "EndpointPricing",
    "PaywallConfig",
    "ChallengeExtra",
    "PaymentChallenge",
    "PaymentProof",
    "Settlement",
    "VerificationResult",
    "PaywallContext",
    "CatalogEntry",
]
