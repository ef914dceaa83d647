"""Schemas for spending policies, spend snapshots and policy decisions."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from policykit.utils.time import utcnow

ZERO = Decimal("0")


class Policy(BaseModel):
    """Caller-declared spending rules. Immutable once ingested."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    id: str = Field(min_length=1, max_length=128)
    name: str = Field(default="Custom Policy", max_length=255)
    daily_cap_usd: Decimal = Field(default=Decimal("1.00"), ge=ZERO)
    weekly_cap_usd: Decimal | None = Field(default=Decimal("5.00"), ge=ZERO)
    per_call_cap_usd: Decimal = Field(default=Decimal("0.10"), ge=ZERO)
    allow_tools: list[str] = Field(default_factory=list)
    deny_tools: list[str] = Field(default_factory=list)
    allow_domains: list[str] = Field(default_factory=list)
    deny_domains: list[str] = Field(default_factory=list)
    endpoint_caps: dict[str, Decimal] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("endpoint_caps", "endpointCaps", "perEndpointCaps"),
    )
    enabled: bool = True
    metadata: dict[str, Any] | None = None

    @field_validator("allow_domains", "deny_domains")
    @classmethod
    def _normalise_domains(cls, value: list[str]) -> list[str]:
        return [item.strip().lower() for item in value if item.strip()]

    @field_validator("allow_tools", "deny_tools")
    @classmethod
    def _strip_tools(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item.strip()]

    @field_validator("endpoint_caps")
    @classmethod
    def _non_negative_endpoint_caps(cls, value: dict[str, Decimal]) -> dict[str, Decimal]:
        for endpoint, cap in value.items():
            if cap < ZERO:
                raise ValueError(f"Endpoint cap for {endpoint} must be non-negative")
        return value

    @model_validator(mode="after")
    def _per_call_within_daily(self) -> "Policy":
        if self.per_call_cap_usd > self.daily_cap_usd:
            raise ValueError("Per-call cap cannot exceed daily cap")
        return self

    def per_call_cap_for(self, endpoint: str) -> Decimal:
        """Return the endpoint override if any, else the global per-call cap."""

        return self.endpoint_caps.get(endpoint, self.per_call_cap_usd)


class SpendContext(BaseModel):
    """Rolling spend snapshot for one caller."""

    model_config = ConfigDict(frozen=True)

    caller_id: str
    daily_spent_usd: Decimal = ZERO
    weekly_spent_usd: Decimal = ZERO
    daily_call_count: int = 0
    as_of: datetime = Field(default_factory=utcnow)


class PaymentRequest(BaseModel):
    """A proposed charge to evaluate."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    tool: str
    domain: str
    price_usd: Decimal = Field(ge=ZERO)
    caller_id: str
    metadata: dict[str, Any] | None = None


class RuleTrace(BaseModel):
    """One rule's verdict."""

    model_config = ConfigDict(frozen=True)

    rule_id: str
    rule_name: str
    passed: bool
    reason: str
    values: dict[str, Any] = Field(default_factory=dict)


class PolicyDecision(BaseModel):
    """Evaluator output, persisted as an audit record."""

    model_config = ConfigDict(frozen=True)

    allow: bool
    reason: str
    rule_id: str
    projected_spend: Decimal
    current_daily_spend: Decimal
    current_weekly_spend: Decimal
    remaining_daily_budget: Decimal
    remaining_weekly_budget: Decimal | None = None
    policy_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    trace: list[RuleTrace] = Field(default_factory=list)


class RemainingBudget(BaseModel):
    daily: Decimal
    weekly: Decimal | None = None


class SpendStats(BaseModel):
    daily_usage_percent: Decimal
    weekly_usage_percent: Decimal | None = None
    average_per_call: Decimal
    calls_remaining: int


class EvaluateIn(BaseModel):
    """Request body for the policy preview endpoint."""

    policy: dict[str, Any]
    url: str
    price_usd: Decimal = Field(ge=ZERO)
    caller_id: str = "preview"
    daily_spent_usd: Decimal = Field(default=ZERO, ge=ZERO)
    weekly_spent_usd: Decimal = Field(default=ZERO, ge=ZERO)
    daily_call_count: int = Field(default=0, ge=0)
    full_trace: bool = True


__all__ = [
    "Policy",
    "SpendContext",
    "PaymentRequest",
    "RuleTrace",
    "PolicyDecision",
    "RemainingBudget",
    "SpendStats",
    "EvaluateIn",
]
