"""Caller-side spend ledger models."""
from __future__ import annotations

import enum
from datetime import date
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base


class CallStatus(str, enum.Enum):
    """Lifecycle of one attempted paid call."""

    BLOCKED = "BLOCKED"
    ALLOWED = "ALLOWED"
    RESERVED = "RESERVED"
    PAID = "PAID"
    RELEASED = "RELEASED"


class SpendCall(Base):
    """An attempted paid call, whether blocked, reserved or paid."""

    __tablename__ = "calls"
    __table_args__ = (
        CheckConstraint("price_usd >= 0", name="ck_calls_non_negative_price"),
        Index("ix_calls_caller_day", "caller_id", "spend_date"),
        Index("ix_calls_endpoint", "endpoint"),
    )

    call_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    caller_id: Mapped[str] = mapped_column(String(128), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(512), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False, default="POST")
    price_usd: Mapped[Decimal] = mapped_column(nullable=False)
    spend_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[CallStatus] = mapped_column(
        SqlEnum(CallStatus, name="call_status"), nullable=False, default=CallStatus.ALLOWED
    )
    nonce: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payment_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)

    decision = relationship("PolicyDecisionRecord", back_populates="call", uselist=False)


class PolicyDecisionRecord(Base):
    """Audit copy of a policy decision, including its full trace."""

    __tablename__ = "policy_decisions"
    __table_args__ = (Index("ix_policy_decisions_allowed", "allowed"),)

    call_id: Mapped[str] = mapped_column(ForeignKey("calls.call_id"), nullable=False, index=True)
    caller_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    policy_id: Mapped[str] = mapped_column(String(128), nullable=False)
    allowed: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    projected_spend_usd: Mapped[Decimal] = mapped_column(nullable=False)
    daily_spent_usd: Mapped[Decimal] = mapped_column(nullable=False)
    weekly_spent_usd: Mapped[Decimal] = mapped_column(nullable=False)
    trace: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    call = relationship("SpendCall", back_populates="decision")


class DailySpend(Base):
    """Per-caller, per-UTC-day spend aggregate."""

    __tablename__ = "daily_spend"
    __table_args__ = (
        UniqueConstraint("caller_id", "spend_date", name="uq_daily_spend_caller_date"),
        CheckConstraint("total_usd >= 0", name="ck_daily_spend_non_negative_total"),
        Index("ix_daily_spend_spend_date", "spend_date"),
    )

    caller_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    spend_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_usd: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    reserved_usd: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    call_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    blocked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
