"""Payment receipt ORM model."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Receipt(Base):
    """Proof that a verified payment was exchanged for a response."""

    __tablename__ = "receipts"
    __table_args__ = (
        CheckConstraint("amount_usd >= 0", name="ck_receipts_non_negative_amount"),
        Index("ix_receipts_created_at", "created_at"),
        Index("ix_receipts_buyer", "buyer"),
    )

    receipt_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    call_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payment_ref: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    endpoint: Mapped[str] = mapped_column(String(512), nullable=False)
    amount_usd: Mapped[Decimal] = mapped_column(nullable=False)
    asset: Mapped[str] = mapped_column(String(128), nullable=False)
    chain_id: Mapped[int] = mapped_column(Integer, nullable=False)
    seller: Mapped[str] = mapped_column(String(128), nullable=False)
    buyer: Mapped[str] = mapped_column(String(128), nullable=False)
    nonce: Mapped[str] = mapped_column(String(128), nullable=False)
    expiry: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    signature: Mapped[str] = mapped_column(String(1024), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    response_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    settlement_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
