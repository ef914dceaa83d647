"""Declarative base model for SQLAlchemy."""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from policykit.utils.time import utcnow

# USD amounts keep six decimal places, matching asset base units.
USD = Numeric(18, 6, asdecimal=True)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {Decimal: USD}

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
