"""Receipt persistence and read models."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from policykit import db
from policykit.models.receipt import Receipt
from policykit.schemas.receipt import ReceiptCreate, ReceiptExport, ReceiptExportItem, ReceiptStats
from policykit.utils.time import day_start, utcnow

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
MAX_PAGE_SIZE = 200
_USD_QUANTUM = Decimal("0.000001")


def _usd(value) -> Decimal:
    # Aggregates come back as floats on SQLite.
    return Decimal(str(value or 0)).quantize(_USD_QUANTUM)


def store_receipt(db_session: Session, data: ReceiptCreate) -> Receipt:
    """Persist a receipt and commit."""

    receipt = Receipt(**data.model_dump())
    db_session.add(receipt)
    db_session.commit()
    db_session.refresh(receipt)
    logger.info(
        "Receipt stored",
        extra={
            "receipt_id": receipt.receipt_id,
            "payment_ref": receipt.payment_ref,
            "amount_usd": str(receipt.amount_usd),
            "endpoint": receipt.endpoint,
        },
    )
    return receipt


def get_receipt(db_session: Session, receipt_id: str) -> Receipt | None:
    return db_session.execute(select(Receipt).where(Receipt.receipt_id == receipt_id)).scalar_one_or_none()


def get_receipt_by_payment_ref(db_session: Session, payment_ref: str) -> Receipt | None:
    return db_session.execute(select(Receipt).where(Receipt.payment_ref == payment_ref)).scalar_one_or_none()


def list_receipts(
    db_session: Session,
    *,
    buyer: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Receipt]:
    """Most recent receipts first, optionally for a single buyer."""

    stmt = select(Receipt)
    if buyer:
        stmt = stmt.where(func.lower(Receipt.buyer) == buyer.lower())
    stmt = stmt.order_by(Receipt.created_at.desc(), Receipt.id.desc()).limit(min(limit, MAX_PAGE_SIZE)).offset(offset)
    return list(db_session.execute(stmt).scalars())


def count_receipts(db_session: Session) -> int:
    return db_session.scalar(select(func.count(Receipt.id))) or 0


def receipt_stats(db_session: Session, *, now: datetime | None = None) -> ReceiptStats:
    """Totals across all receipts and for the current UTC day."""

    today = day_start(now or utcnow())
    tomorrow = today + timedelta(days=1)

    total_count, total_amount = db_session.execute(
        select(func.count(Receipt.id), func.coalesce(func.sum(Receipt.amount_usd), 0))
    ).one()
    unique_buyers = db_session.scalar(select(func.count(func.distinct(func.lower(Receipt.buyer))))) or 0
    today_count, today_amount = db_session.execute(
        select(func.count(Receipt.id), func.coalesce(func.sum(Receipt.amount_usd), 0)).where(
            Receipt.created_at >= today,
            Receipt.created_at < tomorrow,
        )
    ).one()

    return ReceiptStats(
        total_receipts=total_count,
        total_amount_usd=_usd(total_amount),
        unique_buyers=unique_buyers,
        today_receipts=today_count,
        today_amount_usd=_usd(today_amount),
    )


def export_receipts(receipts: Sequence[Receipt]) -> ReceiptExport:
    """Build a spend-report export from ``receipts``."""

    items = [ReceiptExportItem.model_validate(receipt) for receipt in receipts]
    return ReceiptExport(
        exported_at=utcnow(),
        count=len(items),
        total_usd=sum((item.amount_usd for item in items), ZERO),
        receipts=items,
    )


class ReceiptStore(ABC):
    """Where the paywall writes receipts after a paid response."""

    @abstractmethod
    def store(self, data: ReceiptCreate) -> None:
        ...


class SqlReceiptStore(ReceiptStore):
    def __init__(self, db_session: Session | None = None) -> None:
        self._db_session = db_session

    def store(self, data: ReceiptCreate) -> None:
        with db.session_scope(self._db_session) as session:
            store_receipt(session, data)


class InMemoryReceiptStore(ReceiptStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._receipts: dict[str, ReceiptCreate] = {}

    def store(self, data: ReceiptCreate) -> None:
        with self._lock:
            self._receipts[data.receipt_id] = data

    def get(self, receipt_id: str) -> ReceiptCreate | None:
        with self._lock:
            return self._receipts.get(receipt_id)

    def all(self) -> list[ReceiptCreate]:
        with self._lock:
            return list(self._receipts.values())


__all__ = [
    "store_receipt",
    "get_receipt",
    "get_receipt_by_payment_ref",
    "list_receipts",
    "count_receipts",
    "receipt_stats",
    "export_receipts",
    "ReceiptStore",
    "SqlReceiptStore",
    "InMemoryReceiptStore",
]
