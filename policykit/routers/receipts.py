"""Read-only receipt views."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from policykit.db import get_db
from policykit.models.receipt import Receipt
from policykit.schemas.receipt import ReceiptExport, ReceiptRead, ReceiptStats
from policykit.services import receipts as receipts_service
from policykit.utils.errors import error_response

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.get("", response_model=list[ReceiptRead])
def list_receipts(
    buyer: str | None = None,
    limit: int = Query(default=50, ge=1, le=receipts_service.MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> list[Receipt]:
    return receipts_service.list_receipts(db, buyer=buyer, limit=limit, offset=offset)


@router.get("/stats", response_model=ReceiptStats)
def receipt_stats(db: Session = Depends(get_db)) -> ReceiptStats:
    return receipts_service.receipt_stats(db)


@router.get("/export", response_model=ReceiptExport)
def export_receipts(
    buyer: str | None = None,
    limit: int = Query(default=receipts_service.MAX_PAGE_SIZE, ge=1, le=receipts_service.MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
) -> ReceiptExport:
    """Spend report for accounting, most recent first."""

    receipts = receipts_service.list_receipts(db, buyer=buyer, limit=limit)
    return receipts_service.export_receipts(receipts)


@router.get("/{receipt_id}", response_model=ReceiptRead)
def get_receipt(receipt_id: str, db: Session = Depends(get_db)) -> Receipt:
    receipt = receipts_service.get_receipt(db, receipt_id)
    if receipt is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("RECEIPT_NOT_FOUND", "Receipt not found."),
        )
    return receipt
