"""Schemas for payment receipts."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class ReceiptCreate(BaseModel):
    receipt_id: str
    call_id: str
    payment_ref: str
    endpoint: str
    amount_usd: Decimal = Field(ge=0)
    asset: str
    chain_id: int
    seller: str
    buyer: str
    nonce: str
    expiry: datetime
    signature: str
    request_hash: str
    response_hash: str
    settlement_ref: str | None = None
    verified: bool = False


class ReceiptRead(BaseModel):
    receipt_id: str
    call_id: str
    payment_ref: str
    endpoint: str
    amount_usd: Decimal
    asset: str
    chain_id: int
    seller: str
    buyer: str
    nonce: str
    expiry: datetime
    signature: str
    request_hash: str
    response_hash: str
    settlement_ref: str | None
    verified: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReceiptStats(BaseModel):
    total_receipts: int
    total_amount_usd: Decimal
    unique_buyers: int
    today_receipts: int
    today_amount_usd: Decimal


class ReceiptExportItem(BaseModel):
    receipt_id: str
    amount_usd: Decimal
    buyer: str
    seller: str
    request_hash: str
    response_hash: str
    settlement_ref: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReceiptExport(BaseModel):
    exported_at: datetime
    count: int
    total_usd: Decimal
    receipts: list[ReceiptExportItem]
