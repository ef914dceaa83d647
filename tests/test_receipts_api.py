from datetime import UTC, datetime
from decimal import Decimal

import pytest

from policykit.schemas.receipt import ReceiptCreate
from policykit.services.receipts import (
    count_receipts,
    get_receipt_by_payment_ref,
    receipt_stats,
    store_receipt,
)


def _receipt(index: int, buyer: str = "0xBuyer", amount: str = "0.05") -> ReceiptCreate:
    return ReceiptCreate(
        receipt_id=f"rcpt_{index}",
        call_id=f"call_{index}",
        payment_ref=f"0xref{index}",
        endpoint="/api/premium",
        amount_usd=Decimal(amount),
        asset="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        chain_id=84532,
        seller="0x1111111111111111111111111111111111111111",
        buyer=buyer,
        nonce=f"nonce_{index}",
        expiry=datetime(2030, 1, 1, tzinfo=UTC),
        signature="0x" + "ab" * 65,
        request_hash="a" * 64,
        response_hash="b" * 64,
        verified=True,
    )


@pytest.fixture
def receipts(db_session):
    store_receipt(db_session, _receipt(1))
    store_receipt(db_session, _receipt(2, amount="0.02"))
    store_receipt(db_session, _receipt(3, buyer="0xOther"))


def test_receipt_service_queries(db_session, receipts):
    assert count_receipts(db_session) == 3
    assert get_receipt_by_payment_ref(db_session, "0xref2").receipt_id == "rcpt_2"
    stats = receipt_stats(db_session)
    assert stats.total_receipts == 3
    assert stats.total_amount_usd == Decimal("0.12")
    assert stats.unique_buyers == 2
    assert stats.today_receipts == 3


@pytest.mark.anyio
async def test_list_receipts_filters_by_buyer(client, receipts):
    response = await client.get("/receipts", params={"buyer": "0xbuyer"})
    assert response.status_code == 200
    assert {item["receipt_id"] for item in response.json()} == {"rcpt_1", "rcpt_2"}

    page = (await client.get("/receipts", params={"limit": 1})).json()
    assert len(page) == 1


@pytest.mark.anyio
async def test_limit_is_bounded(client):
    response = await client.get("/receipts", params={"limit": 1000})
    assert response.status_code == 422


@pytest.mark.anyio
async def test_get_receipt_and_missing(client, receipts):
    response = await client.get("/receipts/rcpt_1")
    assert response.status_code == 200
    body = response.json()
    assert Decimal(body["amount_usd"]) == Decimal("0.05")
    assert body["verified"] is True

    missing = await client.get("/receipts/rcpt_missing")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "RECEIPT_NOT_FOUND"


@pytest.mark.anyio
async def test_stats_and_export(client, receipts):
    stats = (await client.get("/receipts/stats")).json()
    assert stats["total_receipts"] == 3
    assert Decimal(stats["today_amount_usd"]) == Decimal("0.12")

    export = (await client.get("/receipts/export", params={"buyer": "0xother"})).json()
    assert export["count"] == 1
    assert Decimal(export["total_usd"]) == Decimal("0.05")
    assert export["receipts"][0]["receipt_id"] == "rcpt_3"
