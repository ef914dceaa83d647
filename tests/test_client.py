from decimal import Decimal

import httpx
import pytest

from policykit.schemas.policy import Policy
from policykit.services.client import PaymentCallbacks, PaymentClient
from policykit.services.codec import (
    PAYMENT_HEADER,
    PAYMENT_REQUIRED_HEADER,
    build_challenge,
    challenge_headers,
    decode_proof,
)
from policykit.services.ledger import InMemorySpendLedger, SqlSpendLedger
from policykit.services.nonces import InMemoryNonceStore
from policykit.services.pricing import resolve_pricing
from policykit.services.signing import MockSigner, Signer
from policykit.utils.errors import (
    PolicyBlockedError,
    ProtocolError,
    ReplayError,
    SigningError,
    TransportError,
    VerificationError,
)

URL = "http://seller.test/api/premium"


@pytest.fixture
def policy() -> Policy:
    return Policy(id="agent", daily_cap_usd=Decimal("1.00"), per_call_cap_usd=Decimal("0.10"))


@pytest.fixture
def ledger() -> InMemorySpendLedger:
    return InMemorySpendLedger()


def _client(seller_http, policy, ledger, **kwargs) -> PaymentClient:
    return PaymentClient(policy, MockSigner(), ledger, "agent-1", http_client=seller_http, **kwargs)


def _mock_seller(paywall_config, paid_handler):
    """MockTransport seller: 402 without proof, ``paid_handler`` otherwise."""

    pricing = resolve_pricing("/api/premium", paywall_config)
    challenge = build_challenge(pricing, paywall_config, "nonce_mock", 4_000_000_000, resource=URL)

    def handler(request: httpx.Request) -> httpx.Response:
        if PAYMENT_HEADER not in request.headers:
            return httpx.Response(402, headers=challenge_headers(challenge, pricing))
        return paid_handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_pays_for_priced_resource(make_seller, policy, ledger):
    seller = make_seller()
    async with seller.client() as http:
        client = _client(http, policy, ledger)
        result = await client.post(URL)

    assert result.paid is True
    assert result.status_code == 200
    assert result.json()["result"] == "premium content"
    assert result.decision.allow
    assert result.receipt_id is not None
    assert result.settlement.receipt_id == result.receipt_id
    assert result.proof.nonce == seller.calls[0].nonce
    assert result.proof.payer == await MockSigner().get_address()

    context = ledger.get_spend_context("agent-1")
    assert context.daily_spent_usd == Decimal("0.05")
    assert context.daily_call_count == 1
    assert ledger.payments()[0].payment_ref == result.proof.signature[:16]
    assert len(ledger.decisions()) == 1


@pytest.mark.anyio
async def test_free_resource_is_not_paid(make_seller, policy, ledger):
    seller = make_seller()
    async with seller.client() as http:
        result = await _client(http, policy, ledger).get("http://seller.test/api/free")

    assert result.paid is False
    assert result.status_code == 200
    assert ledger.decisions() == []


@pytest.mark.anyio
async def test_worked_example_end_to_end(make_seller, policy, ledger):
    seller = make_seller()
    async with seller.client() as http:
        client = _client(http, policy, ledger)
        first = await client.get("http://seller.test/api/cheap")
        assert first.decision.remaining_daily_budget == Decimal("0.97")
        await client.post(URL)
        budget = await client.remaining_budget()

    assert budget.daily == Decimal("0.92")
    assert len(seller.calls) == 2


@pytest.mark.anyio
async def test_policy_block_raises_without_paying(make_seller, ledger):
    blocked = []
    policy = Policy(id="tight", per_call_cap_usd=Decimal("0.01"))
    seller = make_seller()
    async with seller.client() as http:
        client = _client(http, policy, ledger, callbacks=PaymentCallbacks(on_policy_blocked=blocked.append))
        with pytest.raises(PolicyBlockedError) as excinfo:
            await client.post(URL)

    error = excinfo.value
    assert error.code == "per_call_cap"
    assert error.decision.rule_id == "per_call_cap"
    assert error.challenge.max_amount_required == 50_000
    assert len(error.decision.trace) == 8
    assert blocked == [error.decision]
    assert seller.calls == []
    assert ledger.payments() == []
    assert len(ledger.blocked_decisions()) == 1


@pytest.mark.anyio
async def test_auto_pay_disabled(make_seller, policy, ledger):
    seller = make_seller()
    async with seller.client() as http:
        with pytest.raises(PolicyBlockedError) as excinfo:
            await _client(http, policy, ledger, auto_pay=False).post(URL)

    assert excinfo.value.code == "AUTO_PAY_DISABLED"
    assert excinfo.value.decision.allow
    assert seller.calls == []


@pytest.mark.anyio
async def test_callbacks_fire_on_payment(make_seller, policy, ledger):
    seen = []
    callbacks = PaymentCallbacks(
        on_payment_required=lambda challenge, decision: seen.append(("required", challenge.nonce)),
        on_payment_made=lambda proof: seen.append(("made", proof.nonce)),
    )
    seller = make_seller()
    async with seller.client() as http:
        await _client(http, policy, ledger, callbacks=callbacks).post(URL)

    assert [kind for kind, _ in seen] == ["required", "made"]
    assert seen[0][1] == seen[1][1]


@pytest.mark.anyio
async def test_seller_rejection_raises_verification_error(make_seller, policy, ledger, clock):
    class JumpingClock:
        def __init__(self):
            self.values = iter([clock.now, clock.now + 1_000])

        def __call__(self):
            return next(self.values)

    seller = make_seller(clock=JumpingClock())
    async with seller.client() as http:
        with pytest.raises(VerificationError) as excinfo:
            await _client(http, policy, ledger).post(URL)

    assert excinfo.value.code == "expired"
    assert excinfo.value.details["status_code"] == 402
    assert ledger.payments() == []


@pytest.mark.anyio
async def test_replay_rejection_raises_replay_error(make_seller, policy, ledger):
    class SpentNonces(InMemoryNonceStore):
        def claim(self, nonce, ttl_seconds=86400):
            return False

    seller = make_seller(nonce_store=SpentNonces())
    async with seller.client() as http:
        with pytest.raises(ReplayError) as excinfo:
            await _client(http, policy, ledger).post(URL)

    assert excinfo.value.code == "NONCE_ALREADY_USED"
    assert ledger.payments() == []


@pytest.mark.anyio
async def test_signer_failure_raises_signing_error(make_seller, policy, ledger):
    class BrokenSigner(Signer):
        async def get_address(self):
            return "0x2222222222222222222222222222222222222222"

        async def sign_payment(self, authorization):
            raise RuntimeError("wallet locked")

    seller = make_seller()
    async with seller.client() as http:
        client = PaymentClient(policy, BrokenSigner(), ledger, "agent-1", http_client=http, strict_budget=True)
        with pytest.raises(SigningError):
            await client.post(URL)

    assert ledger.get_spend_context("agent-1").daily_spent_usd == Decimal("0")


@pytest.mark.anyio
async def test_missing_challenge_is_protocol_error(policy, ledger):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(402)))
    async with http:
        with pytest.raises(ProtocolError):
            await _client(http, policy, ledger).get(URL)


@pytest.mark.anyio
async def test_initial_transport_failure(policy, ledger):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(TransportError):
            await _client(http, policy, ledger).get(URL)


@pytest.mark.anyio
async def test_paid_retry_transport_failure_exhausts_budget(paywall_config, policy, ledger):
    attempts = []

    def paid(request):
        attempts.append(request)
        raise httpx.ReadError("connection reset", request=request)

    async with _mock_seller(paywall_config, paid) as http:
        client = _client(http, policy, ledger, max_retries=2, strict_budget=True)
        with pytest.raises(TransportError) as excinfo:
            await client.post(URL)

    assert excinfo.value.details == {"attempts": 2}
    assert len(attempts) == 2
    assert ledger.get_spend_context("agent-1").daily_spent_usd == Decimal("0")


@pytest.mark.anyio
async def test_discrete_headers_are_enough_to_pay(paywall_config, policy, ledger):
    seen = []

    def paid(request):
        seen.append(decode_proof(request.headers[PAYMENT_HEADER]))
        return httpx.Response(200, json={"ok": True})

    pricing = resolve_pricing("/api/premium", paywall_config)
    challenge = build_challenge(pricing, paywall_config, "nonce_discrete", 4_000_000_000, resource=URL)
    headers = challenge_headers(challenge, pricing)
    del headers[PAYMENT_REQUIRED_HEADER]

    def handler(request):
        if PAYMENT_HEADER not in request.headers:
            return httpx.Response(402, headers=headers)
        return paid(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        result = await _client(http, policy, ledger).post(URL)

    assert result.paid
    assert result.receipt_id is None
    assert seen[0].nonce == "nonce_discrete"
    assert seen[0].amount == 50_000
    assert seen[0].chain_id == 84532


@pytest.mark.anyio
async def test_amount_above_advertised_price_is_refused(paywall_config, policy, ledger):
    paid = []
    pricing = resolve_pricing("/api/premium", paywall_config)
    challenge = build_challenge(pricing, paywall_config, "nonce_inflated", 4_000_000_000, resource=URL)
    # $0.05 advertised, $5.00 requested in base units.
    inflated = challenge.model_copy(update={"max_amount_required": 5_000_000})

    def handler(request):
        if PAYMENT_HEADER not in request.headers:
            return httpx.Response(402, headers=challenge_headers(inflated, pricing))
        paid.append(request)
        return httpx.Response(200, json={"ok": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(ProtocolError) as excinfo:
            await _client(http, policy, ledger).post(URL)

    assert excinfo.value.code == "PRICE_MISMATCH"
    assert paid == []
    assert ledger.payments() == []


@pytest.mark.anyio
async def test_server_error_after_payment_is_returned_unpaid(paywall_config, policy, ledger):
    async with _mock_seller(paywall_config, lambda request: httpx.Response(503)) as http:
        result = await _client(http, policy, ledger).post(URL)

    assert result.paid is False
    assert result.status_code == 503
    assert ledger.payments() == []


@pytest.mark.anyio
async def test_strict_budget_with_sql_ledger(make_seller):
    policy = Policy(id="strict", daily_cap_usd=Decimal("0.10"), per_call_cap_usd=Decimal("0.05"))
    ledger = SqlSpendLedger()
    seller = make_seller()
    async with seller.client() as http:
        client = _client(http, policy, ledger, strict_budget=True)
        assert (await client.post(URL)).paid
        assert (await client.post(URL)).paid
        with pytest.raises(PolicyBlockedError) as excinfo:
            await client.post(URL)

    assert excinfo.value.code == "daily_cap"
    assert len(seller.calls) == 2
    context = ledger.get_spend_context("agent-1")
    assert context.daily_spent_usd == Decimal("0.10")
    assert context.daily_call_count == 2


@pytest.mark.anyio
async def test_refused_reservation_is_reported(make_seller, policy):
    class FullLedger(InMemorySpendLedger):
        def reserve(self, caller_id, amount_usd, policy, *, endpoint=""):
            return None

    ledger = FullLedger()
    seller = make_seller()
    async with seller.client() as http:
        with pytest.raises(PolicyBlockedError) as excinfo:
            await _client(http, policy, ledger, strict_budget=True).post(URL)

    assert excinfo.value.code == "BUDGET_RESERVATION_FAILED"
    assert seller.calls == []


@pytest.mark.anyio
async def test_check_payment_required(make_seller, policy, ledger):
    seller = make_seller()
    async with seller.client() as http:
        client = _client(http, policy, ledger)
        assert await client.check_payment_required("http://seller.test/api/free") is None


def test_max_retries_must_be_positive(policy, ledger):
    with pytest.raises(ValueError):
        PaymentClient(policy, MockSigner(), ledger, "agent-1", max_retries=0)


@pytest.mark.anyio
async def test_from_settings_applies_overrides(policy, ledger):
    async with PaymentClient.from_settings(policy, MockSigner(), ledger, "agent-1", auto_pay=False) as client:
        assert client.auto_pay is False
        assert client.max_retries == 1
