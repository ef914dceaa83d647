"""Caller-side payment orchestration.

``PaymentClient`` sends a request and, when the seller answers 402, decides
under the caller's policy whether to pay. An allowed charge is signed and the
request retried once with the proof attached; the outcome is recorded in the
injected spend ledger.
"""
from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import anyio
import httpx

from policykit.config import get_settings
from policykit.schemas.policy import PaymentRequest, Policy, PolicyDecision, RemainingBudget, SpendContext
from policykit.schemas.protocol import PaymentChallenge, PaymentProof, Settlement
from policykit.services.codec import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    RECEIPT_ID_HEADER,
    decode_settlement,
    encode_proof,
    parse_challenge_headers,
)
from policykit.services.evaluator import PolicyEvaluator, decision_to_log_entry, parse_payment_request
from policykit.services.ledger import Reservation, SpendLedger
from policykit.services.pricing import usd_to_base_units
from policykit.services.signing import PaymentAuthorization, Signer
from policykit.utils.errors import (
    PolicyBlockedError,
    ProtocolError,
    ReplayError,
    SigningError,
    TransportError,
    VerificationError,
)
from policykit.utils.networks import network_to_chain_id

logger = logging.getLogger(__name__)

# Leading characters of the signature recorded as the caller-side payment reference.
CLIENT_PAYMENT_REF_LENGTH = 16


@dataclass
class PaymentCallbacks:
    on_payment_required: Callable[[PaymentChallenge, PolicyDecision], None] | None = None
    on_payment_made: Callable[[PaymentProof], None] | None = None
    on_policy_blocked: Callable[[PolicyDecision], None] | None = None


@dataclass
class PaidResponse:
    """The final HTTP response plus what the client did to obtain it."""

    response: httpx.Response
    paid: bool
    proof: PaymentProof | None = None
    decision: PolicyDecision | None = None
    receipt_id: str | None = None
    settlement: Settlement | None = None

    @property
    def status_code(self) -> int:
        return self.response.status_code

    def json(self) -> Any:
        return self.response.json()


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {}
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    return {}


class PaymentClient:
    """Policy-gated HTTP client that pays for 402-protected resources."""

    def __init__(
        self,
        policy: Policy,
        signer: Signer,
        ledger: SpendLedger,
        caller_id: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        auto_pay: bool = True,
        max_retries: int = 1,
        strict_budget: bool = False,
        asset_decimals: int = 6,
        timeout: float = 30.0,
        callbacks: PaymentCallbacks | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.policy = policy
        self.signer = signer
        self.ledger = ledger
        self.caller_id = caller_id
        self.auto_pay = auto_pay
        self.max_retries = max_retries
        self.strict_budget = strict_budget
        self.asset_decimals = asset_decimals
        self.callbacks = callbacks or PaymentCallbacks()
        self.evaluator = PolicyEvaluator(policy, full_trace=True)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        policy: Policy,
        signer: Signer,
        ledger: SpendLedger,
        caller_id: str,
        **overrides: Any,
    ) -> "PaymentClient":
        settings = get_settings()
        options: dict[str, Any] = {
            "auto_pay": settings.CLIENT_AUTO_PAY,
            "max_retries": settings.CLIENT_MAX_RETRIES,
            "timeout": settings.CLIENT_TIMEOUT_SECONDS,
            "asset_decimals": settings.PAYWALL_ASSET_DECIMALS,
        }
        options.update(overrides)
        return cls(policy, signer, ledger, caller_id, **options)

    async def __aenter__(self) -> "PaymentClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _ledger(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await anyio.to_thread.run_sync(functools.partial(func, *args, **kwargs))

    async def get_spend_context(self) -> SpendContext:
        return await self._ledger(self.ledger.get_spend_context, self.caller_id)

    async def remaining_budget(self) -> RemainingBudget:
        context = await self.get_spend_context()
        return self.evaluator.get_remaining_budget(context)

    async def get(self, url: str, **kwargs: Any) -> PaidResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> PaidResponse:
        return await self.request("POST", url, **kwargs)

    async def check_payment_required(self, url: str) -> PaymentChallenge | None:
        """Probe ``url`` with HEAD and return its challenge, if any."""

        try:
            response = await self._http.head(url)
        except httpx.TransportError as exc:
            raise TransportError(f"Probe of {url} failed: {exc}") from exc
        if response.status_code != 402:
            return None
        return parse_challenge_headers(response.headers, resource=str(response.request.url))

    async def request(self, method: str, url: str, **kwargs: Any) -> PaidResponse:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise TransportError(f"Request to {url} failed: {exc}") from exc

        if response.status_code != 402:
            return PaidResponse(response=response, paid=False)

        resource = str(response.request.url)
        challenge = parse_challenge_headers(response.headers, resource=resource)
        if challenge is None:
            raise ProtocolError("Invalid 402 response: missing or malformed payment challenge.")
        chain_id = network_to_chain_id(challenge.network)
        if chain_id is None:
            raise ProtocolError(
                f"Unsupported payment network {challenge.network}.",
                details={"network": challenge.network},
            )
        self._check_amount(challenge)

        payment_request = parse_payment_request(resource, challenge.price_usd, self.caller_id)
        decision = await self._evaluate(payment_request)

        if self.callbacks.on_payment_required:
            self.callbacks.on_payment_required(challenge, decision)

        if not decision.allow:
            if self.callbacks.on_policy_blocked:
                self.callbacks.on_policy_blocked(decision)
            raise PolicyBlockedError(
                f"Payment blocked by policy: {decision.reason}",
                decision=decision,
                challenge=challenge,
            )

        if not self.auto_pay:
            raise PolicyBlockedError(
                "Payment required but auto-pay is disabled",
                decision=decision,
                challenge=challenge,
                code="AUTO_PAY_DISABLED",
            )

        reservation = None
        if self.strict_budget:
            reservation = await self._reserve(payment_request, challenge)

        try:
            proof = await self._sign(challenge, chain_id)
        except SigningError:
            await self._release(reservation)
            raise

        if self.callbacks.on_payment_made:
            self.callbacks.on_payment_made(proof)

        paid_response = await self._send_with_proof(method, url, proof, reservation, kwargs)
        return await self._settle(paid_response, payment_request, proof, decision, reservation)

    def _check_amount(self, challenge: PaymentChallenge) -> None:
        """Refuse challenges asking for more than the USD price the policy is evaluated on."""

        price_units = usd_to_base_units(challenge.price_usd, self.asset_decimals)
        if challenge.max_amount_required > price_units:
            logger.warning(
                "Challenge amount exceeds advertised price",
                extra={
                    "caller_id": self.caller_id,
                    "price_usd": str(challenge.price_usd),
                    "max_amount_required": challenge.max_amount_required,
                },
            )
            raise ProtocolError(
                f"Challenge asks for {challenge.max_amount_required} base units but advertises "
                f"${challenge.price_usd}.",
                code="PRICE_MISMATCH",
                details={
                    "price_usd": str(challenge.price_usd),
                    "max_amount_required": str(challenge.max_amount_required),
                },
            )

    async def _evaluate(self, payment_request: PaymentRequest) -> PolicyDecision:
        context = await self.get_spend_context()
        decision = self.evaluator.evaluate(payment_request, context)
        logger.info("Policy decision", extra={"caller_id": self.caller_id, **decision_to_log_entry(decision)})
        await self._ledger(
            self.ledger.record_decision,
            self.caller_id,
            decision,
            endpoint=payment_request.endpoint,
            price_usd=payment_request.price_usd,
        )
        return decision

    async def _reserve(self, payment_request: PaymentRequest, challenge: PaymentChallenge) -> Reservation:
        reservation = await self._ledger(
            self.ledger.reserve,
            self.caller_id,
            payment_request.price_usd,
            self.policy,
            endpoint=payment_request.endpoint,
        )
        if reservation is not None:
            return reservation

        # Another payment took the budget since the snapshot; decide again.
        decision = await self._evaluate(payment_request)
        if self.callbacks.on_policy_blocked:
            self.callbacks.on_policy_blocked(decision)
        if decision.allow:
            raise PolicyBlockedError(
                "Budget reservation refused",
                decision=decision,
                challenge=challenge,
                code="BUDGET_RESERVATION_FAILED",
            )
        raise PolicyBlockedError(
            f"Payment blocked by policy: {decision.reason}",
            decision=decision,
            challenge=challenge,
        )

    async def _release(self, reservation: Reservation | None) -> None:
        if reservation is not None:
            await self._ledger(self.ledger.release, reservation)

    async def _sign(self, challenge: PaymentChallenge, chain_id: int) -> PaymentProof:
        authorization = PaymentAuthorization(
            payee=challenge.pay_to,
            amount=challenge.max_amount_required,
            asset=challenge.asset,
            chain_id=chain_id,
            nonce=challenge.nonce,
            expiry=challenge.expiry,
        )
        try:
            signature = await self.signer.sign_payment(authorization)
            payer = await self.signer.get_address()
            settlement_ref = await self.signer.submit_payment(authorization)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Signer failed", extra={"caller_id": self.caller_id, "nonce": challenge.nonce})
            raise SigningError(f"Failed to generate payment: {exc}") from exc

        return PaymentProof(
            signature=signature,
            payer=payer,
            nonce=challenge.nonce,
            expiry=challenge.expiry,
            amount=challenge.max_amount_required,
            asset=challenge.asset,
            chain_id=chain_id,
            settlement_ref=settlement_ref,
        )

    async def _send_with_proof(
        self,
        method: str,
        url: str,
        proof: PaymentProof,
        reservation: Reservation | None,
        kwargs: dict[str, Any],
    ) -> httpx.Response:
        options = dict(kwargs)
        headers = httpx.Headers(options.pop("headers", None))
        encoded = encode_proof(proof)
        headers[PAYMENT_SIGNATURE_HEADER] = encoded
        headers[PAYMENT_HEADER] = encoded

        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._http.request(method, url, headers=headers, **options)
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "Paid retry failed",
                    extra={"caller_id": self.caller_id, "attempt": attempt, "nonce": proof.nonce},
                )

        await self._release(reservation)
        raise TransportError(
            f"Payment request failed after {self.max_retries} attempts",
            details={"attempts": self.max_retries},
        ) from last_error

    async def _settle(
        self,
        response: httpx.Response,
        payment_request: PaymentRequest,
        proof: PaymentProof,
        decision: PolicyDecision,
        reservation: Reservation | None,
    ) -> PaidResponse:
        if response.is_success:
            payment_ref = proof.signature[:CLIENT_PAYMENT_REF_LENGTH]
            if reservation is not None:
                await self._ledger(self.ledger.commit, reservation, nonce=proof.nonce, payment_ref=payment_ref)
            else:
                await self._ledger(
                    self.ledger.record_payment,
                    self.caller_id,
                    payment_request.price_usd,
                    endpoint=payment_request.endpoint,
                    nonce=proof.nonce,
                    payment_ref=payment_ref,
                )
            return PaidResponse(
                response=response,
                paid=True,
                proof=proof,
                decision=decision,
                receipt_id=response.headers.get(RECEIPT_ID_HEADER),
                settlement=self._read_settlement(response),
            )

        await self._release(reservation)
        error = _error_body(response)
        message = error.get("message") or f"Seller answered {response.status_code}"
        details = error.get("details") or {}

        if response.status_code == 402:
            raise VerificationError(
                message,
                code=details.get("verification") or VerificationError.code,
                details={"status_code": 402, **details},
            )
        if response.status_code == 400:
            if error.get("code") == ReplayError.code:
                raise ReplayError(message, details={"nonce": proof.nonce})
            raise ProtocolError(message, code=error.get("code") or ProtocolError.code, details=details)

        logger.warning(
            "Paid retry returned an error status",
            extra={"caller_id": self.caller_id, "status_code": response.status_code},
        )
        return PaidResponse(response=response, paid=False, proof=proof, decision=decision)

    def _read_settlement(self, response: httpx.Response) -> Settlement | None:
        encoded = response.headers.get(PAYMENT_RESPONSE_HEADER)
        if not encoded:
            return None
        try:
            return decode_settlement(encoded)
        except ProtocolError as exc:
            logger.warning("Ignoring undecodable PAYMENT-RESPONSE header", extra={"reason": exc.message})
            return None


__all__ = ["PaymentCallbacks", "PaidResponse", "PaymentClient", "CLIENT_PAYMENT_REF_LENGTH"]
