"""Seller-side paywall: challenge, verify, replay-check, serve, receipt.

A request moves through these states::

    UNPRICED          -> PASSTHROUGH
    PRICED_NO_PROOF   -> CHALLENGE_ISSUED (402)
    PRICED_WITH_PROOF -> VERIFIED -> HANDLER_INVOKED -> RECEIPT_STORED
                      -> REJECTED (400 malformed/replayed, 402 unverifiable)
"""
from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timezone
from typing import Any

import anyio
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTasks
from starlette.concurrency import run_in_threadpool
from starlette.responses import FileResponse, Response, StreamingResponse

from policykit.schemas.protocol import (
    EndpointPricing,
    PaymentProof,
    PaywallConfig,
    PaywallContext,
    Settlement,
    VerificationResult,
)
from policykit.schemas.receipt import ReceiptCreate
from policykit.services.codec import (
    PAYMENT_RESPONSE_HEADER,
    RECEIPT_ID_HEADER,
    build_challenge,
    challenge_headers,
    content_hash,
    decode_proof,
    encode_settlement,
    read_proof_header,
)
from policykit.services.nonces import InMemoryNonceStore, NonceStore, SqlNonceStore
from policykit.services.pricing import resolve_pricing
from policykit.services.receipts import ReceiptStore, SqlReceiptStore
from policykit.services.verification import verify_proof
from policykit.utils.errors import ProtocolError, error_response
from policykit.utils.ids import generate_id
from policykit.utils.networks import chain_id_to_network
from policykit.utils.time import unix_now

logger = logging.getLogger(__name__)

PaidHandler = Callable[[Request, PaywallContext], Awaitable[Any] | Any]

# Leading characters of the signature used as the receipt payment reference.
PAYMENT_REF_LENGTH = 32


async def _call_handler(handler: PaidHandler, request: Request, context: PaywallContext) -> Response:
    if inspect.iscoroutinefunction(handler):
        result = await handler(request, context)
    else:
        result = await run_in_threadpool(handler, request, context)
    if isinstance(result, Response):
        return result
    return JSONResponse(content=jsonable_encoder(result))


async def _buffer_body(response: Response) -> tuple[Response, bytes]:
    """Return a response whose body can be hashed, draining streams and files if needed."""

    if isinstance(response, FileResponse):
        body = await anyio.Path(response.path).read_bytes()
    elif isinstance(response, StreamingResponse):
        chunks = []
        async for chunk in response.body_iterator:
            chunks.append(chunk if isinstance(chunk, bytes) else chunk.encode(response.charset))
        body = b"".join(chunks)
    elif hasattr(response, "body"):
        return response, bytes(response.body)
    else:
        raise TypeError(f"Cannot hash the body of {type(response).__name__} for a paid response.")

    headers = {key: value for key, value in response.headers.items() if key.lower() != "content-length"}
    buffered = Response(
        content=body,
        status_code=response.status_code,
        headers=headers,
        background=response.background,
    )
    return buffered, body


class Paywall:
    """Per-request payment gate for FastAPI endpoints."""

    def __init__(
        self,
        config: PaywallConfig,
        nonce_store: NonceStore | None = None,
        receipt_store: ReceiptStore | None = None,
        *,
        clock: Callable[[], int] = unix_now,
    ) -> None:
        self.config = config
        self.nonce_store = nonce_store if nonce_store is not None else InMemoryNonceStore()
        self.receipt_store = receipt_store
        self._clock = clock
        if receipt_store is None:
            logger.warning("Paywall has no receipt store; paid requests will not be recorded")

    def pricing_for(self, path: str) -> EndpointPricing | None:
        return resolve_pricing(path, self.config)

    async def process(self, request: Request, handler: PaidHandler) -> Response:
        path = request.url.path
        pricing = self.pricing_for(path)
        if pricing is None:
            return await _call_handler(handler, request, PaywallContext(paid=False))

        now = self._clock()
        nonce = generate_id("nonce")
        expiry = now + self.config.expiry_seconds

        raw_proof = read_proof_header(request.headers)
        if not raw_proof:
            logger.info("Payment required", extra={"endpoint": path, "price_usd": str(pricing.price_usd)})
            return self._challenge_response(request, pricing, nonce, expiry)

        try:
            proof = decode_proof(raw_proof)
        except ProtocolError as exc:
            logger.warning("Rejected malformed payment header", extra={"endpoint": path, "reason": exc.message})
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=error_response("INVALID_PAYMENT_HEADER", exc.message, exc.details or None),
            )

        verification = verify_proof(proof, pricing, self.config, now=now)
        if not verification.valid:
            logger.info(
                "Payment verification failed",
                extra={"endpoint": path, "check": verification.code, "nonce": proof.nonce},
            )
            return self._challenge_response(request, pricing, nonce, expiry, verification=verification)

        if self.config.check_replay and not await anyio.to_thread.run_sync(
            self.nonce_store.claim, proof.nonce, self.config.nonce_ttl_seconds
        ):
            logger.warning("Replayed payment nonce", extra={"endpoint": path, "nonce": proof.nonce})
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=error_response(
                    "NONCE_ALREADY_USED",
                    "Payment nonce already used.",
                    {"nonce": proof.nonce},
                ),
            )

        receipt_id = generate_id("rcpt")
        context = PaywallContext(
            paid=True,
            price_usd=pricing.price_usd,
            nonce=proof.nonce,
            proof=proof,
            receipt_id=receipt_id,
        )

        request_body = await request.body()
        request_hash = content_hash(
            {
                "method": request.method,
                "url": str(request.url),
                "body": request_body.decode("utf-8", errors="replace"),
            }
        )

        response = await _call_handler(handler, request, context)
        response, response_body = await _buffer_body(response)
        response_hash = content_hash(
            {"status": response.status_code, "body": response_body.decode("utf-8", errors="replace")}
        )

        logger.info(
            "Paid request served",
            extra={
                "endpoint": path,
                "receipt_id": receipt_id,
                "nonce": proof.nonce,
                "price_usd": str(pricing.price_usd),
                "status_code": response.status_code,
            },
        )

        self._attach_settlement_headers(response, proof, receipt_id, now)
        if self.receipt_store is not None:
            receipt = ReceiptCreate(
                receipt_id=receipt_id,
                call_id=generate_id("call"),
                payment_ref=proof.signature[:PAYMENT_REF_LENGTH],
                endpoint=path,
                amount_usd=pricing.price_usd,
                asset=proof.asset,
                chain_id=proof.chain_id,
                seller=self.config.seller_address,
                buyer=proof.payer,
                nonce=proof.nonce,
                expiry=datetime.fromtimestamp(proof.expiry, tz=timezone.utc),
                signature=proof.signature,
                request_hash=request_hash,
                response_hash=response_hash,
                settlement_ref=proof.settlement_ref,
                verified=True,
            )
            tasks = BackgroundTasks()
            if response.background is not None:
                tasks.add_task(response.background)
            tasks.add_task(self._store_receipt, receipt)
            response.background = tasks
        return response

    def protect(self, handler: PaidHandler) -> Callable[[Request], Awaitable[Response]]:
        """Wrap ``handler(request, paywall_ctx)`` as a FastAPI endpoint."""

        async def endpoint(request: Request) -> Response:
            return await self.process(request, handler)

        endpoint.__name__ = getattr(handler, "__name__", "paid_endpoint")
        endpoint.__doc__ = handler.__doc__
        return endpoint

    def route(
        self,
        router: APIRouter | FastAPI,
        path: str,
        *,
        methods: Sequence[str] = ("POST",),
        **kwargs: Any,
    ) -> Callable[[PaidHandler], PaidHandler]:
        """Decorator registering a protected handler on ``router``."""

        def decorator(handler: PaidHandler) -> PaidHandler:
            router.add_api_route(path, self.protect(handler), methods=list(methods), **kwargs)
            return handler

        return decorator

    def _challenge_response(
        self,
        request: Request,
        pricing: EndpointPricing,
        nonce: str,
        expiry: int,
        *,
        verification: VerificationResult | None = None,
    ) -> JSONResponse:
        challenge = build_challenge(pricing, self.config, nonce, expiry, resource=str(request.url))
        details: dict[str, Any] = {
            "paymentRequirements": challenge.model_dump(mode="json", by_alias=True, exclude_none=True),
        }
        message = f"This endpoint requires payment of ${pricing.price_usd:.4f} USD"
        if verification is not None:
            details["verification"] = verification.code
            details["reason"] = verification.reason
            message = f"Payment rejected: {verification.reason}"
        return JSONResponse(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            content=error_response("PAYMENT_REQUIRED", message, details),
            headers=challenge_headers(challenge, pricing),
        )

    def _attach_settlement_headers(self, response: Response, proof: PaymentProof, receipt_id: str, now: int) -> None:
        try:
            settlement = Settlement(
                success=True,
                receipt_id=receipt_id,
                network=chain_id_to_network(proof.chain_id),
                payer=proof.payer,
                settlement_ref=proof.settlement_ref,
                settled_at=now,
            )
            response.headers[RECEIPT_ID_HEADER] = receipt_id
            response.headers[PAYMENT_RESPONSE_HEADER] = encode_settlement(settlement)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to attach settlement headers", extra={"receipt_id": receipt_id})

    def _store_receipt(self, receipt: ReceiptCreate) -> None:
        assert self.receipt_store is not None
        try:
            self.receipt_store.store(receipt)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Failed to store receipt",
                extra={"receipt_id": receipt.receipt_id, "nonce": receipt.nonce},
            )


def build_paywall(config: PaywallConfig | None = None) -> Paywall:
    """Paywall backed by the SQL nonce and receipt stores."""

    return Paywall(
        config or PaywallConfig.from_settings(),
        nonce_store=SqlNonceStore(),
        receipt_store=SqlReceiptStore(),
    )


__all__ = ["PaidHandler", "Paywall", "build_paywall"]
