"""Encoding of challenges, proofs and settlements into HTTP headers.

Every structured header value is base64 over compact, key-sorted JSON that
carries an ``x402Version`` tag.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from policykit.schemas.protocol import (
    X402_VERSION,
    ChallengeExtra,
    EndpointPricing,
    PaymentChallenge,
    PaymentProof,
    PaywallConfig,
    Settlement,
)
from policykit.services.pricing import base_units_to_usd
from policykit.utils.errors import ProtocolError
from policykit.utils.networks import chain_id_to_network, network_to_chain_id

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = frozenset({X402_VERSION})

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_SIGNATURE_HEADER = "PAYMENT-SIGNATURE"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"
RECEIPT_ID_HEADER = "X-RECEIPT-ID"

ModelT = TypeVar("ModelT", bound=BaseModel)


def canonical_json(payload: Any) -> str:
    """Compact, key-sorted JSON used for hashing and header encoding."""

    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def content_hash(payload: Any) -> str:
    """SHA-256 hex digest of the canonical JSON of ``payload``."""

    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def _encode(model: BaseModel) -> str:
    payload = model.model_dump(mode="json", by_alias=True, exclude_none=True)
    return base64.b64encode(canonical_json(payload).encode("utf-8")).decode("ascii")


def _decode(value: str, model: type[ModelT], label: str) -> ModelT:
    if not value or not value.strip():
        raise ProtocolError(f"Empty {label} header.")
    try:
        raw = base64.b64decode(value.strip(), validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"Malformed {label} header: not base64 JSON.") from exc

    if not isinstance(payload, dict):
        raise ProtocolError(f"Malformed {label} header: expected a JSON object.")

    version = payload.get("x402Version", X402_VERSION)
    if version not in SUPPORTED_VERSIONS:
        raise ProtocolError(
            f"Unsupported {label} version: {version!r}.",
            details={"version": version},
        )

    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in err["loc"]) for err in exc.errors()})
        raise ProtocolError(
            f"Malformed {label} header: invalid or missing {', '.join(fields)}.",
            details={"fields": fields},
        ) from exc


def build_challenge(
    pricing: EndpointPricing,
    config: PaywallConfig,
    nonce: str,
    expiry: int,
    resource: str,
) -> PaymentChallenge:
    """Build the payment requirements for one priced request."""

    return PaymentChallenge(
        scheme=pricing.schemes[0] if pricing.schemes else "exact",
        network=chain_id_to_network(pricing.chain_id),
        max_amount_required=pricing.price_in_asset_units,
        resource=resource,
        description=pricing.description or f"Payment of ${pricing.price_usd:.4f} USD",
        mime_type="application/json",
        pay_to=config.seller_address,
        max_timeout_seconds=config.expiry_seconds,
        asset=pricing.asset,
        extra=ChallengeExtra(price_usd=pricing.price_usd, nonce=nonce, expiry=expiry),
    )


def encode_challenge(challenge: PaymentChallenge) -> str:
    return _encode(challenge)


def decode_challenge(value: str) -> PaymentChallenge:
    challenge = _decode(value, PaymentChallenge, PAYMENT_REQUIRED_HEADER)
    # Validates the network identifier; raises on malformed values.
    network_to_chain_id(challenge.network)
    return challenge


def challenge_headers(challenge: PaymentChallenge, pricing: EndpointPricing) -> dict[str, str]:
    """Return ``PAYMENT-REQUIRED`` plus the discrete fallback headers."""

    headers = {
        PAYMENT_REQUIRED_HEADER: encode_challenge(challenge),
        "X-PRICE": str(pricing.price_in_asset_units),
        "X-PRICE-USD": str(pricing.price_usd),
        "X-TOKEN": pricing.asset,
        "X-SELLER": challenge.pay_to,
        "X-CHAIN-ID": str(pricing.chain_id),
        "X-NETWORK": challenge.network,
        "X-EXPIRY": str(challenge.expiry),
        "X-NONCE": challenge.nonce,
    }
    if pricing.description:
        headers["X-DESCRIPTION"] = pricing.description
    if pricing.schemes:
        headers["X-SCHEMES"] = ",".join(pricing.schemes)
    return headers


def _challenge_from_discrete(headers: Mapping[str, str], resource: str) -> PaymentChallenge | None:
    required = ("x-price", "x-token", "x-seller", "x-expiry", "x-nonce")
    if any(not headers.get(name) for name in required):
        return None

    try:
        network = headers.get("x-network")
        if not network:
            network = chain_id_to_network(int(headers.get("x-chain-id", "")))
        amount = int(headers["x-price"])
        if headers.get("x-price-usd"):
            price_usd = Decimal(headers["x-price-usd"])
        else:
            price_usd = base_units_to_usd(amount)
        schemes = [s.strip() for s in headers.get("x-schemes", "").split(",") if s.strip()]
        challenge = PaymentChallenge(
            scheme=schemes[0] if schemes else "exact",
            network=network,
            max_amount_required=amount,
            resource=resource,
            description=headers.get("x-description", ""),
            pay_to=headers["x-seller"],
            asset=headers["x-token"],
            extra=ChallengeExtra(
                price_usd=price_usd,
                nonce=headers["x-nonce"],
                expiry=int(headers["x-expiry"]),
            ),
        )
        network_to_chain_id(challenge.network)
    except (ValueError, InvalidOperation, ValidationError, ProtocolError):
        logger.warning("Discarding malformed discrete challenge headers", extra={"resource": resource})
        return None
    return challenge


def parse_challenge_headers(headers: Mapping[str, str], resource: str = "") -> PaymentChallenge | None:
    """Extract the challenge from a 402 response.

    ``PAYMENT-REQUIRED`` is preferred; the discrete ``X-*`` headers are the
    fallback. Returns ``None`` when neither yields a usable challenge.
    """

    lowered = {key.lower(): value for key, value in headers.items()}
    encoded = lowered.get(PAYMENT_REQUIRED_HEADER.lower())
    if encoded:
        try:
            return decode_challenge(encoded)
        except ProtocolError as exc:
            logger.warning(
                "Ignoring undecodable PAYMENT-REQUIRED header",
                extra={"resource": resource, "reason": exc.message},
            )
    return _challenge_from_discrete(lowered, resource)


def encode_proof(proof: PaymentProof) -> str:
    return _encode(proof)


def decode_proof(value: str) -> PaymentProof:
    return _decode(value, PaymentProof, PAYMENT_HEADER)


def read_proof_header(headers: Mapping[str, str]) -> str | None:
    """Return the raw proof from ``X-PAYMENT`` or its ``PAYMENT-SIGNATURE`` alias."""

    lowered = {key.lower(): value for key, value in headers.items()}
    return lowered.get(PAYMENT_HEADER.lower()) or lowered.get(PAYMENT_SIGNATURE_HEADER.lower())


def encode_settlement(settlement: Settlement) -> str:
    return _encode(settlement)


def decode_settlement(value: str) -> Settlement:
    return _decode(value, Settlement, PAYMENT_RESPONSE_HEADER)


__all__ = [
    "PAYMENT_REQUIRED_HEADER",
    "PAYMENT_HEADER",
    "PAYMENT_SIGNATURE_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "RECEIPT_ID_HEADER",
    "SUPPORTED_VERSIONS",
    "canonical_json",
    "content_hash",
    "build_challenge",
    "encode_challenge",
    "decode_challenge",
    "challenge_headers",
    "parse_challenge_headers",
    "encode_proof",
    "decode_proof",
    "read_proof_header",
    "encode_settlement",
    "decode_settlement",
]
