"""Verification of payment proofs against the advertised price."""
from __future__ import annotations

import re

from policykit.schemas.protocol import EndpointPricing, PaymentProof, PaywallConfig, VerificationResult
from policykit.services.codec import canonical_json
from policykit.utils.time import unix_now

# 65-byte ECDSA signature: r, s and v as hex.
_SIGNATURE_RE = re.compile(r"^0x[0-9a-fA-F]{130,}$")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

EXPIRED = "expired"
ASSET_MISMATCH = "asset_mismatch"
CHAIN_MISMATCH = "chain_mismatch"
INSUFFICIENT_AMOUNT = "insufficient_amount"
INVALID_SIGNATURE = "invalid_signature"


def _fail(code: str, reason: str) -> VerificationResult:
    return VerificationResult(valid=False, code=code, reason=reason)


def verify_proof(
    proof: PaymentProof,
    pricing: EndpointPricing,
    config: PaywallConfig,
    *,
    now: int | None = None,
) -> VerificationResult:
    """Check ``proof`` against ``pricing``; the first failing check wins."""

    current = unix_now() if now is None else now

    if current > proof.expiry:
        return _fail(EXPIRED, "Payment has expired")

    if proof.asset.lower() != pricing.asset.lower():
        return _fail(ASSET_MISMATCH, "Token mismatch")

    if proof.chain_id != pricing.chain_id:
        return _fail(CHAIN_MISMATCH, "Chain ID mismatch")

    if proof.amount < pricing.price_in_asset_units:
        return _fail(
            INSUFFICIENT_AMOUNT,
            f"Insufficient payment amount: {proof.amount} < {pricing.price_in_asset_units}",
        )

    if config.verify_signatures and not verify_signature_format(proof.signature):
        return _fail(INVALID_SIGNATURE, "Invalid signature")

    return VerificationResult(valid=True)


def verify_signature_format(signature: str) -> bool:
    """Structural check only; the signer is not recovered."""

    return bool(_SIGNATURE_RE.match(signature or ""))


def payment_message(
    *,
    payee: str,
    amount: int,
    asset: str,
    chain_id: int,
    nonce: str,
    expiry: int,
) -> str:
    """Canonical message a caller signs to authorise a payment."""

    return canonical_json(
        {
            "seller": payee.lower(),
            "amount": str(amount),
            "token": asset.lower(),
            "chainId": chain_id,
            "nonce": nonce,
            "expiry": expiry,
        }
    )


def is_valid_address(address: str) -> bool:
    return bool(_ADDRESS_RE.match(address or ""))


def normalize_address(address: str) -> str:
    return address.lower()


__all__ = [
    "EXPIRED",
    "ASSET_MISMATCH",
    "CHAIN_MISMATCH",
    "INSUFFICIENT_AMOUNT",
    "INVALID_SIGNATURE",
    "verify_proof",
    "verify_signature_format",
    "payment_message",
    "is_valid_address",
    "normalize_address",
]
