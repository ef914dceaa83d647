"""Utility helpers for standardized error responses and payment errors."""
from __future__ import annotations

from typing import Any


def error_response(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return a standardized error payload."""

    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


class PaymentError(Exception):
    """Base class for every failure raised by the payment pipeline."""

    code = "PAYMENT_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_response(self) -> dict[str, Any]:
        return error_response(self.code, self.message, self.details or None)


class ProtocolError(PaymentError):
    """Malformed or missing challenge/proof. Never retried."""

    code = "PROTOCOL_ERROR"


class PolicyBlockedError(PaymentError):
    """The spending policy denied the charge; carries the decision and challenge."""

    code = "POLICY_BLOCKED"

    def __init__(self, message: str, *, decision: Any, challenge: Any, code: str | None = None) -> None:
        super().__init__(message, code=code or decision.rule_id, details={"rule_id": decision.rule_id})
        self.decision = decision
        self.challenge = challenge


class VerificationError(PaymentError):
    """The seller rejected the proof (price, asset, chain, expiry or signature)."""

    code = "VERIFICATION_FAILED"


class ReplayError(PaymentError):
    """The proof nonce was already spent."""

    code = "NONCE_ALREADY_USED"


class TransportError(PaymentError):
    """Network failure after the retry budget was exhausted."""

    code = "TRANSPORT_ERROR"


class SigningError(PaymentError):
    """The signing capability failed to authorise the payment."""

    code = "SIGNING_FAILED"


class PolicyValidationError(PaymentError):
    """A policy document failed validation at ingestion."""

    code = "INVALID_POLICY"


__all__ = [
    "error_response",
    "PaymentError",
    "ProtocolError",
    "PolicyBlockedError",
    "VerificationError",
    "ReplayError",
    "TransportError",
    "SigningError",
    "PolicyValidationError",
]
