"""Signing capability used by the payment client.

The client never sees key material: it hands a ``PaymentAuthorization`` to a
``Signer`` and gets back an opaque signature string.
"""
from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass

from policykit.services.verification import payment_message


@dataclass(frozen=True)
class PaymentAuthorization:
    payee: str
    amount: int
    asset: str
    chain_id: int
    nonce: str
    expiry: int

    def message(self) -> str:
        return payment_message(
            payee=self.payee,
            amount=self.amount,
            asset=self.asset,
            chain_id=self.chain_id,
            nonce=self.nonce,
            expiry=self.expiry,
        )


class Signer(ABC):
    """Wallet adapter."""

    @abstractmethod
    async def get_address(self) -> str:
        ...

    @abstractmethod
    async def sign_payment(self, authorization: PaymentAuthorization) -> str:
        ...

    async def submit_payment(self, authorization: PaymentAuthorization) -> str | None:
        """Optionally settle on-chain and return a transaction reference."""

        return None


class MockSigner(Signer):
    """Deterministic signer for tests and local demos. Not cryptographically meaningful."""

    def __init__(self, key: str = "test") -> None:
        self._key = key
        self._address = "0x" + hashlib.sha256(f"address:{key}".encode()).hexdigest()[:40]

    async def get_address(self) -> str:
        return self._address

    async def sign_payment(self, authorization: PaymentAuthorization) -> str:
        message = f"{self._key}:{authorization.message()}".encode()
        r = hashlib.sha256(b"r" + message).hexdigest()
        s = hashlib.sha256(b"s" + message).hexdigest()
        return f"0x{r}{s}1b"


__all__ = ["PaymentAuthorization", "Signer", "MockSigner"]
