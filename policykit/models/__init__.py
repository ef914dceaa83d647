"""ORM models package."""
from .base import Base
from .nonce import UsedNonce
from .receipt import Receipt
from .spend import CallStatus, DailySpend, PolicyDecisionRecord, SpendCall

__all__ = [
    "Base",
    "CallStatus",
    "DailySpend",
    "PolicyDecisionRecord",
    "Receipt",
    "SpendCall",
    "UsedNonce",
]
