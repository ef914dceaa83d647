"""Schema package exports."""
from .policy import (
    EvaluateIn,
    PaymentRequest,
    Policy,
    PolicyDecision,
    RemainingBudget,
    RuleTrace,
    SpendContext,
    SpendStats,
)
from .protocol import (
    CatalogEntry,
    EndpointPricing,
    PaymentChallenge,
    PaymentProof,
    PaywallConfig,
    PaywallContext,
    PricingEntry,
    Settlement,
    VerificationResult,
)
from .receipt import ReceiptCreate, ReceiptExport, ReceiptExportItem, ReceiptRead, ReceiptStats

__all__ = [
    "CatalogEntry",
    "EndpointPricing",
    "EvaluateIn",
    "PaymentChallenge",
    "PaymentProof",
    "PaymentRequest",
    "PaywallConfig",
    "PaywallContext",
    "Policy",
    "PolicyDecision",
    "PricingEntry",
    "ReceiptCreate",
    "ReceiptExport",
    "ReceiptExportItem",
    "ReceiptRead",
    "ReceiptStats",
    "RemainingBudget",
    "RuleTrace",
    "Settlement",
    "SpendContext",
    "SpendStats",
    "VerificationResult",
]
