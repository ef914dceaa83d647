"""Policy editor endpoints: validate a document and preview a decision."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body

from policykit.schemas.policy import EvaluateIn, PolicyDecision, SpendContext
from policykit.services.evaluator import evaluate_policy, parse_payment_request
from policykit.services.policies import load_policy, validate_policy

router = APIRouter(prefix="/policy", tags=["policy"])
logger = logging.getLogger(__name__)


@router.post("/validate")
def validate(document: dict[str, Any] = Body(...)) -> dict[str, object]:
    valid, errors = validate_policy(document)
    return {"valid": valid, "errors": errors}


@router.post("/evaluate", response_model=PolicyDecision)
def evaluate(payload: EvaluateIn) -> PolicyDecision:
    """Evaluate a hypothetical charge; nothing is recorded."""

    policy = load_policy(payload.policy)
    request = parse_payment_request(payload.url, payload.price_usd, payload.caller_id)
    context = SpendContext(
        caller_id=payload.caller_id,
        daily_spent_usd=payload.daily_spent_usd,
        weekly_spent_usd=payload.weekly_spent_usd,
        daily_call_count=payload.daily_call_count,
    )
    decision = evaluate_policy(policy, request, context, full_trace=payload.full_trace)
    logger.info(
        "Policy preview evaluated",
        extra={"policy_id": policy.id, "allow": decision.allow, "rule_id": decision.rule_id},
    )
    return decision
