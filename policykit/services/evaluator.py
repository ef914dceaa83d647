"""Policy evaluation: runs the rule chain and builds the decision record."""
from __future__ import annotations

from collections.abc import Sequence
from decimal import ROUND_DOWN, Decimal
from typing import Any
from urllib.parse import urlsplit

from policykit.schemas.policy import (
    PaymentRequest,
    Policy,
    PolicyDecision,
    RemainingBudget,
    RuleTrace,
    SpendContext,
    SpendStats,
)
from policykit.services.policies import DEFAULT_POLICY
from policykit.services.rules import ALL_RULES, RuleFunction

ZERO = Decimal("0")
ALL_PASSED = "all_passed"


def evaluate_policy(
    policy: Policy,
    request: PaymentRequest,
    context: SpendContext,
    *,
    full_trace: bool = False,
    rules: Sequence[RuleFunction] = ALL_RULES,
) -> PolicyDecision:
    """Evaluate ``request`` against ``policy`` given the caller's ``context``.

    In short-circuit mode the trace stops at the first failing rule; with
    ``full_trace`` every rule runs. ``allow``/``reason``/``rule_id`` always
    reflect the first failure in rule order.
    """

    trace: list[RuleTrace] = []
    failed: RuleTrace | None = None

    for rule in rules:
        result = rule(policy, request, context)
        trace.append(result)
        if not result.passed:
            if failed is None:
                failed = result
            if not full_trace:
                break

    projected = context.daily_spent_usd + request.price_usd
    remaining_weekly = None
    if policy.weekly_cap_usd is not None:
        remaining_weekly = max(ZERO, policy.weekly_cap_usd - (context.weekly_spent_usd + request.price_usd))

    return PolicyDecision(
        allow=failed is None,
        reason=failed.reason if failed else "All policy rules passed",
        rule_id=failed.rule_id if failed else ALL_PASSED,
        projected_spend=projected,
        current_daily_spend=context.daily_spent_usd,
        current_weekly_spend=context.weekly_spent_usd,
        remaining_daily_budget=max(ZERO, policy.daily_cap_usd - projected),
        remaining_weekly_budget=remaining_weekly,
        policy_id=policy.id,
        trace=trace,
    )


class PolicyEvaluator:
    """Evaluator bound to a default policy and trace mode."""

    def __init__(
        self,
        default_policy: Policy = DEFAULT_POLICY,
        *,
        full_trace: bool = False,
        rules: Sequence[RuleFunction] = ALL_RULES,
    ) -> None:
        self.default_policy = default_policy
        self.full_trace = full_trace
        self.rules = tuple(rules)

    def evaluate(
        self,
        request: PaymentRequest,
        context: SpendContext,
        policy: Policy | None = None,
    ) -> PolicyDecision:
        return evaluate_policy(
            policy if policy is not None else self.default_policy,
            request,
            context,
            full_trace=self.full_trace,
            rules=self.rules,
        )

    def is_allowed(
        self,
        request: PaymentRequest,
        context: SpendContext,
        policy: Policy | None = None,
    ) -> bool:
        """Boolean fast path; always short-circuits."""

        policy = policy if policy is not None else self.default_policy
        decision = evaluate_policy(policy, request, context, full_trace=False, rules=self.rules)
        return decision.allow

    def get_remaining_budget(self, context: SpendContext, policy: Policy | None = None) -> RemainingBudget:
        policy = policy if policy is not None else self.default_policy
        weekly = None
        if policy.weekly_cap_usd is not None:
            weekly = max(ZERO, policy.weekly_cap_usd - context.weekly_spent_usd)
        return RemainingBudget(
            daily=max(ZERO, policy.daily_cap_usd - context.daily_spent_usd),
            weekly=weekly,
        )

    def get_max_allowed_price(
        self,
        endpoint: str,
        context: SpendContext,
        policy: Policy | None = None,
    ) -> Decimal:
        """Tightest of per-call cap, remaining daily and remaining weekly budget."""

        policy = policy if policy is not None else self.default_policy
        candidates = [
            policy.per_call_cap_for(endpoint),
            policy.daily_cap_usd - context.daily_spent_usd,
        ]
        if policy.weekly_cap_usd is not None:
            candidates.append(policy.weekly_cap_usd - context.weekly_spent_usd)
        return max(ZERO, min(candidates))


def create_spend_context(caller_id: str) -> SpendContext:
    """Return an empty spend context for a new caller."""

    return SpendContext(caller_id=caller_id)


def parse_payment_request(
    url: str,
    price_usd: Decimal,
    caller_id: str,
    metadata: dict[str, Any] | None = None,
) -> PaymentRequest:
    """Build a ``PaymentRequest`` from the URL being paid for.

    The tool is the last non-empty path segment, ``unknown`` for the root.
    """

    parts = urlsplit(url)
    segments = [segment for segment in parts.path.split("/") if segment]
    return PaymentRequest(
        endpoint=parts.path or "/",
        tool=segments[-1] if segments else "unknown",
        domain=(parts.hostname or "").lower(),
        price_usd=Decimal(price_usd),
        caller_id=caller_id,
        metadata=metadata,
    )


def format_decision(decision: PolicyDecision) -> str:
    """Return a human-readable multi-line summary of a decision."""

    status = "ALLOWED" if decision.allow else "BLOCKED"
    marker = "+" if decision.allow else "X"
    lines = [
        f"[{marker}] {status}: {decision.reason}",
        f"    Rule: {decision.rule_id}",
        f"    Projected spend: ${decision.projected_spend:.4f}",
        f"    Remaining daily: ${decision.remaining_daily_budget:.4f}",
    ]
    if decision.remaining_weekly_budget is not None:
        lines.append(f"    Remaining weekly: ${decision.remaining_weekly_budget:.4f}")
    return "\n".join(lines)


def decision_to_log_entry(decision: PolicyDecision) -> dict[str, Any]:
    """Compact structured form used for JSON logs."""

    return {
        "allow": decision.allow,
        "reason": decision.reason,
        "rule_id": decision.rule_id,
        "projected_spend_usd": str(decision.projected_spend),
        "remaining_daily_usd": str(decision.remaining_daily_budget),
        "remaining_weekly_usd": (
            str(decision.remaining_weekly_budget) if decision.remaining_weekly_budget is not None else None
        ),
        "policy_id": decision.policy_id,
        "timestamp": decision.timestamp.isoformat(),
    }


def calculate_spend_stats(context: SpendContext, policy: Policy) -> SpendStats:
    hundred = Decimal("100")
    daily_pct = ZERO
    if policy.daily_cap_usd > ZERO:
        daily_pct = context.daily_spent_usd / policy.daily_cap_usd * hundred
    weekly_pct = None
    if policy.weekly_cap_usd:
        weekly_pct = context.weekly_spent_usd / policy.weekly_cap_usd * hundred

    average = ZERO
    if context.daily_call_count > 0:
        average = context.daily_spent_usd / context.daily_call_count

    remaining = max(ZERO, policy.daily_cap_usd - context.daily_spent_usd)
    divisor = average if average > ZERO else policy.per_call_cap_usd
    calls_remaining = 0
    if divisor > ZERO:
        calls_remaining = int((remaining / divisor).to_integral_value(rounding=ROUND_DOWN))

    return SpendStats(
        daily_usage_percent=daily_pct,
        weekly_usage_percent=weekly_pct,
        average_per_call=average,
        calls_remaining=calls_remaining,
    )


__all__ = [
    "ALL_PASSED",
    "evaluate_policy",
    "PolicyEvaluator",
    "create_spend_context",
    "parse_payment_request",
    "format_decision",
    "decision_to_log_entry",
    "calculate_spend_stats",
]
