"""Rule engine for policy evaluation.

Each rule is a pure function ``(policy, request, context) -> RuleTrace``. Rules
never look at the clock or at storage, so a trace can be replayed from its
inputs. Rule ids:

  - policy_enabled   : policy switched off
  - tool_denylist    : tool explicitly denied
  - domain_denylist  : domain (or a parent domain) explicitly denied
  - tool_allowlist   : tool missing from a non-empty allowlist
  - domain_allowlist : domain missing from a non-empty allowlist
  - per_call_cap     : price above the endpoint or global per-call cap
  - daily_cap        : projected daily spend above the daily cap
  - weekly_cap       : projected weekly spend above the weekly cap
"""
from __future__ import annotations

from collections.abc import Callable, Sequence

from policykit.schemas.policy import PaymentRequest, Policy, RuleTrace, SpendContext

RuleFunction = Callable[[Policy, PaymentRequest, SpendContext], RuleTrace]


def _usd(value) -> str:
    return f"${value:.4f}"


def _domain_matches(domain: str, entries: Sequence[str]) -> bool:
    domain = domain.lower()
    return any(domain == entry or domain.endswith(f".{entry}") for entry in entries)


def policy_enabled_rule(policy: Policy, request: PaymentRequest, context: SpendContext) -> RuleTrace:
    return RuleTrace(
        rule_id="policy_enabled",
        rule_name="Policy Enabled Check",
        passed=policy.enabled,
        reason="Policy is enabled" if policy.enabled else "Policy is disabled - all payments blocked",
        values={"enabled": policy.enabled},
    )


def tool_denylist_rule(policy: Policy, request: PaymentRequest, context: SpendContext) -> RuleTrace:
    if not policy.deny_tools:
        return RuleTrace(
            rule_id="tool_denylist",
            rule_name="Tool Denylist",
            passed=True,
            reason="No tool denylist configured",
            values={"configured": False},
        )

    passed = request.tool not in policy.deny_tools
    return RuleTrace(
        rule_id="tool_denylist",
        rule_name="Tool Denylist",
        passed=passed,
        reason=(
            f'Tool "{request.tool}" is not in denylist'
            if passed
            else f'Tool "{request.tool}" is blocked by denylist'
        ),
        values={"tool": request.tool, "denylist": list(policy.deny_tools)},
    )


def domain_denylist_rule(policy: Policy, request: PaymentRequest, context: SpendContext) -> RuleTrace:
    if not policy.deny_domains:
        return RuleTrace(
            rule_id="domain_denylist",
            rule_name="Domain Denylist",
            passed=True,
            reason="No domain denylist configured",
            values={"configured": False},
        )

    passed = not _domain_matches(request.domain, policy.deny_domains)
    return RuleTrace(
        rule_id="domain_denylist",
        rule_name="Domain Denylist",
        passed=passed,
        reason=(
            f'Domain "{request.domain}" is not in denylist'
            if passed
            else f'Domain "{request.domain}" is blocked by denylist'
        ),
        values={"domain": request.domain, "denylist": list(policy.deny_domains)},
    )


def tool_allowlist_rule(policy: Policy, request: PaymentRequest, context: SpendContext) -> RuleTrace:
    if not policy.allow_tools:
        return RuleTrace(
            rule_id="tool_allowlist",
            rule_name="Tool Allowlist",
            passed=True,
            reason="No tool allowlist configured - all tools allowed",
            values={"configured": False},
        )

    passed = request.tool in policy.allow_tools
    return RuleTrace(
        rule_id="tool_allowlist",
        rule_name="Tool Allowlist",
        passed=passed,
        reason=(
            f'Tool "{request.tool}" is in allowlist'
            if passed
            else f'Tool "{request.tool}" is not in allowlist [{", ".join(policy.allow_tools)}]'
        ),
        values={"tool": request.tool, "allowlist": list(policy.allow_tools)},
    )


def domain_allowlist_rule(policy: Policy, request: PaymentRequest, context: SpendContext) -> RuleTrace:
    if not policy.allow_domains:
        return RuleTrace(
            rule_id="domain_allowlist",
            rule_name="Domain Allowlist",
            passed=True,
            reason="No domain allowlist configured - all domains allowed",
            values={"configured": False},
        )

    passed = _domain_matches(request.domain, policy.allow_domains)
    return RuleTrace(
        rule_id="domain_allowlist",
        rule_name="Domain Allowlist",
        passed=passed,
        reason=(
            f'Domain "{request.domain}" is in allowlist'
            if passed
            else f'Domain "{request.domain}" is not in allowlist [{", ".join(policy.allow_domains)}]'
        ),
        values={"domain": request.domain, "allowlist": list(policy.allow_domains)},
    )


def per_call_cap_rule(policy: Policy, request: PaymentRequest, context: SpendContext) -> RuleTrace:
    cap = policy.per_call_cap_for(request.endpoint)
    passed = request.price_usd <= cap
    verb = "within" if passed else "exceeds"
    return RuleTrace(
        rule_id="per_call_cap",
        rule_name="Per-Call Cap",
        passed=passed,
        reason=f"Price {_usd(request.price_usd)} {verb} per-call cap of {_usd(cap)}",
        values={
            "price": request.price_usd,
            "cap": cap,
            "endpoint": request.endpoint,
            "has_custom_cap": request.endpoint in policy.endpoint_caps,
        },
    )


def daily_cap_rule(policy: Policy, request: PaymentRequest, context: SpendContext) -> RuleTrace:
    projected = context.daily_spent_usd + request.price_usd
    passed = projected <= policy.daily_cap_usd
    verb = "within" if passed else "exceeds"
    return RuleTrace(
        rule_id="daily_cap",
        rule_name="Daily Cap",
        passed=passed,
        reason=(
            f"Projected daily spend {_usd(projected)} (price {_usd(request.price_usd)}) "
            f"{verb} cap of {_usd(policy.daily_cap_usd)}"
        ),
        values={
            "current_spend": context.daily_spent_usd,
            "request_price": request.price_usd,
            "projected_spend": projected,
            "cap": policy.daily_cap_usd,
            "remaining": policy.daily_cap_usd - context.daily_spent_usd,
        },
    )


def weekly_cap_rule(policy: Policy, request: PaymentRequest, context: SpendContext) -> RuleTrace:
    if policy.weekly_cap_usd is None:
        return RuleTrace(
            rule_id="weekly_cap",
            rule_name="Weekly Cap",
            passed=True,
            reason="No weekly cap configured",
            values={"configured": False},
        )

    projected = context.weekly_spent_usd + request.price_usd
    passed = projected <= policy.weekly_cap_usd
    verb = "within" if passed else "exceeds"
    return RuleTrace(
        rule_id="weekly_cap",
        rule_name="Weekly Cap",
        passed=passed,
        reason=(
            f"Projected weekly spend {_usd(projected)} (price {_usd(request.price_usd)}) "
            f"{verb} cap of {_usd(policy.weekly_cap_usd)}"
        ),
        values={
            "current_spend": context.weekly_spent_usd,
            "request_price": request.price_usd,
            "projected_spend": projected,
            "cap": policy.weekly_cap_usd,
            "remaining": policy.weekly_cap_usd - context.weekly_spent_usd,
        },
    )


# Order matters: denylists must precede allowlists.
ALL_RULES: tuple[RuleFunction, ...] = (
    policy_enabled_rule,
    tool_denylist_rule,
    domain_denylist_rule,
    tool_allowlist_rule,
    domain_allowlist_rule,
    per_call_cap_rule,
    daily_cap_rule,
    weekly_cap_rule,
)


__all__ = [
    "RuleFunction",
    "ALL_RULES",
    "policy_enabled_rule",
    "tool_denylist_rule",
    "domain_denylist_rule",
    "tool_allowlist_rule",
    "domain_allowlist_rule",
    "per_call_cap_rule",
    "daily_cap_rule",
    "weekly_cap_rule",
]
