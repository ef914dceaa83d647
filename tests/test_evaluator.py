from decimal import Decimal

import pytest

from policykit.schemas.policy import Policy, SpendContext
from policykit.services.evaluator import (
    ALL_PASSED,
    PolicyEvaluator,
    calculate_spend_stats,
    create_spend_context,
    decision_to_log_entry,
    evaluate_policy,
    format_decision,
    parse_payment_request,
)
from policykit.services.ledger import InMemorySpendLedger


@pytest.fixture
def policy() -> Policy:
    return Policy(id="worked", daily_cap_usd=Decimal("1.00"), per_call_cap_usd=Decimal("0.10"))


def _charge(price, url="https://api.example.com/api/summarize"):
    return parse_payment_request(url, Decimal(price), "agent-1")


def test_parse_payment_request_derives_tool_and_domain():
    request = parse_payment_request("https://API.Example.com/v1/tools/translate?x=1", Decimal("0.01"), "agent-1")
    assert request.endpoint == "/v1/tools/translate"
    assert request.tool == "translate"
    assert request.domain == "api.example.com"


def test_parse_payment_request_root_tool_is_unknown():
    assert parse_payment_request("https://example.com", Decimal("0"), "a").tool == "unknown"
    assert parse_payment_request("https://example.com/", Decimal("0"), "a").endpoint == "/"


def test_worked_example(policy):
    ledger = InMemorySpendLedger()
    evaluator = PolicyEvaluator(policy)

    decision = evaluator.evaluate(_charge("0.03"), ledger.get_spend_context("agent-1"))
    assert decision.allow
    assert decision.rule_id == ALL_PASSED
    assert decision.remaining_daily_budget == Decimal("0.97")
    ledger.record_payment("agent-1", Decimal("0.03"), endpoint="/api/summarize", nonce="n1", payment_ref="r1")

    for price, nonce in (("0.05", "n2"), ("0.02", "n3")):
        decision = evaluator.evaluate(_charge(price), ledger.get_spend_context("agent-1"))
        assert decision.allow
        ledger.record_payment("agent-1", Decimal(price), endpoint="/api/summarize", nonce=nonce, payment_ref=nonce)

    assert ledger.get_spend_context("agent-1").daily_spent_usd == Decimal("0.10")

    blocked = evaluator.evaluate(_charge("0.25"), ledger.get_spend_context("agent-1"))
    assert not blocked.allow
    assert blocked.rule_id == "per_call_cap"
    assert "0.25" in blocked.reason
    assert "0.10" in blocked.reason


def test_evaluation_is_deterministic(policy):
    context = SpendContext(caller_id="agent-1", daily_spent_usd=Decimal("0.40"))
    first = evaluate_policy(policy, _charge("0.05"), context, full_trace=True)
    second = evaluate_policy(policy, _charge("0.05"), context, full_trace=True)
    assert first.model_dump(exclude={"timestamp"}) == second.model_dump(exclude={"timestamp"})


def test_deny_takes_precedence_over_allow():
    policy = Policy(id="p", allow_tools=["summarize"], deny_tools=["summarize"])
    decision = evaluate_policy(policy, _charge("0.01"), create_spend_context("agent-1"))
    assert not decision.allow
    assert decision.rule_id == "tool_denylist"


def test_short_circuit_trace_stops_at_first_failure():
    policy = Policy(id="p", enabled=False)
    decision = evaluate_policy(policy, _charge("0.01"), create_spend_context("agent-1"))
    assert [entry.rule_id for entry in decision.trace] == ["policy_enabled"]


def test_full_trace_runs_every_rule_and_keeps_first_failure():
    policy = Policy(id="p", deny_domains=["example.com"], per_call_cap_usd=Decimal("0.01"))
    decision = evaluate_policy(policy, _charge("0.05"), create_spend_context("agent-1"), full_trace=True)
    assert len(decision.trace) == 8
    assert decision.rule_id == "domain_denylist"
    assert [entry.rule_id for entry in decision.trace if not entry.passed] == ["domain_denylist", "per_call_cap"]


@pytest.mark.parametrize("price", ["0.01", "0.05", "0.10", "0.11", "0.60"])
def test_allow_implies_every_cap_holds(price):
    policy = Policy(
        id="p",
        daily_cap_usd=Decimal("1.00"),
        weekly_cap_usd=Decimal("1.20"),
        per_call_cap_usd=Decimal("0.50"),
    )
    context = SpendContext(caller_id="a", daily_spent_usd=Decimal("0.45"), weekly_spent_usd=Decimal("1.10"))
    decision = evaluate_policy(policy, _charge(price), context)
    if decision.allow:
        assert Decimal(price) <= policy.per_call_cap_usd
        assert context.daily_spent_usd + Decimal(price) <= policy.daily_cap_usd
        assert context.weekly_spent_usd + Decimal(price) <= policy.weekly_cap_usd


def test_remaining_budgets_never_negative(policy):
    context = SpendContext(caller_id="a", daily_spent_usd=Decimal("0.99"), weekly_spent_usd=Decimal("4.99"))
    decision = evaluate_policy(policy, _charge("0.05"), context)
    assert decision.remaining_daily_budget == Decimal("0")
    assert decision.remaining_weekly_budget == Decimal("0")


def test_is_allowed_and_max_allowed_price(policy):
    evaluator = PolicyEvaluator(policy, full_trace=True)
    context = SpendContext(caller_id="a", daily_spent_usd=Decimal("0.95"))
    assert evaluator.is_allowed(_charge("0.05"), context)
    assert not evaluator.is_allowed(_charge("0.06"), context)
    assert evaluator.get_max_allowed_price("/api/summarize", context) == Decimal("0.05")
    assert evaluator.get_remaining_budget(context).daily == Decimal("0.05")


def test_evaluator_accepts_policy_override(policy):
    evaluator = PolicyEvaluator(policy)
    strict = Policy(id="strict", per_call_cap_usd=Decimal("0.01"))
    decision = evaluator.evaluate(_charge("0.05"), create_spend_context("a"), strict)
    assert decision.policy_id == "strict"
    assert not decision.allow


def test_format_and_log_entry(policy):
    decision = evaluate_policy(policy, _charge("0.25"), create_spend_context("a"))
    text = format_decision(decision)
    assert text.startswith("[X] BLOCKED")
    assert "Rule: per_call_cap" in text

    entry = decision_to_log_entry(decision)
    assert entry["allow"] is False
    assert entry["rule_id"] == "per_call_cap"
    assert entry["policy_id"] == "worked"


def test_spend_stats(policy):
    context = SpendContext(caller_id="a", daily_spent_usd=Decimal("0.50"), daily_call_count=10)
    stats = calculate_spend_stats(context, policy)
    assert stats.daily_usage_percent == Decimal("50")
    assert stats.average_per_call == Decimal("0.05")
    assert stats.calls_remaining == 10
    assert stats.weekly_usage_percent == Decimal("0")
