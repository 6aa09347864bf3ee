"""Tests for token pricing and plan allowances."""

from decimal import Decimal

import pytest

from overseer_credits.cost_model import (
    DEFAULT_COST_RATIO,
    PlanTier,
    TokenUsage,
    credits_for_estimated_tokens,
    credits_for_usage,
    estimate_rate,
    estimate_token_count,
    get_cost_ratio,
    plan_credit_allowance,
)

# ============================================================================
# ACTUAL USAGE PRICING
# ============================================================================


@pytest.mark.unit
def test_gpt4o_usage_priced_per_thousand_tokens() -> None:
    usage = TokenUsage(prompt_tokens=1000, completion_tokens=1000)
    assert credits_for_usage(usage, "gpt-4o") == Decimal("20.00")


@pytest.mark.unit
def test_claude_opus_output_is_expensive() -> None:
    usage = TokenUsage(prompt_tokens=2000, completion_tokens=500)
    # 2 * 15 + 0.5 * 75
    assert credits_for_usage(usage, "claude-3-opus") == Decimal("67.50")


@pytest.mark.unit
def test_usage_rounds_up_to_next_cent() -> None:
    usage = TokenUsage(prompt_tokens=1, completion_tokens=0, total_tokens=1)
    # 0.005 credits is charged as 0.01
    assert credits_for_usage(usage, "gpt-4o") == Decimal("0.01")


@pytest.mark.unit
def test_exact_cent_amounts_are_not_rounded_up() -> None:
    usage = TokenUsage(prompt_tokens=2, completion_tokens=0)
    assert credits_for_usage(usage, "gpt-4o") == Decimal("0.01")


@pytest.mark.unit
def test_unknown_model_uses_default_ratio() -> None:
    assert get_cost_ratio("some-new-model") == DEFAULT_COST_RATIO
    usage = TokenUsage(prompt_tokens=1000, completion_tokens=1000)
    assert credits_for_usage(usage, "some-new-model") == Decimal("20.00")


@pytest.mark.unit
def test_token_usage_total_defaults_to_sum() -> None:
    assert TokenUsage(prompt_tokens=3, completion_tokens=4).tokens == 7
    assert TokenUsage(prompt_tokens=3, completion_tokens=4, total_tokens=10).tokens == 10


# ============================================================================
# ESTIMATES
# ============================================================================


@pytest.mark.unit
@pytest.mark.parametrize(
    ("model", "rate"),
    [
        ("gpt-4o", Decimal("0.015")),
        ("gpt-4o-mini", Decimal("0.015")),
        ("gpt-4-turbo", Decimal("0.03")),
        ("gpt-3.5-turbo", Decimal("0.005")),
        ("claude-3-sonnet", Decimal("0.01")),
    ],
)
def test_estimate_rate_by_model_family(model: str, rate: Decimal) -> None:
    assert estimate_rate(model) == rate


@pytest.mark.unit
def test_estimated_credits_rounded_to_four_places() -> None:
    assert credits_for_estimated_tokens(1000, "gpt-4o") == Decimal("0.0150")
    # 0.333 * 0.015 = 0.004995
    assert credits_for_estimated_tokens(333, "gpt-4o") == Decimal("0.0050")
    assert credits_for_estimated_tokens(0, "gpt-4o") == Decimal(0)


@pytest.mark.unit
def test_estimate_token_count_is_four_chars_per_token() -> None:
    assert estimate_token_count("") == 0
    assert estimate_token_count("abcd") == 1
    assert estimate_token_count("abcde") == 2


# ============================================================================
# PLAN ALLOWANCES
# ============================================================================


@pytest.mark.unit
def test_plan_allowances() -> None:
    assert plan_credit_allowance(PlanTier.FREE) == Decimal(25)
    assert plan_credit_allowance("pro") == Decimal(500)
    assert plan_credit_allowance("teams") == Decimal(500)
    assert plan_credit_allowance(PlanTier.ENTERPRISE) == Decimal(1000)


@pytest.mark.unit
def test_unknown_plan_gets_free_allowance() -> None:
    assert plan_credit_allowance("platinum") == Decimal(25)
