"""Conversion of token counts into credits, and plan allowances.

Two pricing paths exist and stay separate:

* ``credits_for_usage`` prices actual usage with per-model input/output rates
  and always rounds up to the next cent. This is what users are charged.
* ``credits_for_estimated_tokens`` prices an up-front token estimate with a
  flat rate per model family, rounded to 4 decimal places. It only sizes the
  credit check and reservation made before a batch job starts.
"""

import math
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from enum import Enum

CENT = Decimal("0.01")
ESTIMATE_PRECISION = Decimal("0.0001")
TOKENS_PER_RATE_UNIT = Decimal(1000)

# Average characters per token used for coarse estimates
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class ModelCostRatio:
    """Credits charged per 1K tokens."""

    input: Decimal
    output: Decimal


MODEL_COST_RATIOS: dict[str, ModelCostRatio] = {
    "gpt-4o": ModelCostRatio(input=Decimal(5), output=Decimal(15)),
    "gpt-4-turbo": ModelCostRatio(input=Decimal(10), output=Decimal(30)),
    "claude-3-opus": ModelCostRatio(input=Decimal(15), output=Decimal(75)),
    "claude-3-sonnet": ModelCostRatio(input=Decimal(3), output=Decimal(15)),
    "gemini-1.5-pro": ModelCostRatio(input=Decimal(3), output=Decimal(10)),
    "mistral-large": ModelCostRatio(input=Decimal(2), output=Decimal(8)),
}

DEFAULT_COST_RATIO = ModelCostRatio(input=Decimal(5), output=Decimal(15))

# Flat estimate rates per 1K tokens, matched by model name substring
ESTIMATE_RATE_DEFAULT = Decimal("0.01")
ESTIMATE_RATE_GPT4 = Decimal("0.03")
ESTIMATE_RATE_GPT4O = Decimal("0.015")
ESTIMATE_RATE_GPT35 = Decimal("0.005")


class PlanTier(str, Enum):
    """Subscription plan tiers."""

    FREE = "free"
    PRO = "pro"
    TEAMS = "teams"
    ENTERPRISE = "enterprise"


PLAN_CREDITS: dict[PlanTier, Decimal] = {
    PlanTier.FREE: Decimal(25),
    PlanTier.PRO: Decimal(500),
    PlanTier.TEAMS: Decimal(500),
    PlanTier.ENTERPRISE: Decimal(1000),
}


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the completion engine."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int | None = None

    @property
    def tokens(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.tokens,
        }


def get_cost_ratio(model: str) -> ModelCostRatio:
    """Look up the per-1K rates for a model, falling back to the default ratio."""
    return MODEL_COST_RATIOS.get(model, DEFAULT_COST_RATIO)


def credits_for_usage(usage: TokenUsage, model: str) -> Decimal:
    """Calculate the credits charged for actual token usage.

    Args:
        usage: Prompt and completion token counts
        model: Model identifier

    Returns:
        Credits, rounded up to the nearest 0.01
    """
    ratio = get_cost_ratio(model)
    input_cost = Decimal(usage.prompt_tokens) / TOKENS_PER_RATE_UNIT * ratio.input
    output_cost = Decimal(usage.completion_tokens) / TOKENS_PER_RATE_UNIT * ratio.output
    return (input_cost + output_cost).quantize(CENT, rounding=ROUND_CEILING)


def estimate_rate(model: str) -> Decimal:
    """Flat per-1K rate used for estimates, chosen by model family."""
    if "gpt-4" in model:
        return ESTIMATE_RATE_GPT4O if "gpt-4o" in model else ESTIMATE_RATE_GPT4
    if "gpt-3.5" in model:
        return ESTIMATE_RATE_GPT35
    return ESTIMATE_RATE_DEFAULT


def credits_for_estimated_tokens(total_tokens: int, model: str) -> Decimal:
    """Calculate the credits needed for an estimated token count.

    Args:
        total_tokens: Estimated input plus output tokens
        model: Model identifier

    Returns:
        Credits, rounded to 4 decimal places
    """
    credits = Decimal(total_tokens) / TOKENS_PER_RATE_UNIT * estimate_rate(model)
    return credits.quantize(ESTIMATE_PRECISION, rounding=ROUND_HALF_UP)


def estimate_token_count(text: str) -> int:
    """Rough token count for a piece of text (about 4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def plan_credit_allowance(plan_tier: PlanTier | str) -> Decimal:
    """Monthly credit allowance for a plan tier; unknown tiers get the free allowance."""
    try:
        tier = PlanTier(plan_tier)
    except ValueError:
        return PLAN_CREDITS[PlanTier.FREE]
    return PLAN_CREDITS[tier]
