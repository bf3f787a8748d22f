"""
Pricing table and cost estimates.

Estimates are attached to gateway responses for observability only; they
never gate a request.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

FALLBACK_MODEL = "gpt-5-mini"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    fallback_model: str = FALLBACK_MODEL

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, using the fallback model's price if unknown.

        Raises:
            ValueError: If neither the model nor the fallback is priced
        """
        if model in self.prices:
            return self.prices[model]
        if self.fallback_model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[self.fallback_model]


PRICING_TABLE = PricingTable({
    "gpt-5": ModelPricing(
        prompt_cost_per_1k=Decimal("0.03"),
        completion_cost_per_1k=Decimal("0.06")
    ),
    "gpt-5-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.01"),
        completion_cost_per_1k=Decimal("0.02")
    ),
    "gpt-5-nano": ModelPricing(
        prompt_cost_per_1k=Decimal("0.005"),
        completion_cost_per_1k=Decimal("0.01")
    )
})


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> float:
    """Calculate estimated cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to use

    Returns:
        Total cost rounded UP to 6 decimal places
    """
    pricing = table.get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    total_cost = prompt_cost + completion_cost
    rounded_cost = total_cost.quantize(Decimal("0.000001"), rounding=ROUND_UP)

    return float(rounded_cost)
