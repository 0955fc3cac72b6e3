"""
Pricing calculations for upstream LLM calls.

Static per-model price table (USD per 1M tokens) used to estimate the cost
of each completion from the provider's reported token counts.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict

logger = logging.getLogger(__name__)

ONE_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1m: Decimal  # Cost per 1M input tokens
    output_cost_per_1m: Decimal  # Cost per 1M output tokens


@dataclass(frozen=True)
class PricingTable:
    """Price table with a fallback for models it does not list."""
    prices: Dict[str, ModelPricing]
    fallback: ModelPricing

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, falling back for unknown models.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model
        """
        pricing = self.prices.get(model)
        if pricing is None:
            logger.warning("No pricing for model %s, using fallback pricing", model)
            return self.fallback
        return pricing


PRICING_TABLE = PricingTable(
    prices={
        # OpenAI
        "gpt-4o": ModelPricing(Decimal("2.50"), Decimal("10.00")),
        "gpt-4o-mini": ModelPricing(Decimal("0.15"), Decimal("0.60")),
        "gpt-4-turbo": ModelPricing(Decimal("10.00"), Decimal("30.00")),
        "gpt-4": ModelPricing(Decimal("30.00"), Decimal("60.00")),
        "gpt-3.5-turbo": ModelPricing(Decimal("0.50"), Decimal("1.50")),
        # Anthropic
        "claude-3-5-sonnet-20241022": ModelPricing(Decimal("3.00"), Decimal("15.00")),
        "claude-3-5-haiku-20241022": ModelPricing(Decimal("1.00"), Decimal("5.00")),
        "claude-3-opus-20240229": ModelPricing(Decimal("15.00"), Decimal("75.00")),
        "claude-3-sonnet-20240229": ModelPricing(Decimal("3.00"), Decimal("15.00")),
        "claude-3-haiku-20240307": ModelPricing(Decimal("0.25"), Decimal("1.25")),
    },
    # gpt-4o-mini rates
    fallback=ModelPricing(Decimal("0.15"), Decimal("0.60")),
)


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Estimate the dollar cost of one completion.

    The result is not rounded. Ledger sums are taken over the raw values
    and only formatted for display, so many tiny calls do not accumulate
    rounding error.

    Args:
        model: Model identifier
        input_tokens: Prompt tokens reported by the provider
        output_tokens: Completion tokens reported by the provider
        table: Price table to use

    Returns:
        Estimated cost in dollars
    """
    pricing = table.get_pricing(model)
    input_cost = Decimal(input_tokens) * pricing.input_cost_per_1m / ONE_MILLION
    output_cost = Decimal(output_tokens) * pricing.output_cost_per_1m / ONE_MILLION
    return float(input_cost + output_cost)
