"""
Pricing calculations and rate management.

Per-provider rate tables (USD per 1M tokens) with an explicit default model fallback.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Mapping

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

TOKENS_PER_UNIT = Decimal("1000000")
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelRates:
    """Per-token pricing for a specific model."""
    input_per_million: Decimal  # Cost per 1M input tokens
    output_per_million: Decimal  # Cost per 1M output tokens

    def __post_init__(self):
        if self.input_per_million < 0 or self.output_per_million < 0:
            raise ValueError("rates must be >= 0")


@dataclass(frozen=True)
class RateTable:
    """Rate table for one provider.

    Unknown models resolve to the default model's rates instead of failing,
    and each lookup miss is logged so stale tables surface in telemetry.
    """
    default_model: str
    rates: Dict[str, ModelRates]

    def __post_init__(self):
        if self.default_model not in self.rates:
            raise ValueError(f"default model '{self.default_model}' has no rates")

    def get_rates(self, model: str) -> ModelRates:
        """Get rates for a model, falling back to the default model.

        Args:
            model: Model identifier as reported by the provider

        Returns:
            ModelRates for the model or for the default model
        """
        if model in self.rates:
            return self.rates[model]
        logger.warning(
            "No rates for model %r; using default model %r", model, self.default_model
        )
        return self.rates[self.default_model]

    def merged(self, overrides: Mapping[str, ModelRates], default_model: str = "") -> "RateTable":
        """Return a copy with extra or replaced model rates."""
        rates = dict(self.rates)
        rates.update(overrides)
        return RateTable(default_model=default_model or self.default_model, rates=rates)


def _rates(input_rate: str, output_rate: str) -> ModelRates:
    return ModelRates(Decimal(input_rate), Decimal(output_rate))


DEFAULT_RATE_TABLES: Dict[str, RateTable] = {
    "openai": RateTable(
        default_model="gpt-4o-mini",
        rates={
            "gpt-4o-mini": _rates("0.15", "0.60"),
            "gpt-4o": _rates("2.50", "10.00"),
            "gpt-4": _rates("30.00", "60.00"),
            "gpt-3.5-turbo": _rates("0.50", "1.50"),
        },
    ),
    "anthropic": RateTable(
        default_model="claude-3-5-haiku-20241022",
        rates={
            "claude-3-5-sonnet-20241022": _rates("3.00", "15.00"),
            "claude-3-5-haiku-20241022": _rates("0.80", "4.00"),
            "claude-3-haiku-20240307": _rates("0.25", "1.25"),
            "claude-3-opus-20240229": _rates("15.00", "75.00"),
        },
    ),
    "gemini": RateTable(
        default_model="gemini-2.5-flash",
        rates={
            "gemini-2.5-flash": _rates("0.075", "0.30"),
            "gemini-2.5-pro": _rates("1.25", "5.00"),
            "gemini-2.0-flash": _rates("0.10", "0.40"),
            "gemini-1.5-flash": _rates("0.075", "0.30"),
            "gemini-1.5-pro": _rates("1.25", "5.00"),
        },
    ),
}


def calculate_cost(table: RateTable, model: str, usage: TokenUsage) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        table: Rate table of the provider that served the call
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost in USD rounded UP to 6 decimal places
    """
    rates = table.get_rates(model)

    input_cost = (Decimal(usage.input_tokens) / TOKENS_PER_UNIT) * rates.input_per_million
    output_cost = (Decimal(usage.output_tokens) / TOKENS_PER_UNIT) * rates.output_per_million

    total_cost = input_cost + output_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))
