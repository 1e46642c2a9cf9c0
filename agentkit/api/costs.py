"""Token usage and cost tracking per model.

A CostTracker accumulates the token counts the engine reports after every
LLM round and prices them on demand through a CostCalculator. The default
calculator, ModelPricingCalculator, looks prices up in a table of USD per
million tokens; model names carrying a dated or versioned suffix
("gpt-4o-2024-08-06") fall back to the longest matching table entry.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from agentkit.api.llm import LlmUsage

logger = logging.getLogger(__name__)

ONE_MILLION = Decimal(1_000_000)


class ModelPricing(BaseModel):
    """USD per million input and output tokens."""

    model_config = ConfigDict(frozen=True)

    input_cost_per_1m: Decimal = Field(ge=0)
    output_cost_per_1m: Decimal = Field(ge=0)

    def cost(self, input_tokens: int, output_tokens: int) -> Decimal:
        return (
            Decimal(input_tokens) / ONE_MILLION * self.input_cost_per_1m
            + Decimal(output_tokens) / ONE_MILLION * self.output_cost_per_1m
        )


DEFAULT_PRICING: dict[str, ModelPricing] = {
    "claude-sonnet-4-5-20250929": ModelPricing(input_cost_per_1m="3.00", output_cost_per_1m="15.00"),
    "grok-4-fast-non-reasoning": ModelPricing(input_cost_per_1m="0.50", output_cost_per_1m="1.50"),
    "gemini-2.5-flash": ModelPricing(input_cost_per_1m="0.10", output_cost_per_1m="0.30"),
    "gpt-4o": ModelPricing(input_cost_per_1m="5.00", output_cost_per_1m="15.00"),
    "gpt-4o-mini": ModelPricing(input_cost_per_1m="0.15", output_cost_per_1m="0.60"),
}


class CostCalculator(Protocol):
    def calculate(self, model: str, input_tokens: int, output_tokens: int) -> Decimal: ...


class ModelPricingCalculator:
    """Prices token usage from a per-model table. Unknown models cost nothing."""

    def __init__(self, pricing: dict[str, ModelPricing] | None = None) -> None:
        self._pricing = dict(DEFAULT_PRICING)
        if pricing:
            self._pricing.update(pricing)

    def set_model_pricing(
        self, model: str, input_cost_per_1m: Decimal | str, output_cost_per_1m: Decimal | str
    ) -> None:
        """Add or replace the price of one model."""
        self._pricing[model] = ModelPricing(
            input_cost_per_1m=input_cost_per_1m, output_cost_per_1m=output_cost_per_1m
        )

    def pricing_for(self, model: str) -> ModelPricing | None:
        pricing = self._pricing.get(model)
        if pricing is not None:
            return pricing
        prefixes = [name for name in self._pricing if model.startswith(name)]
        if not prefixes:
            return None
        return self._pricing[max(prefixes, key=len)]

    def calculate(self, model: str, input_tokens: int, output_tokens: int) -> Decimal:
        pricing = self.pricing_for(model)
        if pricing is None:
            logger.debug("No pricing for model %s, counting zero cost", model)
            return Decimal(0)
        return pricing.cost(input_tokens, output_tokens)


class TokenMetrics(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0


class CostItem(BaseModel):
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0
    total_cost: Decimal = Decimal(0)


class CostSummary(BaseModel):
    items: list[CostItem] = Field(default_factory=list)
    total_cost: Decimal = Decimal(0)

    @property
    def total_input_tokens(self) -> int:
        return sum(item.input_tokens for item in self.items)

    @property
    def total_output_tokens(self) -> int:
        return sum(item.output_tokens for item in self.items)

    def item(self, model: str) -> CostItem | None:
        return next((item for item in self.items if item.model == model), None)


class CostTracker:
    """Accumulates token usage per model and prices it on request."""

    def __init__(self, calculator: CostCalculator | None = None) -> None:
        self._calculator = calculator or ModelPricingCalculator()
        self._metrics: dict[str, TokenMetrics] = {}

    def track_token_usage(self, model: str, input_tokens: int, output_tokens: int) -> None:
        metrics = self._metrics.setdefault(model, TokenMetrics())
        metrics.input_tokens += input_tokens
        metrics.output_tokens += output_tokens
        metrics.requests += 1

    def track_usage(self, model: str, usage: LlmUsage) -> None:
        self.track_token_usage(model, usage.input_tokens, usage.output_tokens)

    def get_summary(self) -> CostSummary:
        items = [
            CostItem(
                model=model,
                input_tokens=metrics.input_tokens,
                output_tokens=metrics.output_tokens,
                requests=metrics.requests,
                total_cost=self._calculator.calculate(
                    model, metrics.input_tokens, metrics.output_tokens
                ),
            )
            for model, metrics in self._metrics.items()
        ]
        return CostSummary(items=items, total_cost=sum((i.total_cost for i in items), Decimal(0)))

    def reset(self) -> None:
        self._metrics.clear()
