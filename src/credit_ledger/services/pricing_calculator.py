"""
Usage → credit cost conversion.

Pure and deterministic: no I/O and no state beyond the pricing tables given
at construction. All money arithmetic is done in ``Decimal`` so that the
round-up to whole credits never depends on binary float error.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, Decimal
from typing import Dict, List, Optional, Tuple

from ..exceptions import UnknownModelTierError
from ..models.pricing import (
    CREDIT_CONVERSION_RATE,
    GROUNDING_PRICING,
    PRICING_TABLE,
    PROFIT_MARGIN,
    PROMPT_SIZE_THRESHOLD,
    TOKENS_PER_PRICE_UNIT,
    GroundingPricing,
    InputModality,
    ModelPricing,
    ModelTier,
    PromptSizeTier,
)
from ..models.usage import UsageCostBreakdown, UsageRequest

_ZERO = Decimal(0)


def classify_prompt_size(prompt_tokens: int) -> PromptSizeTier:
    if prompt_tokens > PROMPT_SIZE_THRESHOLD:
        return PromptSizeTier.LARGE
    return PromptSizeTier.SMALL


def resolve_model_tier(model_tier: object) -> ModelTier:
    try:
        return ModelTier(model_tier.lower() if isinstance(model_tier, str) else model_tier)
    except ValueError:
        raise UnknownModelTierError(model_tier) from None


class PricingCalculator:
    def __init__(
        self,
        pricing_table: Optional[Dict[ModelTier, ModelPricing]] = None,
        grounding: GroundingPricing = GROUNDING_PRICING,
        conversion_rate: Decimal = CREDIT_CONVERSION_RATE,
        profit_margin: Decimal = PROFIT_MARGIN,
    ) -> None:
        self._table = PRICING_TABLE if pricing_table is None else pricing_table
        self._grounding = grounding
        self._conversion_rate = conversion_rate
        self._profit_margin = profit_margin

    def pricing_for(self, model_tier: object) -> ModelPricing:
        tier = resolve_model_tier(model_tier)
        pricing = self._table.get(tier)
        if pricing is None:
            raise UnknownModelTierError(model_tier)
        return pricing

    def cost(self, usage: UsageRequest) -> Tuple[int, UsageCostBreakdown]:
        """Return the authoritative credit cost and its breakdown."""
        breakdown = self.breakdown(usage)
        return breakdown.final_credits, breakdown

    def credits(self, usage: UsageRequest) -> int:
        return self.breakdown(usage).final_credits

    def breakdown(self, usage: UsageRequest) -> UsageCostBreakdown:
        # Resolve first so an unknown tier fails before anything is computed
        model_tier = resolve_model_tier(usage.model_tier)
        pricing = self.pricing_for(model_tier)

        size = classify_prompt_size(usage.input_tokens + usage.cached_tokens)

        if usage.input_modality is InputModality.AUDIO and pricing.audio_input is not None:
            input_rate = pricing.audio_input
        else:
            input_rate = pricing.input.for_size(size)
        input_cost = usage.input_tokens * input_rate / TOKENS_PER_PRICE_UNIT

        output_rate = pricing.output.for_size(size)
        output_cost = usage.output_tokens * output_rate / TOKENS_PER_PRICE_UNIT

        caching_rate: Optional[Decimal] = None
        caching_cost = _ZERO
        if usage.use_caching and usage.cached_tokens > 0:
            caching_rate = pricing.caching.for_size(size)
            caching_cost = usage.cached_tokens * caching_rate / TOKENS_PER_PRICE_UNIT

        grounding_cost = _ZERO
        if usage.use_grounding_search:
            grounding_cost += self._grounding.search_per_request
        if usage.use_grounding_maps:
            grounding_cost += self._grounding.maps_per_request

        total_cost = input_cost + output_cost + caching_cost + grounding_cost
        base_credits = total_cost / self._conversion_rate
        final_credits = int(
            (base_credits * self._profit_margin).to_integral_value(rounding=ROUND_CEILING)
        )

        breakdown = UsageCostBreakdown(
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cached_tokens=usage.cached_tokens,
            total_tokens=usage.input_tokens + usage.output_tokens,
            model_tier=model_tier.value,
            input_modality=usage.input_modality,
            prompt_size_tier=size,
            input_price_per_million=input_rate,
            output_price_per_million=output_rate,
            caching_price_per_million=caching_rate,
            input_cost_usd=input_cost,
            output_cost_usd=output_cost,
            caching_cost_usd=caching_cost,
            grounding_cost_usd=grounding_cost,
            total_cost_usd=total_cost,
            grounding_search=usage.use_grounding_search,
            grounding_maps=usage.use_grounding_maps,
            base_credits=base_credits,
            profit_margin=self._profit_margin,
            final_credits=final_credits,
        )
        breakdown.formula = self._formula(breakdown)
        return breakdown

    def _formula(self, b: UsageCostBreakdown) -> str:
        parts: List[str] = []
        if b.input_tokens > 0:
            parts.append(
                f"Input: {b.input_tokens:,} x ${b.input_price_per_million}/1M = ${b.input_cost_usd:.6f}"
            )
        if b.output_tokens > 0:
            parts.append(
                f"Output: {b.output_tokens:,} x ${b.output_price_per_million}/1M = ${b.output_cost_usd:.6f}"
            )
        if b.caching_price_per_million is not None:
            parts.append(
                f"Cache: {b.cached_tokens:,} x ${b.caching_price_per_million}/1M = ${b.caching_cost_usd:.6f}"
            )
        if b.grounding_search:
            parts.append(f"Search grounding: ${self._grounding.search_per_request}")
        if b.grounding_maps:
            parts.append(f"Maps grounding: ${self._grounding.maps_per_request}")
        return (
            " + ".join(parts or ["No billable usage"])
            + f"\nTotal: ${b.total_cost_usd:.6f} x {b.profit_margin}x margin = {b.final_credits} credits"
        )


_default_calculator = PricingCalculator()


def calculate_credits(usage: UsageRequest) -> int:
    """Credit cost of ``usage`` under the default pricing tables."""
    return _default_calculator.credits(usage)
