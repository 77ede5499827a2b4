from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .balance import BalanceView
from .pricing import InputModality, PromptSizeTier


class UsageRequest(BaseModel):
    """
    One AI usage event to be priced and charged.

    ``model_tier`` is kept as a plain string so that an unknown tier is
    reported by the pricing calculator as ``UnknownModelTierError``.
    """

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    model_tier: str
    input_modality: InputModality = InputModality.TEXT
    use_caching: bool = False
    cached_tokens: int = Field(default=0, ge=0)
    use_grounding_search: bool = False
    use_grounding_maps: bool = False
    feature: Optional[str] = Field(
        default=None, description="Product feature the usage came from; logged only."
    )

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class UsageCostBreakdown(BaseModel):
    input_tokens: int
    output_tokens: int
    cached_tokens: int
    total_tokens: int

    model_tier: str
    input_modality: InputModality
    prompt_size_tier: PromptSizeTier

    input_price_per_million: Decimal
    output_price_per_million: Decimal
    caching_price_per_million: Optional[Decimal] = None

    input_cost_usd: Decimal
    output_cost_usd: Decimal
    caching_cost_usd: Decimal
    grounding_cost_usd: Decimal
    total_cost_usd: Decimal

    grounding_search: bool = False
    grounding_maps: bool = False

    base_credits: Decimal
    profit_margin: Decimal
    final_credits: int
    formula: str = ""


class DenialReason(str, Enum):
    INSUFFICIENT_CREDITS = "insufficient_credits"
    MODEL_NOT_ALLOWED = "model_not_allowed"


class ChargeResult(BaseModel):
    """
    Outcome of charging one usage event. A denied charge leaves the balance
    untouched and has ``sufficient`` set to False.
    """

    user_id: str
    sufficient: bool
    deducted: int = 0
    needed: int = 0
    new_total: int
    balance: BalanceView
    breakdown: UsageCostBreakdown
    reason: Optional[DenialReason] = None
    fresh_used: int = 0
    carryover_used: int = 0
    purchased_used: int = 0
    transaction_id: Optional[str] = None
    duplicate: bool = Field(
        default=False,
        description="The idempotency key matched an operation that already committed.",
    )
