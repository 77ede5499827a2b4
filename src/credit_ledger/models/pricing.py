"""
Static pricing tables for AI usage.

All prices are USD. Token prices are per one million tokens and split by
prompt-size bracket; grounding prices are flat per grounded request.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ModelTier(str, Enum):
    LITE = "lite"
    FLASH = "flash"
    PRO = "pro"


class InputModality(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class PromptSizeTier(str, Enum):
    SMALL = "small"
    LARGE = "large"


class TokenRates(BaseModel):
    model_config = ConfigDict(frozen=True)

    small: Decimal
    large: Decimal

    def for_size(self, size: PromptSizeTier) -> Decimal:
        return self.large if size is PromptSizeTier.LARGE else self.small


class ModelPricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    input: TokenRates
    output: TokenRates
    caching: TokenRates
    storage_per_hour: Decimal = Field(
        description="Context cache storage price per 1M tokens per hour; informational."
    )
    audio_input: Optional[Decimal] = Field(
        default=None,
        description="Input price for audio; absent means the regular input rate applies.",
    )


class GroundingPricing(BaseModel):
    model_config = ConfigDict(frozen=True)

    search_per_request: Decimal
    maps_per_request: Decimal


def _rates(small: str, large: Optional[str] = None) -> TokenRates:
    return TokenRates(small=Decimal(small), large=Decimal(large or small))


PRICING_TABLE: Dict[ModelTier, ModelPricing] = {
    ModelTier.LITE: ModelPricing(
        input=_rates("0.10"),
        output=_rates("0.40"),
        caching=_rates("0.01"),
        storage_per_hour=Decimal("1.00"),
        audio_input=Decimal("0.30"),
    ),
    ModelTier.FLASH: ModelPricing(
        input=_rates("0.30"),
        output=_rates("2.50"),
        caching=_rates("0.03"),
        storage_per_hour=Decimal("1.00"),
        audio_input=Decimal("1.00"),
    ),
    ModelTier.PRO: ModelPricing(
        input=_rates("1.25", "2.50"),
        output=_rates("10.00", "15.00"),
        caching=_rates("0.125", "0.25"),
        storage_per_hour=Decimal("4.50"),
    ),
}

GROUNDING_PRICING = GroundingPricing(
    search_per_request=Decimal("0.035"),
    maps_per_request=Decimal("0.025"),
)

# USD value of one credit
CREDIT_CONVERSION_RATE = Decimal("0.0001")
PROFIT_MARGIN = Decimal("3")
# Prompts above this many tokens (input + cached) use the large-prompt prices
PROMPT_SIZE_THRESHOLD = 200_000
TOKENS_PER_PRICE_UNIT = Decimal(1_000_000)
