from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List

from pydantic import BaseModel, ConfigDict, Field

from .pricing import ModelTier


class SubscriptionTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    ULTRA = "ULTRA"


class AllocationPeriod(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class AllocationPolicy(BaseModel):
    """
    Credit allocation rules for one subscription tier.
    """

    model_config = ConfigDict(frozen=True)

    tier: SubscriptionTier
    amount: int = Field(ge=0, description="Fresh credits granted per period.")
    period: AllocationPeriod
    allow_carryover: bool = Field(
        default=False,
        description="Unused fresh credits roll into a carryover bucket at reset.",
    )
    allow_purchase: bool = False
    allowed_model_tiers: FrozenSet[ModelTier] = frozenset()


ALLOCATION_POLICIES: Dict[SubscriptionTier, AllocationPolicy] = {
    SubscriptionTier.FREE: AllocationPolicy(
        tier=SubscriptionTier.FREE,
        amount=15,
        period=AllocationPeriod.DAILY,
        allow_carryover=False,
        allow_purchase=False,
        allowed_model_tiers=frozenset({ModelTier.LITE, ModelTier.FLASH}),
    ),
    SubscriptionTier.PRO: AllocationPolicy(
        tier=SubscriptionTier.PRO,
        amount=1000,
        period=AllocationPeriod.MONTHLY,
        allow_carryover=False,
        allow_purchase=True,
        allowed_model_tiers=frozenset({ModelTier.LITE, ModelTier.FLASH, ModelTier.PRO}),
    ),
    SubscriptionTier.ULTRA: AllocationPolicy(
        tier=SubscriptionTier.ULTRA,
        amount=10000,
        period=AllocationPeriod.MONTHLY,
        allow_carryover=True,
        allow_purchase=True,
        allowed_model_tiers=frozenset({ModelTier.LITE, ModelTier.FLASH, ModelTier.PRO}),
    ),
}


class CreditPackage(BaseModel):
    """A fixed purchasable bundle of permanent credits."""

    model_config = ConfigDict(frozen=True)

    amount: int = Field(gt=0)
    price: int = Field(ge=0, description="List price in the store's currency units.")
    bonus: int = Field(default=0, ge=0)

    @property
    def credits(self) -> int:
        return self.amount + self.bonus


CREDIT_PACKAGES: List[CreditPackage] = [
    CreditPackage(amount=300, price=300),
    CreditPackage(amount=500, price=480),
    CreditPackage(amount=1000, price=900),
    CreditPackage(amount=2000, price=1700),
]
