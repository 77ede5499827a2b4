from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from ..exceptions import UnknownTierError
from ..models.subscription import ALLOCATION_POLICIES, AllocationPolicy, SubscriptionTier
from .pricing_calculator import resolve_model_tier


def resolve_tier(tier: object) -> SubscriptionTier:
    try:
        return SubscriptionTier(tier.upper() if isinstance(tier, str) else tier)
    except ValueError:
        raise UnknownTierError(tier) from None


class AllocationPolicyTable:
    """
    Static lookup from subscription tier to its allocation rules and
    permitted model tiers.
    """

    def __init__(
        self, policies: Optional[Mapping[SubscriptionTier, AllocationPolicy]] = None
    ) -> None:
        self._policies: Dict[SubscriptionTier, AllocationPolicy] = dict(
            ALLOCATION_POLICIES if policies is None else policies
        )

    def policy(self, tier: object) -> AllocationPolicy:
        resolved = resolve_tier(tier)
        policy = self._policies.get(resolved)
        if policy is None:
            raise UnknownTierError(tier)
        return policy

    def can_use_model(self, tier: object, model_tier: object) -> bool:
        policy = self.policy(tier)
        return resolve_model_tier(model_tier) in policy.allowed_model_tiers

    def tiers(self) -> Iterable[SubscriptionTier]:
        return list(self._policies)
