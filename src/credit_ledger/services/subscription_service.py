from __future__ import annotations

from typing import Dict, Optional, Protocol

from ..models.subscription import SubscriptionTier
from .allocation_policy import resolve_tier


class TierProvider(Protocol):
    """
    Source of a user's currently active subscription tier. Billing and the
    subscription lifecycle live outside the ledger; it only needs this one
    value.
    """

    async def get_tier(self, user_id: str) -> Optional[SubscriptionTier]: ...


class InMemoryTierProvider:
    """Tier assignments held in a dict; used for tests and local development."""

    def __init__(self, tiers: Optional[Dict[str, object]] = None) -> None:
        self._tiers: Dict[str, SubscriptionTier] = {
            user_id: resolve_tier(tier) for user_id, tier in (tiers or {}).items()
        }

    async def get_tier(self, user_id: str) -> Optional[SubscriptionTier]:
        return self._tiers.get(user_id)

    def set_tier(self, user_id: str, tier: object) -> SubscriptionTier:
        resolved = resolve_tier(tier)
        self._tiers[user_id] = resolved
        return resolved

    def remove(self, user_id: str) -> None:
        self._tiers.pop(user_id, None)
