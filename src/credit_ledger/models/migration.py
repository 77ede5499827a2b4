"""
Versioned conversion of stored balance documents to the current shape.

Known shapes:

- v0: a bare numeric credit count, e.g. ``{"user_id": "u1", "credits": 120}``.
  All of it becomes purchased credits, since nothing records when it expires.
- v1: camelCase three-bucket documents with ``monthlyCredits``,
  ``carryoverCredits``, ``extraCredits``, ``lastResetDate``,
  ``carryoverExpiryDate`` and ``tier``.
- v2: the current ``CreditBalance`` shape (carries ``schema_version``).

Upgraded documents get an opening-balance ``admin_adjustment`` entry in
their outbox with a deterministic id, so converting the same document twice
yields the same entry and replaying the log still reconciles.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping

from ..exceptions import UnknownTierError
from .balance import CURRENT_SCHEMA_VERSION
from .subscription import SubscriptionTier
from .transaction import CreditTransaction, TransactionType

# Legacy documents carry no reset date we can trust; an epoch reset makes
# the first read after migration grant the current period's allocation.
LEGACY_RESET_AT = datetime(1970, 1, 1, tzinfo=timezone.utc)


def detect_schema_version(doc: Mapping[str, Any]) -> int:
    if "schema_version" in doc:
        return int(doc["schema_version"])
    if "monthlyCredits" in doc or "extraCredits" in doc:
        return 1
    if isinstance(doc.get("credits"), (int, float)):
        return 0
    raise ValueError(f"unrecognized balance document shape: keys={sorted(doc)}")


def _user_id(doc: Mapping[str, Any]) -> str:
    user_id = doc.get("user_id") or doc.get("userId") or doc.get("_id")
    if not user_id:
        raise ValueError("legacy balance document has no user id")
    return str(user_id)


def _tier(raw: Any) -> str:
    if not raw:
        return SubscriptionTier.FREE.value
    try:
        return SubscriptionTier(str(raw).upper()).value
    except ValueError:
        raise UnknownTierError(raw) from None


def _opening_entry(doc: Dict[str, Any], from_version: int) -> Dict[str, Any]:
    fresh = doc["fresh_credits"]
    carryover = doc["carryover_credits"]
    purchased = doc["purchased_credits"]
    entry = CreditTransaction(
        id=f"opening-{doc['user_id']}-v{from_version}",
        user_id=doc["user_id"],
        transaction_type=TransactionType.ADMIN_ADJUSTMENT,
        amount=fresh + carryover + purchased,
        fresh_delta=fresh,
        carryover_delta=carryover,
        purchased_delta=purchased,
        fresh_after=fresh,
        carryover_after=carryover,
        purchased_after=purchased,
        sequence=1,
        description=f"Opening balance migrated from schema v{from_version}",
        timestamp=doc.get("updated_at") or LEGACY_RESET_AT,
    )
    return entry.serialize_for_db()


def _from_v0(doc: Mapping[str, Any]) -> Dict[str, Any]:
    subscription = doc.get("subscription") or {}
    credits = max(int(doc["credits"]), 0)
    return {
        "user_id": _user_id(doc),
        "fresh_credits": 0,
        "carryover_credits": 0,
        "purchased_credits": credits,
        "last_reset_at": LEGACY_RESET_AT,
        "tier": _tier(subscription.get("tier") if isinstance(subscription, Mapping) else None),
        "updated_at": doc.get("updatedAt") or LEGACY_RESET_AT,
    }


def _from_v1(doc: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": _user_id(doc),
        "fresh_credits": max(int(doc.get("monthlyCredits") or 0), 0),
        "carryover_credits": max(int(doc.get("carryoverCredits") or 0), 0),
        "purchased_credits": max(int(doc.get("extraCredits") or 0), 0),
        "last_reset_at": doc.get("lastResetDate") or LEGACY_RESET_AT,
        "carryover_expires_at": doc.get("carryoverExpiryDate"),
        "tier": _tier(doc.get("tier")),
        "updated_at": doc.get("updatedAt") or doc.get("lastResetDate") or LEGACY_RESET_AT,
    }


_UPGRADERS: Dict[int, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
    0: _from_v0,
    1: _from_v1,
}


def upgrade_balance_document(doc: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return ``doc`` converted to the current schema. Current documents are
    returned as a shallow copy; legacy ones are rebuilt.
    """
    version = detect_schema_version(doc)
    if version == CURRENT_SCHEMA_VERSION:
        return dict(doc)
    if version not in _UPGRADERS:
        raise ValueError(f"cannot upgrade balance document from schema v{version}")

    upgraded = _UPGRADERS[version](doc)
    upgraded["version"] = 0
    upgraded["schema_version"] = CURRENT_SCHEMA_VERSION
    if upgraded["fresh_credits"] or upgraded["carryover_credits"] or upgraded["purchased_credits"]:
        upgraded["pending_transactions"] = [_opening_entry(upgraded, version)]
        upgraded["transaction_count"] = 1
    return upgraded
