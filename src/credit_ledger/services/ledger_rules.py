"""
Pure balance transitions used inside a balance transaction.

Each function takes a ``CreditBalance`` and returns a new one (or the same
object when nothing changes). Every bucket change appends a
``CreditTransaction`` to the balance's outbox in the same step, so a balance
can never be committed without the log entry that explains it.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, NamedTuple, Optional

from ..exceptions import InsufficientCreditsError, InvalidAmountError
from ..models.balance import CreditBalance
from ..models.subscription import AllocationPeriod, AllocationPolicy, SubscriptionTier
from ..models.transaction import CreditTransaction, TransactionType


class BucketUsage(NamedTuple):
    fresh: int
    carryover: int
    purchased: int

    @property
    def total(self) -> int:
        return self.fresh + self.carryover + self.purchased


def _utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc)


def is_reset_due(
    balance: CreditBalance, tier: SubscriptionTier, policy: AllocationPolicy, now: datetime
) -> bool:
    if balance.tier != tier:
        return True
    last = _utc(balance.last_reset_at)
    current = _utc(now)
    if policy.period is AllocationPeriod.DAILY:
        return last.date() < current.date()
    return (last.year, last.month) < (current.year, current.month)


def is_carryover_expired(balance: CreditBalance, now: datetime) -> bool:
    return balance.carryover_expires_at is not None and balance.carryover_expires_at < now


def carryover_expiry(now: datetime) -> datetime:
    """End of the last day of the month after ``now``'s month, UTC."""
    current = _utc(now)
    if current.month == 12:
        year, month = current.year + 1, 1
    else:
        year, month = current.year, current.month + 1
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, last_day, 23, 59, 59, 999999, tzinfo=timezone.utc)


def _commit_entry(
    balance: CreditBalance,
    transaction_type: TransactionType,
    now: datetime,
    operation_id: Optional[str],
    *,
    fresh: Optional[int] = None,
    carryover: Optional[int] = None,
    purchased: Optional[int] = None,
    updates: Optional[Dict[str, Any]] = None,
    **entry_fields: Any,
) -> CreditBalance:
    fresh = balance.fresh_credits if fresh is None else fresh
    carryover = balance.carryover_credits if carryover is None else carryover
    purchased = balance.purchased_credits if purchased is None else purchased
    if min(fresh, carryover, purchased) < 0:
        raise ValueError("credit buckets cannot go negative")

    sequence = balance.transaction_count + 1
    fresh_delta = fresh - balance.fresh_credits
    carryover_delta = carryover - balance.carryover_credits
    purchased_delta = purchased - balance.purchased_credits
    entry = CreditTransaction(
        user_id=balance.user_id,
        transaction_type=transaction_type,
        amount=fresh_delta + carryover_delta + purchased_delta,
        fresh_delta=fresh_delta,
        carryover_delta=carryover_delta,
        purchased_delta=purchased_delta,
        fresh_after=fresh,
        carryover_after=carryover,
        purchased_after=purchased,
        sequence=sequence,
        operation_id=operation_id,
        timestamp=now,
        **entry_fields,
    )
    return balance.model_copy(
        update={
            **(updates or {}),
            "fresh_credits": fresh,
            "carryover_credits": carryover,
            "purchased_credits": purchased,
            "transaction_count": sequence,
            "pending_transactions": [*balance.pending_transactions, entry],
            "updated_at": now,
        }
    )


def initialize_balance(
    user_id: str,
    policy: AllocationPolicy,
    now: datetime,
    operation_id: Optional[str] = None,
) -> CreditBalance:
    empty = CreditBalance(
        user_id=user_id,
        last_reset_at=now,
        tier=policy.tier,
        updated_at=now,
    )
    return _commit_entry(
        empty,
        TransactionType.ALLOCATION,
        now,
        operation_id,
        fresh=policy.amount,
        description=f"Initial {policy.tier.value} credit allocation",
        metadata={"allocated": policy.amount, "period": policy.period.value},
    )


def expire_carryover(
    balance: CreditBalance, now: datetime, operation_id: Optional[str] = None
) -> CreditBalance:
    if not is_carryover_expired(balance, now):
        return balance
    if balance.carryover_credits == 0:
        return balance.model_copy(update={"carryover_expires_at": None, "updated_at": now})
    return _commit_entry(
        balance,
        TransactionType.CARRYOVER,
        now,
        operation_id,
        carryover=0,
        updates={"carryover_expires_at": None},
        description="Carryover credits expired",
        metadata={"expired": balance.carryover_credits},
    )


def apply_reset(
    balance: CreditBalance,
    policy: AllocationPolicy,
    now: datetime,
    operation_id: Optional[str] = None,
) -> CreditBalance:
    """
    Start a new allocation period under ``policy``.

    Carryover tiers with a monthly period move the unused fresh allocation
    into the carryover bucket (after dropping an expired one) and push the
    expiry out; other tiers forfeit both. Purchased credits are untouched.
    """
    carryover = balance.carryover_credits
    expires_at = balance.carryover_expires_at
    expired = 0
    if is_carryover_expired(balance, now):
        expired, carryover, expires_at = carryover, 0, None

    carried = forfeited = dropped = 0
    if policy.allow_carryover and policy.period is AllocationPeriod.MONTHLY:
        carried = balance.fresh_credits
        if carried > 0:
            carryover += carried
            expires_at = carryover_expiry(now)
    else:
        forfeited, dropped = balance.fresh_credits, carryover
        carryover = 0
    if carryover == 0:
        expires_at = None

    return _commit_entry(
        balance,
        TransactionType.CARRYOVER if carried > 0 else TransactionType.ALLOCATION,
        now,
        operation_id,
        fresh=policy.amount,
        carryover=carryover,
        updates={
            "last_reset_at": max(now, balance.last_reset_at),
            "tier": policy.tier,
            "carryover_expires_at": expires_at,
        },
        description=f"{policy.tier.value} credit reset ({policy.period.value})",
        metadata={
            "allocated": policy.amount,
            "period": policy.period.value,
            "previous_tier": balance.tier.value,
            "carried_over": carried,
            "forfeited": forfeited,
            "expired_carryover": expired,
            "dropped_carryover": dropped,
        },
    )


def plan_deduction(balance: CreditBalance, amount: int) -> BucketUsage:
    """Split ``amount`` across fresh, carryover and purchased, in that order."""
    if balance.total_credits < amount:
        raise InsufficientCreditsError(
            needed=amount, available=balance.total_credits, balance=balance
        )
    remaining = amount
    fresh = min(remaining, balance.fresh_credits)
    remaining -= fresh
    carryover = min(remaining, balance.carryover_credits)
    remaining -= carryover
    purchased = min(remaining, balance.purchased_credits)
    return BucketUsage(fresh=fresh, carryover=carryover, purchased=purchased)


def apply_deduction(
    balance: CreditBalance,
    amount: int,
    now: datetime,
    operation_id: Optional[str] = None,
    **context: Any,
) -> CreditBalance:
    usage = plan_deduction(balance, amount)
    return _commit_entry(
        balance,
        TransactionType.DEDUCTION,
        now,
        operation_id,
        fresh=balance.fresh_credits - usage.fresh,
        carryover=balance.carryover_credits - usage.carryover,
        purchased=balance.purchased_credits - usage.purchased,
        **context,
    )


def apply_credit(
    balance: CreditBalance,
    amount: int,
    transaction_type: TransactionType,
    now: datetime,
    operation_id: Optional[str] = None,
    **context: Any,
) -> CreditBalance:
    """Add permanent credits for a purchase, refund or admin adjustment."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError(amount)
    return _commit_entry(
        balance,
        transaction_type,
        now,
        operation_id,
        purchased=balance.purchased_credits + amount,
        **context,
    )


def replay_buckets(entries: Iterable[CreditTransaction]) -> BucketUsage:
    """Rebuild bucket balances from zero by summing every entry's deltas."""
    fresh = carryover = purchased = 0
    for entry in entries:
        fresh += entry.fresh_delta
        carryover += entry.carryover_delta
        purchased += entry.purchased_delta
    return BucketUsage(fresh=fresh, carryover=carryover, purchased=purchased)
