from __future__ import annotations

from datetime import datetime, timezone

import pytest

from credit_ledger.exceptions import (
    InvalidAmountError,
    PurchaseNotAllowedError,
    RefundLimitExceededError,
    UnknownModelTierError,
    UnknownTierError,
)
from credit_ledger.models.balance import CreditBalance
from credit_ledger.models.subscription import SubscriptionTier
from credit_ledger.models.transaction import TransactionType
from credit_ledger.models.usage import DenialReason, UsageRequest


def lite(input_tokens=0, output_tokens=0, **kwargs):
    return UsageRequest(
        model_tier="lite", input_tokens=input_tokens, output_tokens=output_tokens, **kwargs
    )


def buckets(view):
    return (view.fresh, view.carryover, view.purchased)


@pytest.mark.asyncio
async def test_new_user_gets_tier_allocation(service, tiers):
    tiers.set_tier("u1", "FREE")

    view = await service.get_balance("u1")

    assert buckets(view) == (15, 0, 0)
    assert view.total == 15
    [entry] = await service.history("u1")
    assert entry.transaction_type is TransactionType.ALLOCATION
    assert entry.amount == 15


@pytest.mark.asyncio
async def test_charge_free_lite_usage(service, tiers):
    tiers.set_tier("u1", "FREE")

    result = await service.charge_usage("u1", lite(1000, 500, feature="chat"))

    assert result.sufficient
    assert result.deducted == 9
    assert result.new_total == 6
    assert result.fresh_used == 9
    history = await service.history("u1")
    assert history[0].transaction_type is TransactionType.DEDUCTION
    assert history[0].amount == -9
    assert history[0].feature == "chat"
    assert history[0].tokens_used == 1500
    assert history[0].model_tier == "lite"
    assert history[0].id == result.transaction_id


@pytest.mark.asyncio
async def test_bucket_order_across_fresh_carryover_purchased(service, db, clock):
    await db.insert_balance(
        CreditBalance(
            user_id="u1",
            fresh_credits=5,
            carryover_credits=3,
            purchased_credits=10,
            last_reset_at=clock.now,
            carryover_expires_at=datetime(2025, 4, 30, tzinfo=timezone.utc),
            tier=SubscriptionTier.ULTRA,
            version=1,
        )
    )

    result = await service.deduct("u1", lite(2000), tier="ULTRA")

    assert result.deducted == 6
    assert buckets(result.balance) == (0, 2, 10)
    assert (result.fresh_used, result.carryover_used, result.purchased_used) == (5, 1, 0)


@pytest.mark.asyncio
async def test_insufficient_credits_leave_balance_unchanged(service, tiers):
    tiers.set_tier("u1", "FREE")
    first = await service.charge_usage("u1", lite(4333))
    assert first.deducted == 13
    entries_before = len(await service.history("u1"))

    result = await service.charge_usage("u1", lite(1666))

    assert not result.sufficient
    assert result.reason is DenialReason.INSUFFICIENT_CREDITS
    assert result.needed == 5
    assert result.deducted == 0
    assert buckets(result.balance) == (2, 0, 0)
    assert buckets(await service.get_balance("u1")) == (2, 0, 0)
    assert len(await service.history("u1")) == entries_before


@pytest.mark.asyncio
async def test_zero_cost_charge_is_a_no_op(service, tiers):
    tiers.set_tier("u1", "FREE")
    await service.get_balance("u1")

    result = await service.charge_usage("u1", lite())

    assert result.sufficient
    assert result.deducted == 0
    assert result.transaction_id is None
    assert len(await service.history("u1")) == 1


@pytest.mark.asyncio
async def test_model_not_allowed_for_tier(service, tiers):
    tiers.set_tier("u1", "FREE")

    result = await service.charge_usage(
        "u1", UsageRequest(model_tier="pro", input_tokens=1000)
    )

    assert not result.sufficient
    assert result.reason is DenialReason.MODEL_NOT_ALLOWED
    assert result.new_total == 15


@pytest.mark.asyncio
async def test_unknown_model_tier_fails_before_touching_store(service, db, tiers):
    tiers.set_tier("u1", "FREE")

    with pytest.raises(UnknownModelTierError):
        await service.deduct("u1", UsageRequest(model_tier="mystery", input_tokens=5))
    assert await db.get_balance("u1") is None


@pytest.mark.asyncio
async def test_unknown_user_without_tier(service):
    with pytest.raises(UnknownTierError):
        await service.get_balance("nobody")


@pytest.mark.asyncio
async def test_explicit_tier_overrides_provider(service, tiers):
    tiers.set_tier("u1", "FREE")
    view = await service.get_balance("u1", tier="PRO")
    assert view.tier is SubscriptionTier.PRO
    assert view.fresh == 1000


@pytest.mark.asyncio
async def test_reset_applies_once_per_period(service, tiers, clock):
    tiers.set_tier("u1", "FREE")
    await service.charge_usage("u1", lite(1000, 500))

    await service.get_balance("u1")
    await service.get_balance("u1")
    assert (await service.get_balance("u1")).fresh == 6

    clock.advance(days=1)
    first = await service.get_balance("u1")
    second = await service.get_balance("u1")

    assert first.fresh == second.fresh == 15
    allocations = [
        e for e in await service.history("u1") if e.transaction_type is TransactionType.ALLOCATION
    ]
    assert len(allocations) == 2


@pytest.mark.asyncio
async def test_due_reset_applies_before_deduction(service, tiers, clock):
    tiers.set_tier("u1", "FREE")
    await service.charge_usage("u1", lite(4333))
    clock.advance(days=1)

    result = await service.charge_usage("u1", lite(1000, 500))

    assert result.sufficient
    assert result.new_total == 6
    types = [e.transaction_type for e in await service.history("u1")]
    assert types[:2] == [TransactionType.DEDUCTION, TransactionType.ALLOCATION]


@pytest.mark.asyncio
async def test_insufficient_charge_still_applies_due_reset(service, tiers, clock):
    tiers.set_tier("u1", "FREE")
    await service.charge_usage("u1", lite(4333))
    clock.advance(days=1)

    result = await service.charge_usage("u1", lite(10_000))

    assert not result.sufficient
    assert result.needed == 30
    assert result.balance.fresh == 15


@pytest.mark.asyncio
async def test_carryover_expires_on_read(service, db, clock):
    await db.insert_balance(
        CreditBalance(
            user_id="u1",
            fresh_credits=10,
            carryover_credits=500,
            last_reset_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
            carryover_expires_at=datetime(2025, 3, 5, tzinfo=timezone.utc),
            tier=SubscriptionTier.ULTRA,
        )
    )

    view = await service.get_balance("u1", tier="ULTRA")

    assert buckets(view) == (10, 0, 0)
    assert view.carryover_expires_at is None
    [entry] = await service.history("u1")
    assert entry.transaction_type is TransactionType.CARRYOVER
    assert entry.amount == -500


@pytest.mark.asyncio
async def test_ultra_carryover_across_months(service, tiers, clock):
    tiers.set_tier("u1", "ULTRA")
    await service.charge_usage("u1", lite(2000))

    clock.set(datetime(2025, 4, 2, tzinfo=timezone.utc))
    view = await service.get_balance("u1")

    assert buckets(view) == (10000, 9994, 0)
    assert view.carryover_expires_at == datetime(2025, 5, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_tier_change_forces_exactly_one_reset(service, tiers, clock):
    tiers.set_tier("u1", "FREE")
    await service.charge_usage("u1", lite(1000, 500))

    tiers.set_tier("u1", "PRO")
    first = await service.get_balance("u1")
    clock.advance(hours=1)
    second = await service.get_balance("u1")

    assert first.tier is SubscriptionTier.PRO
    assert buckets(first) == buckets(second) == (1000, 0, 0)
    allocations = [
        e for e in await service.history("u1") if e.transaction_type is TransactionType.ALLOCATION
    ]
    assert len(allocations) == 2
    assert allocations[0].metadata["previous_tier"] == "FREE"


@pytest.mark.asyncio
async def test_purchase_requires_eligible_tier(service, tiers):
    tiers.set_tier("free-user", "FREE")
    tiers.set_tier("pro-user", "PRO")

    with pytest.raises(PurchaseNotAllowedError):
        await service.purchase_credits("free-user", 100)

    view = await service.purchase_credits("pro-user", 500)
    assert buckets(view) == (1000, 0, 500)


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5])
async def test_non_positive_amount_rejected(service, tiers, amount):
    tiers.set_tier("u1", "PRO")
    with pytest.raises(InvalidAmountError):
        await service.purchase_credits("u1", amount)
    with pytest.raises(InvalidAmountError):
        await service.add_purchased_credits("u1", amount, TransactionType.ADMIN_ADJUSTMENT)


@pytest.mark.asyncio
async def test_admin_adjustment_bypasses_purchase_flag(service, tiers):
    tiers.set_tier("u1", "FREE")

    view = await service.add_purchased_credits(
        "u1", 40, TransactionType.ADMIN_ADJUSTMENT, description="support credit"
    )

    assert buckets(view) == (15, 0, 40)
    assert (await service.history("u1"))[0].transaction_type is TransactionType.ADMIN_ADJUSTMENT


@pytest.mark.asyncio
async def test_deduction_type_is_not_a_grant(service, tiers):
    tiers.set_tier("u1", "PRO")
    with pytest.raises(ValueError):
        await service.add_purchased_credits("u1", 10, TransactionType.DEDUCTION)


@pytest.mark.asyncio
async def test_purchase_package(service, tiers):
    tiers.set_tier("u1", "ULTRA")

    view = await service.purchase_package("u1", 1000)

    assert view.purchased == 1000
    entry = (await service.history("u1"))[0]
    assert entry.metadata == {"package_amount": 1000, "price": 900}
    with pytest.raises(InvalidAmountError):
        await service.purchase_package("u1", 123)


@pytest.mark.asyncio
async def test_refund_limited_to_deducted_amount(service, tiers):
    tiers.set_tier("u1", "FREE")
    tiers.set_tier("u2", "FREE")
    charge = await service.charge_usage("u1", lite(1000, 500))

    view = await service.refund_credits("u1", 5, related_transaction_id=charge.transaction_id)
    assert buckets(view) == (6, 0, 5)

    with pytest.raises(RefundLimitExceededError):
        await service.refund_credits("u1", 5, related_transaction_id=charge.transaction_id)
    with pytest.raises(RefundLimitExceededError):
        await service.refund_credits("u2", 1, related_transaction_id=charge.transaction_id)

    view = await service.refund_credits("u1", 4, related_transaction_id=charge.transaction_id)
    assert view.purchased == 9
    refund = (await service.history("u1"))[0]
    assert refund.transaction_type is TransactionType.REFUND
    assert refund.related_transaction_id == charge.transaction_id


@pytest.mark.asyncio
async def test_idempotency_key_charges_once(service, tiers):
    tiers.set_tier("u1", "FREE")

    first = await service.charge_usage("u1", lite(1000, 500), idempotency_key="req-1")
    second = await service.charge_usage("u1", lite(1000, 500), idempotency_key="req-1")

    assert not first.duplicate
    assert second.duplicate
    assert second.transaction_id == first.transaction_id
    assert second.deducted == 9
    assert (await service.get_balance("u1")).total == 6


@pytest.mark.asyncio
async def test_history_is_newest_first_and_limited(service, tiers):
    tiers.set_tier("u1", "PRO")
    for amount in (10, 20, 30):
        await service.purchase_credits("u1", amount)

    history = await service.history("u1", limit=2)

    assert [e.amount for e in history] == [30, 20]
    assert history[0].sequence > history[1].sequence


@pytest.mark.asyncio
async def test_reconcile_after_mixed_operations(service, tiers, clock):
    tiers.set_tier("u1", "ULTRA")
    await service.charge_usage("u1", lite(2000))
    await service.purchase_credits("u1", 300)
    clock.set(datetime(2025, 4, 3, tzinfo=timezone.utc))
    await service.charge_usage("u1", UsageRequest(model_tier="pro", input_tokens=100_000))
    charge = await service.charge_usage("u1", lite(1000, 500))
    await service.refund_credits("u1", 9, related_transaction_id=charge.transaction_id)

    report = await service.reconcile("u1")

    assert report.consistent
    assert report.missing_sequences == []
    assert report.entries == 7
    assert report.stored == report.replayed


@pytest.mark.asyncio
async def test_transactions_mirrored_to_file(service, tiers, tmp_path):
    tiers.set_tier("u1", "FREE")
    await service.charge_usage("u1", lite(1000, 500))

    lines = (tmp_path / "transactions.log").read_text().splitlines()
    assert len(lines) == 2
    assert '"deduction"' in lines[1]
