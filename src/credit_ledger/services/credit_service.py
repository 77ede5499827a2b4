from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from ..db.store import BalanceStore
from ..exceptions import (
    InsufficientCreditsError,
    InvalidAmountError,
    PurchaseNotAllowedError,
    RefundLimitExceededError,
    UnknownTierError,
)
from ..logging.transaction_log import TransactionLog
from ..models.balance import BalanceView, CreditBalance, ReconciliationReport
from ..models.base import utcnow
from ..models.subscription import CREDIT_PACKAGES, AllocationPolicy, CreditPackage, SubscriptionTier
from ..models.transaction import CreditTransaction, TransactionType
from ..models.usage import ChargeResult, DenialReason, UsageCostBreakdown, UsageRequest
from .allocation_policy import AllocationPolicyTable, resolve_tier
from .ledger_rules import (
    apply_credit,
    apply_deduction,
    apply_reset,
    expire_carryover,
    initialize_balance,
    is_reset_due,
)
from .pricing_calculator import PricingCalculator
from .subscription_service import TierProvider

logger = logging.getLogger(__name__)

_CREDIT_TYPES = frozenset(
    {TransactionType.PURCHASE, TransactionType.REFUND, TransactionType.ADMIN_ADJUSTMENT}
)


class CreditService:
    """
    Ledger engine: lazy initialization, period resets, carryover expiry,
    bucket-ordered deductions and credit grants for one user balance at a
    time.

    Every mutation runs as a single ``BalanceStore.transact`` call, so a due
    reset and the operation that triggered it commit together, and the log
    entries they produce are committed with them.
    """

    def __init__(
        self,
        store: BalanceStore,
        transaction_log: TransactionLog,
        policies: Optional[AllocationPolicyTable] = None,
        pricing: Optional[PricingCalculator] = None,
        tier_provider: Optional[TierProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._log = transaction_log
        self._policies = policies or AllocationPolicyTable()
        self._pricing = pricing or PricingCalculator()
        self._tier_provider = tier_provider
        self._clock = clock

    # Pricing and permissions
    def can_use_model(self, tier: object, model_tier: object) -> bool:
        return self._policies.can_use_model(tier, model_tier)

    def estimate_cost(self, usage: UsageRequest) -> int:
        return self._pricing.credits(usage)

    def price_usage(self, usage: UsageRequest) -> UsageCostBreakdown:
        return self._pricing.breakdown(usage)

    # Balance reads
    async def resolve_user_tier(self, user_id: str, tier: object = None) -> SubscriptionTier:
        """
        Tier to apply for ``user_id``: the explicit value, else the tier
        provider's, else the tier stored at the last reset.
        """
        if tier is not None:
            return resolve_tier(tier)
        if self._tier_provider is not None:
            provided = await self._tier_provider.get_tier(user_id)
            if provided is not None:
                return resolve_tier(provided)
        stored = await self._store.get(user_id)
        if stored is not None:
            return stored.tier
        raise UnknownTierError(None)

    async def ensure_current(self, user_id: str, tier: object = None) -> CreditBalance:
        """Return the balance after applying any due initialization, reset or expiry."""
        policy = self._policies.policy(await self.resolve_user_tier(user_id, tier))
        now = self._clock()
        operation_id = uuid4().hex

        def bring_current(balance: Optional[CreditBalance]) -> Optional[CreditBalance]:
            updated = self._current(balance, user_id, policy, now, operation_id)
            return None if updated is balance else updated

        commit = await self._store.transact(user_id, bring_current, operation_id=operation_id)
        return commit.require_record()

    async def get_balance(self, user_id: str, tier: object = None) -> BalanceView:
        return (await self.ensure_current(user_id, tier)).view()

    @staticmethod
    def _current(
        balance: Optional[CreditBalance],
        user_id: str,
        policy: AllocationPolicy,
        now: datetime,
        operation_id: str,
    ) -> CreditBalance:
        if balance is None:
            return initialize_balance(user_id, policy, now, operation_id)
        if is_reset_due(balance, policy.tier, policy, now):
            return apply_reset(balance, policy, now, operation_id)
        return expire_carryover(balance, now, operation_id)

    # Charging
    async def charge_usage(
        self,
        user_id: str,
        usage: UsageRequest,
        tier: object = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        """
        Check model permission for the user's tier, price ``usage`` and
        deduct it. A denied charge is returned as a result, never raised.
        """
        resolved = await self.resolve_user_tier(user_id, tier)
        if not self._policies.can_use_model(resolved, usage.model_tier):
            breakdown = self._pricing.breakdown(usage)
            balance = await self.ensure_current(user_id, resolved)
            logger.info(
                "Denied %s model for user %s on tier %s",
                breakdown.model_tier,
                user_id,
                resolved.value,
            )
            return ChargeResult(
                user_id=user_id,
                sufficient=False,
                needed=breakdown.final_credits,
                new_total=balance.total_credits,
                balance=balance.view(),
                breakdown=breakdown,
                reason=DenialReason.MODEL_NOT_ALLOWED,
            )
        return await self.deduct(user_id, usage, resolved, idempotency_key)

    async def deduct(
        self,
        user_id: str,
        usage: UsageRequest,
        tier: object = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeResult:
        # Price first so an unknown model tier fails before any I/O
        needed, breakdown = self._pricing.cost(usage)
        policy = self._policies.policy(await self.resolve_user_tier(user_id, tier))
        now = self._clock()
        operation_id = idempotency_key or uuid4().hex

        def charge(balance: Optional[CreditBalance]) -> Optional[CreditBalance]:
            current = self._current(balance, user_id, policy, now, operation_id)
            if needed == 0:
                return None if current is balance else current
            return apply_deduction(
                current,
                needed,
                now,
                operation_id,
                feature=usage.feature,
                model_tier=breakdown.model_tier,
                tokens_used=usage.tokens_used,
                description=f"{breakdown.model_tier} usage",
                metadata={"breakdown": breakdown.model_dump(mode="json")},
            )

        try:
            commit = await self._store.transact(user_id, charge, operation_id=operation_id)
        except InsufficientCreditsError as exc:
            logger.info(
                "Insufficient credits for user %s: needed %d, available %d",
                user_id,
                exc.needed,
                exc.available,
            )
            # The charge left the balance alone; still apply a due reset
            balance = await self.ensure_current(user_id, policy.tier)
            return ChargeResult(
                user_id=user_id,
                sufficient=False,
                needed=needed,
                new_total=balance.total_credits,
                balance=balance.view(),
                breakdown=breakdown,
                reason=DenialReason.INSUFFICIENT_CREDITS,
            )

        record = commit.require_record()
        if commit.duplicate:
            entries = await self._log.find_by_operation(user_id, operation_id)
        else:
            entries = record.pending_transactions
        entry = next(
            (e for e in entries if e.transaction_type is TransactionType.DEDUCTION), None
        )
        return self._charge_result(record, breakdown, entry, commit.duplicate)

    @staticmethod
    def _charge_result(
        record: CreditBalance,
        breakdown: UsageCostBreakdown,
        entry: Optional[CreditTransaction],
        duplicate: bool,
    ) -> ChargeResult:
        result = ChargeResult(
            user_id=record.user_id,
            sufficient=True,
            needed=breakdown.final_credits,
            new_total=record.total_credits,
            balance=record.view(),
            breakdown=breakdown,
            duplicate=duplicate,
        )
        if entry is not None:
            result.deducted = -entry.amount
            result.fresh_used = -entry.fresh_delta
            result.carryover_used = -entry.carryover_delta
            result.purchased_used = -entry.purchased_delta
            result.transaction_id = entry.id
        return result

    # Credit grants
    async def add_purchased_credits(
        self,
        user_id: str,
        amount: int,
        reason: TransactionType = TransactionType.PURCHASE,
        description: Optional[str] = None,
        tier: object = None,
        idempotency_key: Optional[str] = None,
        related_transaction_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BalanceView:
        """
        Add permanent credits to the purchased bucket. ``reason`` is the
        logged transaction type: purchase, refund or admin_adjustment.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)
        reason = TransactionType(reason)
        if reason not in _CREDIT_TYPES:
            raise ValueError(f"{reason.value} is not a credit grant")

        policy = self._policies.policy(await self.resolve_user_tier(user_id, tier))
        now = self._clock()
        operation_id = idempotency_key or uuid4().hex

        def grant(balance: Optional[CreditBalance]) -> CreditBalance:
            current = self._current(balance, user_id, policy, now, operation_id)
            return apply_credit(
                current,
                amount,
                reason,
                now,
                operation_id,
                description=description,
                related_transaction_id=related_transaction_id,
                metadata=metadata or {},
            )

        commit = await self._store.transact(user_id, grant, operation_id=operation_id)
        logger.debug("Granted %d %s credits to user %s", amount, reason.value, user_id)
        return commit.require_record().view()

    async def purchase_credits(
        self,
        user_id: str,
        amount: int,
        tier: object = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BalanceView:
        resolved = await self.resolve_user_tier(user_id, tier)
        if not self._policies.policy(resolved).allow_purchase:
            raise PurchaseNotAllowedError(resolved.value)
        return await self.add_purchased_credits(
            user_id,
            amount,
            TransactionType.PURCHASE,
            description=f"Purchased {amount} credits",
            tier=resolved,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )

    @staticmethod
    def find_package(package_amount: int) -> CreditPackage:
        for package in CREDIT_PACKAGES:
            if package.amount == package_amount:
                return package
        raise InvalidAmountError(package_amount)

    async def purchase_package(
        self,
        user_id: str,
        package_amount: int,
        tier: object = None,
        idempotency_key: Optional[str] = None,
    ) -> BalanceView:
        package = self.find_package(package_amount)
        return await self.purchase_credits(
            user_id,
            package.credits,
            tier=tier,
            idempotency_key=idempotency_key,
            metadata={"package_amount": package.amount, "price": package.price},
        )

    async def refund_credits(
        self,
        user_id: str,
        amount: int,
        related_transaction_id: Optional[str] = None,
        description: Optional[str] = None,
        tier: object = None,
        idempotency_key: Optional[str] = None,
    ) -> BalanceView:
        """
        Return credits to the purchased bucket. When the refunded deduction
        is named, refunds against it may not add up to more than it took.
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount)
        if related_transaction_id is not None:
            refundable = await self._refundable(user_id, related_transaction_id)
            if amount > refundable:
                raise RefundLimitExceededError(related_transaction_id, amount, refundable)
        return await self.add_purchased_credits(
            user_id,
            amount,
            TransactionType.REFUND,
            description=description or "Refund",
            tier=tier,
            idempotency_key=idempotency_key,
            related_transaction_id=related_transaction_id,
        )

    async def _refundable(self, user_id: str, transaction_id: str) -> int:
        await self._store.flush_pending(user_id)
        original = await self._log.get(transaction_id)
        if (
            original is None
            or original.user_id != user_id
            or original.transaction_type is not TransactionType.DEDUCTION
        ):
            return 0
        refunded = sum(
            e.amount
            for e in await self._log.all_for_user(user_id)
            if e.transaction_type is TransactionType.REFUND
            and e.related_transaction_id == transaction_id
        )
        return max(-original.amount - refunded, 0)

    # Audit
    async def history(self, user_id: str, limit: int = 50) -> List[CreditTransaction]:
        """Most recent transaction log entries first."""
        await self._store.flush_pending(user_id)
        return await self._log.history(user_id, limit=limit)

    async def reconcile(self, user_id: str) -> ReconciliationReport:
        record = await self._store.flush_pending(user_id)
        entries = await self._log.all_for_user(user_id)
        replayed = TransactionLog.replay(entries)

        stored = {"fresh": 0, "carryover": 0, "purchased": 0}
        expected_count = 0
        if record is not None:
            stored = {
                "fresh": record.fresh_credits,
                "carryover": record.carryover_credits,
                "purchased": record.purchased_credits,
            }
            expected_count = record.transaction_count
        replayed_buckets = {
            "fresh": replayed.fresh,
            "carryover": replayed.carryover,
            "purchased": replayed.purchased,
        }
        seen = {e.sequence for e in entries}
        missing = [n for n in range(1, expected_count + 1) if n not in seen]

        consistent = stored == replayed_buckets and not missing
        if not consistent:
            logger.warning(
                "Balance for user %s does not match its transaction log: stored=%s replayed=%s missing=%s",
                user_id,
                stored,
                replayed_buckets,
                missing,
            )
        return ReconciliationReport(
            user_id=user_id,
            consistent=consistent,
            entries=len(entries),
            stored=stored,
            replayed=replayed_buckets,
            missing_sequences=missing,
        )
