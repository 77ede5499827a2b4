"""
Optimistic read-modify-write transactions over a single balance record.

``BalanceStore.transact`` reads the record, hands it to a pure function and
writes the result back with a compare-and-swap on ``version``. A lost race
re-reads and re-runs the function, with jittered backoff, up to a bounded
number of attempts.

Log entries travel inside the record (``pending_transactions``) and are
copied to the transaction log after the write lands. Every later transaction
first re-flushes whatever is still in the outbox, so an entry whose balance
change committed is never lost even if the process dies right after the
write.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional
from uuid import uuid4

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .base import BaseDBManager
from ..exceptions import StoreUnavailableError, TransactionConflictError
from ..logging.transaction_log import TransactionLog
from ..models.balance import CreditBalance

logger = logging.getLogger(__name__)

# Operation ids remembered per record for duplicate detection
MAX_APPLIED_OPERATIONS = 20

BalanceFn = Callable[[Optional[CreditBalance]], Optional[CreditBalance]]


class StoreCommit(BaseModel):
    record: Optional[CreditBalance] = None
    committed: bool = False
    duplicate: bool = False
    operation_id: str

    def require_record(self) -> CreditBalance:
        """Return the record, raising when the transaction left no balance behind."""
        if self.record is None:
            raise StoreUnavailableError(
                f"no balance record after operation {self.operation_id}"
            )
        return self.record


class _WriteConflict(Exception):
    pass


class BalanceStore:
    def __init__(
        self,
        db: BaseDBManager,
        transaction_log: TransactionLog,
        max_attempts: int = 5,
        wait_multiplier: float = 0.05,
        max_wait: float = 1.0,
    ) -> None:
        self._db = db
        self._log = transaction_log
        self._max_attempts = max_attempts
        self._wait_multiplier = wait_multiplier
        self._max_wait = max_wait

    async def get(self, user_id: str) -> Optional[CreditBalance]:
        return await self._db.get_balance(user_id)

    async def create(self, balance: CreditBalance) -> bool:
        created = await self._db.insert_balance(balance)
        if created:
            await self._publish(balance)
        return created

    async def flush_pending(self, user_id: str) -> Optional[CreditBalance]:
        """Copy any outbox entries of the stored record to the transaction log."""
        record = await self.get(user_id)
        if record is not None and record.pending_transactions:
            await self._log.append(record.pending_transactions)
        return record

    async def transact(
        self, user_id: str, fn: BalanceFn, operation_id: Optional[str] = None
    ) -> StoreCommit:
        """
        Apply ``fn`` to the user's record atomically.

        ``fn`` receives the current record (None if the user has none) and
        returns the replacement, or None to leave the record untouched. It may
        run more than once and must not have side effects. Exceptions it
        raises abort the transaction and propagate unchanged.

        When ``operation_id`` was already applied to the record the call is a
        no-op reported as ``duplicate``.
        """
        operation_id = operation_id or uuid4().hex
        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_random_exponential(
                    multiplier=self._wait_multiplier, max=self._max_wait
                ),
                retry=retry_if_exception_type((_WriteConflict, StoreUnavailableError)),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    commit = await self._attempt(user_id, fn, operation_id)
        except _WriteConflict:
            logger.warning(
                "Balance transaction for user %s abandoned after %d conflicting attempts",
                user_id,
                attempts,
            )
            raise TransactionConflictError(user_id, attempts) from None
        return commit

    async def _attempt(self, user_id: str, fn: BalanceFn, operation_id: str) -> StoreCommit:
        current = await self._db.get_balance(user_id)
        if current is not None and operation_id in current.applied_operations:
            await self._publish(current)
            return StoreCommit(
                record=current, committed=False, duplicate=True, operation_id=operation_id
            )

        base = current
        if current is not None and current.pending_transactions:
            await self._log.append(current.pending_transactions)
            base = current.model_copy(update={"pending_transactions": []})

        updated = fn(base)
        if updated is None:
            return StoreCommit(record=current, committed=False, operation_id=operation_id)

        expected_version = current.version if current is not None else 0
        updated = updated.model_copy(
            update={
                "version": expected_version + 1,
                "applied_operations": [*updated.applied_operations, operation_id][
                    -MAX_APPLIED_OPERATIONS:
                ],
            }
        )
        if current is None:
            written = await self._db.insert_balance(updated)
        else:
            written = await self._db.replace_balance(updated, expected_version)
        if not written:
            logger.debug("Version conflict writing balance for user %s", user_id)
            raise _WriteConflict(user_id)

        await self._publish(updated)
        return StoreCommit(record=updated, committed=True, operation_id=operation_id)

    async def _publish(self, record: CreditBalance) -> None:
        if not record.pending_transactions:
            return
        try:
            await self._log.append(record.pending_transactions)
        except StoreUnavailableError as exc:
            # Committed already; the outbox is re-flushed by the next transaction
            logger.warning(
                "Deferred transaction log flush for user %s: %s", record.user_id, exc
            )
