from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .base import BaseDBManager
from ..models.balance import CreditBalance
from ..models.migration import upgrade_balance_document
from ..models.transaction import CreditTransaction


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Records are kept as serialized documents, the same way a document store
    would hold them, so legacy documents can be seeded through ``balances``
    and are upgraded on read.
    """

    def __init__(self, balances: Optional[Iterable[Mapping[str, Any]]] = None) -> None:
        self._balances: Dict[str, Dict[str, Any]] = {}
        self._transactions: Dict[str, Dict[str, Any]] = {}
        for doc in balances or ():
            user_id = doc.get("user_id") or doc.get("userId")
            self._balances[str(user_id)] = copy.deepcopy(dict(doc))

    # Balance records
    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        doc = copy.deepcopy(self._balances.get(user_id))
        # Yield after the read so concurrent writers really interleave
        await asyncio.sleep(0)
        if doc is None:
            return None
        return CreditBalance.model_validate(upgrade_balance_document(doc))

    async def insert_balance(self, balance: CreditBalance) -> bool:
        if balance.user_id in self._balances:
            return False
        self._balances[balance.user_id] = balance.serialize_for_db()
        return True

    async def replace_balance(self, balance: CreditBalance, expected_version: int) -> bool:
        stored = self._balances.get(balance.user_id)
        if stored is None or stored.get("version", 0) != expected_version:
            return False
        self._balances[balance.user_id] = balance.serialize_for_db()
        return True

    # Transaction log
    async def add_transactions(
        self, transactions: Sequence[CreditTransaction]
    ) -> List[CreditTransaction]:
        inserted: List[CreditTransaction] = []
        for tx in transactions:
            if tx.id in self._transactions:
                continue
            self._transactions[tx.id] = tx.serialize_for_db()
            inserted.append(tx)
        return inserted

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        doc = self._transactions.get(transaction_id)
        return None if doc is None else CreditTransaction.model_validate(doc)

    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None, newest_first: bool = False
    ) -> List[CreditTransaction]:
        txs = [
            CreditTransaction.model_validate(d)
            for d in self._transactions.values()
            if d["user_id"] == user_id
        ]
        txs.sort(key=lambda t: (t.sequence, t.timestamp), reverse=newest_first)
        return txs if limit is None else txs[:limit]

    async def get_transactions_for_operation(
        self, user_id: str, operation_id: str
    ) -> List[CreditTransaction]:
        txs = await self.get_transactions(user_id)
        return [t for t in txs if t.operation_id == operation_id]
