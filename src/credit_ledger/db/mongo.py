from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, UpdateOne
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..exceptions import StoreUnavailableError
from ..models.balance import CreditBalance
from ..models.migration import upgrade_balance_document
from ..models.transaction import CreditTransaction

logger = logging.getLogger(__name__)


def _to_bson(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_bson(v) for v in value]
    return value


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    Balances are keyed by ``_id = user_id`` and transactions by
    ``_id = transaction id``, which keeps the rest of the system agnostic of
    MongoDB specifics. No multi-document transactions are used: a balance
    write is a single conditional ``replace_one`` and the log is an
    idempotent upsert.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database
        self._balances = database[CreditBalance.collection_name]
        self._transactions = database[CreditTransaction.collection_name]

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        try:
            await self._transactions.create_index(
                [("user_id", ASCENDING), ("timestamp", DESCENDING)]
            )
            await self._transactions.create_index(
                [("user_id", ASCENDING), ("sequence", DESCENDING)]
            )
            await self._transactions.create_index(
                [("user_id", ASCENDING), ("operation_id", ASCENDING)]
            )
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc

    # Helper utilities
    @staticmethod
    def _encode(model: Any, key: str) -> Dict[str, Any]:
        data = _to_bson(model.serialize_for_db())
        data["_id"] = data[key]
        return data

    @staticmethod
    def _decode_transaction(doc: Optional[Mapping[str, Any]]) -> Optional[CreditTransaction]:
        if doc is None:
            return None
        data = dict(doc)
        data.pop("_id", None)
        return CreditTransaction.model_validate(data)

    # Balance records
    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        try:
            doc = await self._balances.find_one({"_id": user_id})
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        if doc is None:
            return None
        data = dict(doc)
        data.pop("_id", None)
        data.setdefault("user_id", user_id)
        return CreditBalance.model_validate(upgrade_balance_document(data))

    async def insert_balance(self, balance: CreditBalance) -> bool:
        try:
            await self._balances.insert_one(self._encode(balance, "user_id"))
        except DuplicateKeyError:
            return False
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return True

    async def replace_balance(self, balance: CreditBalance, expected_version: int) -> bool:
        query: Dict[str, Any] = {"_id": balance.user_id, "version": expected_version}
        if expected_version == 0:
            # Legacy documents were written before the version field existed
            query = {
                "_id": balance.user_id,
                "$or": [{"version": 0}, {"version": {"$exists": False}}],
            }
        try:
            result = await self._balances.replace_one(
                query, self._encode(balance, "user_id"), upsert=False
            )
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return result.matched_count == 1

    async def backfill_legacy_balances(self, source_collection: str) -> int:
        """
        Copy balance documents from a legacy collection into the balance
        collection, keyed by user id. Users that already have a record are
        left alone. Documents are upgraded lazily on first read.
        """
        copied = 0
        try:
            async for doc in self._db[source_collection].find({}):
                data = dict(doc)
                data.pop("_id", None)
                user_id = data.get("user_id") or data.get("userId")
                if not user_id:
                    logger.warning("Skipping legacy balance without a user id")
                    continue
                data["_id"] = str(user_id)
                data.setdefault("user_id", str(user_id))
                try:
                    await self._balances.insert_one(_to_bson(data))
                    copied += 1
                except DuplicateKeyError:
                    continue
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        logger.info("Backfilled %d legacy balances from %s", copied, source_collection)
        return copied

    # Transaction log
    async def add_transactions(
        self, transactions: Sequence[CreditTransaction]
    ) -> List[CreditTransaction]:
        if not transactions:
            return []
        ops = [
            UpdateOne({"_id": tx.id}, {"$setOnInsert": _to_bson(tx.serialize_for_db())}, upsert=True)
            for tx in transactions
        ]
        try:
            result = await self._transactions.bulk_write(ops, ordered=True)
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        inserted = set(result.upserted_ids or {})
        return [tx for i, tx in enumerate(transactions) if i in inserted]

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        try:
            doc = await self._transactions.find_one({"_id": transaction_id})
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return self._decode_transaction(doc)

    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None, newest_first: bool = False
    ) -> List[CreditTransaction]:
        cursor = self._transactions.find({"user_id": user_id}).sort(
            "sequence", DESCENDING if newest_first else ASCENDING
        )
        if limit is not None:
            cursor = cursor.limit(limit)
        try:
            docs = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return [self._decode_transaction(d) for d in docs if d is not None]  # type: ignore[misc]

    async def get_transactions_for_operation(
        self, user_id: str, operation_id: str
    ) -> List[CreditTransaction]:
        cursor = self._transactions.find(
            {"user_id": user_id, "operation_id": operation_id}
        ).sort("sequence", ASCENDING)
        try:
            docs = await cursor.to_list(length=None)
        except PyMongoError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return [self._decode_transaction(d) for d in docs if d is not None]  # type: ignore[misc]
