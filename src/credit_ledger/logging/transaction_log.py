from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..db.base import BaseDBManager
from ..models.transaction import CreditTransaction
from ..services.ledger_rules import BucketUsage, replay_buckets

logger = logging.getLogger(__name__)


class TransactionLog:
    """
    Append-only credit transaction log backed by the database, with an
    optional line-delimited JSON mirror on disk for log aggregators.

    Appends are idempotent by entry id, so flushing the same balance outbox
    twice stores (and mirrors) each entry once.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def append(self, entries: Sequence[CreditTransaction]) -> List[CreditTransaction]:
        inserted = await self._db.add_transactions(entries)
        if inserted:
            self._mirror(inserted)
        return inserted

    def _mirror(self, entries: Iterable[CreditTransaction]) -> None:
        if self._file_path is None:
            return
        # The database copy is authoritative; the file is best-effort.
        try:
            with self._file_path.open("a", encoding="utf-8") as f:
                for entry in entries:
                    f.write(json.dumps(entry.serialize_for_db(), default=str) + "\n")
        except OSError as exc:
            logger.warning("Could not mirror transactions to %s: %s", self._file_path, exc)

    async def history(self, user_id: str, limit: int = 50) -> List[CreditTransaction]:
        """Most recent entries first."""
        return await self._db.get_transactions(user_id, limit=limit, newest_first=True)

    async def all_for_user(self, user_id: str) -> List[CreditTransaction]:
        return await self._db.get_transactions(user_id)

    async def find_by_operation(self, user_id: str, operation_id: str) -> List[CreditTransaction]:
        return await self._db.get_transactions_for_operation(user_id, operation_id)

    async def get(self, transaction_id: str) -> Optional[CreditTransaction]:
        return await self._db.get_transaction(transaction_id)

    @staticmethod
    def replay(entries: Iterable[CreditTransaction]) -> BucketUsage:
        return replay_buckets(entries)
