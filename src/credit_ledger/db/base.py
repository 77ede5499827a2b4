from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..models.balance import CreditBalance
from ..models.transaction import CreditTransaction


class BaseDBManager(ABC):
    """
    DB-agnostic async manager interface.

    Concrete implementations only need single-document atomicity: balances
    are replaced with a compare-and-swap on their ``version`` field and
    transaction entries are inserted idempotently by id. Backend failures
    are reported as ``StoreUnavailableError``.
    """

    # Balance records
    @abstractmethod
    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        """Return the stored balance, upgraded to the current schema, or None."""
        ...

    @abstractmethod
    async def insert_balance(self, balance: CreditBalance) -> bool:
        """Create the record; return False if one already exists for the user."""
        ...

    @abstractmethod
    async def replace_balance(self, balance: CreditBalance, expected_version: int) -> bool:
        """
        Replace the record only if its stored version is still
        ``expected_version``. Return False when another writer got there first.
        """
        ...

    # Transaction log
    @abstractmethod
    async def add_transactions(
        self, transactions: Sequence[CreditTransaction]
    ) -> List[CreditTransaction]:
        """
        Insert entries that are not stored yet. Entries whose id already
        exists are skipped. Returns only the newly inserted entries.
        """
        ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]: ...

    @abstractmethod
    async def get_transactions(
        self, user_id: str, limit: Optional[int] = None, newest_first: bool = False
    ) -> List[CreditTransaction]:
        """Entries for a user ordered by sequence."""
        ...

    @abstractmethod
    async def get_transactions_for_operation(
        self, user_id: str, operation_id: str
    ) -> List[CreditTransaction]: ...
