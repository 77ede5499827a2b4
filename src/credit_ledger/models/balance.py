from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .base import DBSerializableModel, ensure_utc, utcnow
from .subscription import SubscriptionTier
from .transaction import CreditTransaction

CURRENT_SCHEMA_VERSION = 2


class BalanceView(BaseModel):
    """Read-only bucket breakdown returned to callers."""

    user_id: str
    fresh: int
    carryover: int
    purchased: int
    total: int
    tier: SubscriptionTier
    carryover_expires_at: Optional[datetime] = None
    last_reset_at: datetime


class CreditBalance(DBSerializableModel):
    """
    Per-user credit balance, the single record every ledger operation
    reads and conditionally rewrites.

    ``pending_transactions`` is an outbox: log entries are committed with the
    balance mutation that produced them and copied to the transaction log
    afterwards.
    """

    collection_name: ClassVar[str] = "credit_balances"
    primary_key: ClassVar[str] = "user_id"

    user_id: str
    fresh_credits: int = Field(default=0, ge=0)
    carryover_credits: int = Field(default=0, ge=0)
    purchased_credits: int = Field(default=0, ge=0)
    last_reset_at: datetime
    carryover_expires_at: Optional[datetime] = None
    tier: SubscriptionTier
    updated_at: datetime = Field(default_factory=utcnow)

    version: int = Field(
        default=0, description="Bumped on every committed write; used for compare-and-swap."
    )
    transaction_count: int = 0
    applied_operations: List[str] = Field(default_factory=list)
    pending_transactions: List[CreditTransaction] = Field(default_factory=list)
    schema_version: int = CURRENT_SCHEMA_VERSION

    @field_validator("last_reset_at", "updated_at", "carryover_expires_at")
    @classmethod
    def _datetimes_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def limited_credits(self) -> int:
        return self.fresh_credits + self.carryover_credits

    @property
    def total_credits(self) -> int:
        return self.limited_credits + self.purchased_credits

    def view(self) -> BalanceView:
        return BalanceView(
            user_id=self.user_id,
            fresh=self.fresh_credits,
            carryover=self.carryover_credits,
            purchased=self.purchased_credits,
            total=self.total_credits,
            tier=self.tier,
            carryover_expires_at=self.carryover_expires_at,
            last_reset_at=self.last_reset_at,
        )


class ReconciliationReport(BaseModel):
    """
    Comparison of a stored balance with the buckets rebuilt by replaying
    the user's transaction log from zero.
    """

    user_id: str
    consistent: bool
    entries: int
    stored: Dict[str, int]
    replayed: Dict[str, int]
    missing_sequences: List[int] = Field(default_factory=list)
