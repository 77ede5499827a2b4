from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional
from uuid import uuid4

from pydantic import Field, field_validator, model_validator

from .base import DBSerializableModel, ensure_utc, utcnow


class TransactionType(str, Enum):
    ALLOCATION = "allocation"
    CARRYOVER = "carryover"
    DEDUCTION = "deduction"
    PURCHASE = "purchase"
    REFUND = "refund"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class CreditTransaction(DBSerializableModel):
    """
    Immutable audit record of one balance mutation.

    ``amount`` is the signed net change of the total balance and always
    equals the sum of the per-bucket deltas, so replaying the deltas of all
    entries for a user from zero reproduces the stored buckets.
    """

    collection_name: ClassVar[str] = "credit_transactions"

    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    transaction_type: TransactionType
    amount: int

    fresh_delta: int = 0
    carryover_delta: int = 0
    purchased_delta: int = 0

    # Snapshot after the mutation
    fresh_after: int = Field(ge=0)
    carryover_after: int = Field(ge=0)
    purchased_after: int = Field(ge=0)

    feature: Optional[str] = None
    model_tier: Optional[str] = None
    tokens_used: Optional[int] = None

    sequence: int = Field(default=0, description="Per-user ordinal of this entry.")
    operation_id: Optional[str] = Field(
        default=None,
        description="Ledger operation that produced the entry; shared by entries of one commit.",
    )
    related_transaction_id: Optional[str] = Field(
        default=None, description="Deduction reversed by a refund."
    )
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _amount_matches_deltas(self) -> "CreditTransaction":
        if self.amount != self.fresh_delta + self.carryover_delta + self.purchased_delta:
            raise ValueError("amount must equal the sum of the bucket deltas")
        return self

    @property
    def total_after(self) -> int:
        return self.fresh_after + self.carryover_after + self.purchased_after
