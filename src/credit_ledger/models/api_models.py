from typing import List, Optional

from pydantic import BaseModel, Field

from .transaction import CreditTransaction
from .usage import UsageRequest


class EstimateRequest(BaseModel):
    usage: UsageRequest


class ChargeRequest(BaseModel):
    user_id: str
    usage: UsageRequest
    tier: Optional[str] = None
    idempotency_key: Optional[str] = None


class PurchaseRequest(BaseModel):
    user_id: str
    amount: int
    tier: Optional[str] = None
    idempotency_key: Optional[str] = None


class PackagePurchaseRequest(BaseModel):
    user_id: str
    package_amount: int = Field(description="Base credit amount of a listed package.")
    tier: Optional[str] = None
    idempotency_key: Optional[str] = None


class RefundRequest(BaseModel):
    user_id: str
    amount: int
    related_transaction_id: Optional[str] = None
    description: Optional[str] = None
    idempotency_key: Optional[str] = None


class AdminAdjustRequest(BaseModel):
    user_id: str
    amount: int
    description: str
    idempotency_key: Optional[str] = None


class ModelAccessResponse(BaseModel):
    tier: str
    model_tier: str
    allowed: bool


class HistoryResponse(BaseModel):
    user_id: str
    transactions: List[CreditTransaction]
