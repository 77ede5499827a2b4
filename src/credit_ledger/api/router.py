from __future__ import annotations

from pathlib import Path
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from ..config import get_settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..db.store import BalanceStore
from ..exceptions import (
    CreditLedgerError,
    PurchaseNotAllowedError,
    RefundLimitExceededError,
    StoreUnavailableError,
    TransactionConflictError,
)
from ..logging.transaction_log import TransactionLog
from ..models.api_models import (
    AdminAdjustRequest,
    ChargeRequest,
    EstimateRequest,
    HistoryResponse,
    ModelAccessResponse,
    PackagePurchaseRequest,
    PurchaseRequest,
    RefundRequest,
)
from ..models.balance import BalanceView, ReconciliationReport
from ..models.transaction import TransactionType
from ..models.usage import ChargeResult, DenialReason, UsageCostBreakdown
from ..services.credit_service import CreditService

router = APIRouter(prefix="/credits", tags=["credits"])


def _create_db_manager() -> BaseDBManager:
    settings = get_settings()
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    return InMemoryDBManager()


def _create_credit_service() -> CreditService:
    settings = get_settings()
    db = _create_db_manager()
    log_path = Path(settings.LEDGER_LOG_PATH) if settings.LEDGER_LOG_PATH else None
    transaction_log = TransactionLog(db=db, file_path=log_path)
    store = BalanceStore(
        db,
        transaction_log,
        max_attempts=settings.TX_MAX_ATTEMPTS,
        wait_multiplier=settings.TX_RETRY_WAIT_SECONDS,
        max_wait=settings.TX_RETRY_MAX_WAIT_SECONDS,
    )
    return CreditService(store=store, transaction_log=transaction_log)


_credit_service = _create_credit_service()


def get_credit_service() -> CreditService:
    return _credit_service


def _raise_http(exc: CreditLedgerError) -> NoReturn:
    if isinstance(exc, PurchaseNotAllowedError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, (TransactionConflictError, StoreUnavailableError)):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, RefundLimitExceededError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=code, detail=str(exc)) from exc


@router.get("/balance/{user_id}", response_model=BalanceView)
async def get_balance(
    user_id: str,
    tier: str | None = None,
    service: CreditService = Depends(get_credit_service),
) -> BalanceView:
    try:
        return await service.get_balance(user_id, tier)
    except CreditLedgerError as exc:
        _raise_http(exc)


@router.get("/models/{tier}/{model_tier}", response_model=ModelAccessResponse)
async def check_model_access(
    tier: str, model_tier: str, service: CreditService = Depends(get_credit_service)
) -> ModelAccessResponse:
    try:
        allowed = service.can_use_model(tier, model_tier)
    except CreditLedgerError as exc:
        _raise_http(exc)
    return ModelAccessResponse(tier=tier, model_tier=model_tier, allowed=allowed)


@router.post("/estimate", response_model=UsageCostBreakdown)
async def estimate(
    payload: EstimateRequest, service: CreditService = Depends(get_credit_service)
) -> UsageCostBreakdown:
    try:
        return service.price_usage(payload.usage)
    except CreditLedgerError as exc:
        _raise_http(exc)


@router.post("/charge", response_model=ChargeResult)
async def charge(
    payload: ChargeRequest, service: CreditService = Depends(get_credit_service)
):
    try:
        result = await service.charge_usage(
            payload.user_id,
            payload.usage,
            tier=payload.tier,
            idempotency_key=payload.idempotency_key,
        )
    except CreditLedgerError as exc:
        _raise_http(exc)
    if result.sufficient:
        return result
    code = (
        status.HTTP_403_FORBIDDEN
        if result.reason is DenialReason.MODEL_NOT_ALLOWED
        else status.HTTP_402_PAYMENT_REQUIRED
    )
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


@router.post("/purchase", response_model=BalanceView)
async def purchase(
    payload: PurchaseRequest, service: CreditService = Depends(get_credit_service)
) -> BalanceView:
    try:
        return await service.purchase_credits(
            payload.user_id,
            payload.amount,
            tier=payload.tier,
            idempotency_key=payload.idempotency_key,
        )
    except CreditLedgerError as exc:
        _raise_http(exc)


@router.post("/packages/purchase", response_model=BalanceView)
async def purchase_package(
    payload: PackagePurchaseRequest, service: CreditService = Depends(get_credit_service)
) -> BalanceView:
    try:
        return await service.purchase_package(
            payload.user_id,
            payload.package_amount,
            tier=payload.tier,
            idempotency_key=payload.idempotency_key,
        )
    except CreditLedgerError as exc:
        _raise_http(exc)


@router.post("/refund", response_model=BalanceView)
async def refund(
    payload: RefundRequest, service: CreditService = Depends(get_credit_service)
) -> BalanceView:
    try:
        return await service.refund_credits(
            payload.user_id,
            payload.amount,
            related_transaction_id=payload.related_transaction_id,
            description=payload.description,
            idempotency_key=payload.idempotency_key,
        )
    except CreditLedgerError as exc:
        _raise_http(exc)


@router.post("/admin/adjust", response_model=BalanceView)
async def admin_adjust(
    payload: AdminAdjustRequest, service: CreditService = Depends(get_credit_service)
) -> BalanceView:
    try:
        return await service.add_purchased_credits(
            payload.user_id,
            payload.amount,
            TransactionType.ADMIN_ADJUSTMENT,
            description=payload.description,
            idempotency_key=payload.idempotency_key,
        )
    except CreditLedgerError as exc:
        _raise_http(exc)


@router.get("/history/{user_id}", response_model=HistoryResponse)
async def history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    service: CreditService = Depends(get_credit_service),
) -> HistoryResponse:
    try:
        transactions = await service.history(user_id, limit=limit)
    except CreditLedgerError as exc:
        _raise_http(exc)
    return HistoryResponse(user_id=user_id, transactions=transactions)


@router.get("/reconcile/{user_id}", response_model=ReconciliationReport)
async def reconcile(
    user_id: str, service: CreditService = Depends(get_credit_service)
) -> ReconciliationReport:
    try:
        return await service.reconcile(user_id)
    except CreditLedgerError as exc:
        _raise_http(exc)
