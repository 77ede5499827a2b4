from __future__ import annotations

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from credit_ledger.api.app import create_app
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.db.store import BalanceStore
from credit_ledger.exceptions import UnknownTierError
from credit_ledger.logging.transaction_log import TransactionLog
from credit_ledger.models.balance import CURRENT_SCHEMA_VERSION, CreditBalance
from credit_ledger.models.migration import (
    LEGACY_RESET_AT,
    detect_schema_version,
    upgrade_balance_document,
)
from credit_ledger.models.subscription import SubscriptionTier
from credit_ledger.models.transaction import TransactionType
from credit_ledger.services.credit_service import CreditService

V1_DOC = {
    "userId": "legacy-1",
    "monthlyCredits": 300,
    "carryoverCredits": 50,
    "extraCredits": 20,
    "lastResetDate": datetime(2025, 2, 15),
    "carryoverExpiryDate": datetime(2025, 3, 31, 23, 59, 59),
    "tier": "ultra",
}


def test_detects_schema_versions():
    assert detect_schema_version({"user_id": "u", "credits": 4}) == 0
    assert detect_schema_version(V1_DOC) == 1
    assert detect_schema_version({"schema_version": 2}) == 2
    with pytest.raises(ValueError):
        detect_schema_version({"user_id": "u"})


def test_v0_credits_become_purchased():
    doc = upgrade_balance_document({"user_id": "u0", "credits": 120})
    balance = CreditBalance.model_validate(doc)

    assert (balance.fresh_credits, balance.carryover_credits, balance.purchased_credits) == (0, 0, 120)
    assert balance.tier is SubscriptionTier.FREE
    assert balance.last_reset_at == LEGACY_RESET_AT
    assert balance.schema_version == CURRENT_SCHEMA_VERSION
    [opening] = balance.pending_transactions
    assert opening.id == "opening-u0-v0"
    assert opening.transaction_type is TransactionType.ADMIN_ADJUSTMENT
    assert opening.purchased_delta == 120


def test_v1_buckets_are_mapped():
    balance = CreditBalance.model_validate(upgrade_balance_document(V1_DOC))

    assert balance.user_id == "legacy-1"
    assert (balance.fresh_credits, balance.carryover_credits, balance.purchased_credits) == (300, 50, 20)
    assert balance.tier is SubscriptionTier.ULTRA
    assert balance.last_reset_at.tzinfo is not None
    assert balance.transaction_count == 1


def test_upgrade_is_deterministic():
    first = upgrade_balance_document(V1_DOC)
    second = upgrade_balance_document(V1_DOC)
    assert first["pending_transactions"][0]["id"] == second["pending_transactions"][0]["id"]


def test_empty_legacy_balance_has_no_opening_entry():
    doc = upgrade_balance_document({"user_id": "u0", "credits": 0})
    assert "pending_transactions" not in doc
    assert "transaction_count" not in doc


def test_current_documents_pass_through():
    doc = {"user_id": "u", "schema_version": CURRENT_SCHEMA_VERSION, "tier": "PRO"}
    upgraded = upgrade_balance_document(doc)
    assert upgraded == doc
    assert upgraded is not doc


@pytest.mark.asyncio
async def test_legacy_balance_is_upgraded_and_reset_on_first_read(clock):
    db = InMemoryDBManager(balances=[V1_DOC])
    log = TransactionLog(db=db)
    service = CreditService(
        store=BalanceStore(db, log, wait_multiplier=0, max_wait=0),
        transaction_log=log,
        clock=clock,
    )

    view = await service.get_balance("legacy-1")

    assert view.tier is SubscriptionTier.ULTRA
    assert (view.fresh, view.carryover, view.purchased) == (10000, 350, 20)
    report = await service.reconcile("legacy-1")
    assert report.consistent
    assert report.entries == 2


def test_unknown_legacy_tier_is_a_ledger_error():
    with pytest.raises(UnknownTierError):
        upgrade_balance_document({**V1_DOC, "tier": "gold"})


def test_unknown_legacy_tier_is_a_bad_request(clock):
    db = InMemoryDBManager(balances=[{**V1_DOC, "tier": "gold"}])
    log = TransactionLog(db=db)
    service = CreditService(
        store=BalanceStore(db, log, wait_multiplier=0, max_wait=0),
        transaction_log=log,
        clock=clock,
    )
    client = TestClient(create_app(credit_service=service))

    response = client.get("/credits/balance/legacy-1", params={"tier": "ULTRA"})

    assert response.status_code == 400
    assert "gold" in response.json()["detail"]
