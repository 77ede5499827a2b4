from __future__ import annotations

from typing import Optional


class CreditLedgerError(Exception):
    """Base class for every error raised by the credit ledger."""


class UnknownTierError(CreditLedgerError, ValueError):
    def __init__(self, tier: object) -> None:
        super().__init__(f"unknown subscription tier: {tier!r}")
        self.tier = tier


class UnknownModelTierError(CreditLedgerError, ValueError):
    def __init__(self, model_tier: object) -> None:
        super().__init__(f"unknown model tier: {model_tier!r}")
        self.model_tier = model_tier


class InvalidAmountError(CreditLedgerError, ValueError):
    def __init__(self, amount: object) -> None:
        super().__init__(f"amount must be a positive integer, got {amount!r}")
        self.amount = amount


class PurchaseNotAllowedError(CreditLedgerError):
    def __init__(self, tier: object) -> None:
        super().__init__(f"tier {tier!s} does not allow purchasing credits")
        self.tier = tier


class RefundLimitExceededError(CreditLedgerError, ValueError):
    """
    Raised when a refund would return more credits than the deduction it
    reverses, or names a transaction that is not a deduction of that user.
    """

    def __init__(self, transaction_id: str, requested: int, refundable: int) -> None:
        super().__init__(
            f"refund of {requested} exceeds refundable amount {refundable} "
            f"for transaction {transaction_id}"
        )
        self.transaction_id = transaction_id
        self.requested = requested
        self.refundable = refundable


class InsufficientCreditsError(CreditLedgerError):
    """
    Raised inside a balance transaction to abort it when the balance cannot
    cover a charge. The ledger engine turns it into a structured result.
    """

    def __init__(self, needed: int, available: int, balance: Optional[object] = None) -> None:
        super().__init__(f"insufficient credits: needed {needed}, available {available}")
        self.needed = needed
        self.available = available
        self.balance = balance


class TransactionConflictError(CreditLedgerError):
    def __init__(self, user_id: str, attempts: int) -> None:
        super().__init__(
            f"balance for user {user_id} kept changing; gave up after {attempts} attempts"
        )
        self.user_id = user_id
        self.attempts = attempts


class StoreUnavailableError(CreditLedgerError):
    """The underlying document store failed or timed out."""
