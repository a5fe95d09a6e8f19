"""
Ledger exceptions.

Every error carries a stable ``code`` plus enough ``details`` for the caller
to decide whether to retry, top up, or escalate. ``main`` maps them onto
HTTP responses through ``status_code``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for credit ledger errors."""

    status_code = 400

    def __init__(self, message: str, code: str = "LEDGER_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InsufficientCredits(LedgerError):
    """Raised when an account cannot afford an operation."""

    status_code = 402

    def __init__(self, required: int, available: int, message: Optional[str] = None):
        super().__init__(
            message=message or f"Insufficient credits. Required: {required}, available: {available}.",
            code="INSUFFICIENT_CREDITS",
            details={
                "required": required,
                "available": available,
                "shortfall": max(0, required - available),
            },
        )
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.available)


class InvalidTransition(LedgerError):
    """Raised when a transaction status change is not allowed."""

    def __init__(self, transaction_id: str, current_status: str, requested_status: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Cannot move transaction from {current_status} to {requested_status}.",
            code="INVALID_TRANSITION",
            details={
                "transaction_id": transaction_id,
                "current_status": current_status,
                "requested_status": requested_status,
            },
        )
        self.current_status = current_status
        self.requested_status = requested_status


class AlreadyRefunded(LedgerError):
    def __init__(self, transaction_id: str):
        super().__init__(
            message="Transaction was already refunded.",
            code="ALREADY_REFUNDED",
            details={"transaction_id": transaction_id, "current_status": "refunded"},
        )


class ProviderError(LedgerError):
    """External AI/messaging provider failed or timed out. Never charged."""

    status_code = 502

    def __init__(self, provider: str, message: str, retryable: bool = True):
        super().__init__(
            message=message,
            code="PROVIDER_ERROR",
            details={"provider": provider, "retryable": retryable},
        )
        self.provider = provider


class SettlementError(LedgerError):
    """Debit of actual cost failed after the provider already did the work."""

    status_code = 500

    def __init__(self, account_id: str, cost: int, available: int, transaction_id: Optional[str] = None):
        super().__init__(
            message="Usage could not be settled against the current balance; account flagged for reconciliation.",
            code="SETTLEMENT_ERROR",
            details={
                "account_id": account_id,
                "cost": cost,
                "available": available,
                "transaction_id": transaction_id,
            },
        )


class AccountNotFound(LedgerError):
    status_code = 404

    def __init__(self, account_id: str):
        super().__init__(
            message="Account not found.",
            code="ACCOUNT_NOT_FOUND",
            details={"account_id": account_id},
        )


class AccountInactive(LedgerError):
    status_code = 403

    def __init__(self, account_id: str):
        super().__init__(
            message="Account is deactivated.",
            code="ACCOUNT_INACTIVE",
            details={"account_id": account_id},
        )


class TransactionNotFound(LedgerError):
    status_code = 404

    def __init__(self, transaction_id: str):
        super().__init__(
            message="Transaction not found.",
            code="TRANSACTION_NOT_FOUND",
            details={"transaction_id": transaction_id},
        )


class UnknownPackage(LedgerError):
    def __init__(self, package: str):
        super().__init__(
            message=f"Unknown credit package: {package}.",
            code="UNKNOWN_PACKAGE",
            details={"package": package},
        )


class UnknownModel(LedgerError):
    def __init__(self, model: str):
        super().__init__(
            message=f"AI model {model} is not available.",
            code="UNKNOWN_MODEL",
            details={"model": model},
        )
