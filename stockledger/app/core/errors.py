"""
Stock ledger exceptions.

Raised inside the engine to abort the current savepoint; the service layer
turns them into structured results, callers never see them raised.
The ORM guards raise them from flush as well.
"""

from __future__ import annotations

from typing import Any

from stockledger.app.db.models.core_types import ErrorCode


class StockLedgerError(Exception):
    code: ErrorCode = ErrorCode.internal

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailed(StockLedgerError):
    code = ErrorCode.validation_error


class NotFound(StockLedgerError):
    code = ErrorCode.not_found


class InsufficientStock(StockLedgerError):
    code = ErrorCode.insufficient_stock


class InsufficientReserved(StockLedgerError):
    code = ErrorCode.insufficient_reserved


class ImmutableFieldViolation(StockLedgerError):
    code = ErrorCode.immutable_field_violation


class LockTimeout(StockLedgerError):
    code = ErrorCode.internal
