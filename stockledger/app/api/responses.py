"""
Structured failure -> HTTP status.

The body is always the structured result; only the status code changes.
"""

from __future__ import annotations

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from stockledger.app.core.errors import StockLedgerError
from stockledger.app.db.models.core_types import ErrorCode

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.validation_error: 400,
    ErrorCode.not_found: 404,
    ErrorCode.insufficient_stock: 409,
    ErrorCode.insufficient_reserved: 409,
    ErrorCode.immutable_field_violation: 409,
    ErrorCode.internal: 500,
}


def http_status(code: ErrorCode | None) -> int:
    return STATUS_BY_CODE.get(code, 500) if code is not None else 500


def commit_result(db: Session, result: BaseModel) -> JSONResponse | BaseModel:
    """
    Commit a successful result, roll back a failed one and return it with
    the mapped status.
    """
    if result.success:
        db.commit()
        return result

    db.rollback()
    return JSONResponse(status_code=http_status(result.error_code), content=result.model_dump(mode="json"))


def http_error(exc: StockLedgerError) -> HTTPException:
    return HTTPException(status_code=http_status(exc.code), detail={"error_code": exc.code.value, "message": exc.message})
