from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from stockledger.app.db.models.core_types import ErrorCode, MovementType


# ---------- Inputs ----------
class StockLine(BaseModel):
    variant_id: int
    quantity: int


class AdjustmentLine(BaseModel):
    variant_id: int
    quantity: int
    reason: str | None = None


# ---------- Results ----------
class StockItemResult(BaseModel):
    variant_id: int
    sku: str | None = None
    previous_stock: int
    new_stock: int
    previous_reserved: int | None = None
    new_reserved: int | None = None
    deducted: int | None = None
    restored: int | None = None
    adjusted: int | None = None
    confirmed: int | None = None
    movement_id: int | None = None


class StockItemError(BaseModel):
    variant_id: int | None = None
    sku: str | None = None
    message: str
    code: ErrorCode
    requested: int | None = None
    available: int | None = None
    shortfall: int | None = None


class StockOperationResult(BaseModel):
    """
    Outcome of one engine call: either every item applied or nothing did.
    """

    success: bool
    items: list[StockItemResult] = Field(default_factory=list)
    errors: list[StockItemError] = Field(default_factory=list)
    skipped: list[int] = Field(default_factory=list)
    error_code: ErrorCode | None = None
    message: str | None = None
    diagnostic_code: str | None = None
    processed_before_failure: int | None = None


# ---------- Reads ----------
class VariantRead(BaseModel):
    id: int
    product_id: int
    sku: str
    available_stock: int
    reserved_stock: int

    model_config = ConfigDict(from_attributes=True)


class StockMovementRead(BaseModel):
    id: int
    variant_id: int
    order_id: int | None
    movement_type: MovementType
    quantity: int
    balance_before: int
    balance_after: int
    reserved_delta: int
    source: str | None
    reason: str | None
    notes: str | None
    created_by: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReconciliationReport(BaseModel):
    variant_id: int
    stored_available: int
    stored_reserved: int
    replayed_available: int
    replayed_reserved: int
    movement_count: int
    balanced: bool
