from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from stockledger.app.api.deps import get_db
from stockledger.app.api.responses import commit_result
from stockledger.app.schemas.stock import StockMovementRead, StockOperationResult
from stockledger.services import inventory, ledger

router = APIRouter(prefix="/stock-movements")


# ---------- Schemas ----------
# Item lists stay loose here; the engine validates each item and answers
# with a VALIDATION_ERROR result naming the bad position.
class ReserveCreate(BaseModel):
    items: list[Any] | None = None
    order_id: int | None = None


class ConfirmCreate(BaseModel):
    variant_id: int
    quantity: int
    order_id: int


class RestoreCreate(BaseModel):
    items: list[Any] | None = None
    order_id: int | None = None
    reason: str | None = None


class AdjustCreate(BaseModel):
    variant_id: int
    quantity_delta: int
    reason: str | None = None


class AdjustBatchCreate(BaseModel):
    adjustments: list[Any] | None = None


class SaleCreate(BaseModel):
    items: list[Any] | None = None
    order_id: int | None = None


class ReturnCreate(BaseModel):
    variant_id: int
    quantity: int
    order_id: int | None = None
    reason: str | None = None


# ---------- Endpoints ----------
@router.post("/reserve", response_model=StockOperationResult)
def reserve_stock(
    payload: ReserveCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    result = inventory.reserve_batch(db, payload.items, order_id=payload.order_id, actor=actor)
    return commit_result(db, result)


@router.post("/confirm", response_model=StockOperationResult)
def confirm_stock(
    payload: ConfirmCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    result = inventory.confirm_reservation(
        db,
        variant_id=payload.variant_id,
        quantity=payload.quantity,
        order_id=payload.order_id,
        actor=actor,
    )
    return commit_result(db, result)


@router.post("/restore", response_model=StockOperationResult)
def restore_stock(
    payload: RestoreCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    result = inventory.restore_batch(
        db,
        payload.items,
        order_id=payload.order_id,
        reason=payload.reason,
        actor=actor,
    )
    return commit_result(db, result)


@router.post("/adjust", response_model=StockOperationResult)
def adjust_stock(
    payload: AdjustCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    result = inventory.adjust_stock(
        db,
        variant_id=payload.variant_id,
        quantity_delta=payload.quantity_delta,
        reason=payload.reason,
        actor=actor,
    )
    return commit_result(db, result)


@router.post("/adjust-batch", response_model=StockOperationResult)
def adjust_stock_batch(
    payload: AdjustBatchCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    result = inventory.adjust_batch(db, payload.adjustments, actor=actor)
    return commit_result(db, result)


@router.post("/sale", response_model=StockOperationResult)
def sell_stock(
    payload: SaleCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    """Store counter sale: deducted immediately, nothing reserved."""
    result = inventory.deduct_sale_batch(db, payload.items, order_id=payload.order_id, actor=actor)
    return commit_result(db, result)


@router.post("/return", response_model=StockOperationResult)
def return_stock(
    payload: ReturnCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    result = inventory.restore_return(
        db,
        variant_id=payload.variant_id,
        quantity=payload.quantity,
        order_id=payload.order_id,
        reason=payload.reason,
        actor=actor,
    )
    return commit_result(db, result)


@router.get("", response_model=list[StockMovementRead])
def list_stock_movements(
    variant_id: int | None = None,
    order_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    """Ledger, newest first."""
    return ledger.list_movements(db, variant_id=variant_id, order_id=order_id, limit=limit, offset=offset)
