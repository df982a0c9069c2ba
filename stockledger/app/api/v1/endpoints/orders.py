from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from stockledger.app.api.deps import get_db
from stockledger.app.api.responses import http_error, http_status
from stockledger.app.core.errors import StockLedgerError
from stockledger.app.schemas.order import OrderIdPreview, OrderRead, OrderUpdateResult
from stockledger.services import order_ids

router = APIRouter(prefix="/orders")


class OrderCreate(BaseModel):
    readable_id: str | None = Field(default=None, max_length=64)
    notes: str | None = None


class OrderUpdate(BaseModel):
    readable_id: str = Field(min_length=1, max_length=64)


@router.post("", status_code=201, response_model=OrderRead)
def create_order(payload: OrderCreate, db: Session = Depends(get_db)):
    try:
        order = order_ids.create_order(db, readable_id=payload.readable_id, notes=payload.notes)
    except StockLedgerError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    db.refresh(order)
    return order


@router.get("/next-id", response_model=OrderIdPreview)
def preview_next_order_id(db: Session = Depends(get_db)):
    """Preview only; the real id is assigned when the order is created."""
    return order_ids.preview_next_readable_id(db)


@router.patch("/{order_id}", response_model=OrderUpdateResult)
def update_order(order_id: int, payload: OrderUpdate, db: Session = Depends(get_db)):
    result = order_ids.change_readable_id(db, order_id=order_id, new_readable_id=payload.readable_id)
    if not result.success:
        db.rollback()
        return JSONResponse(status_code=http_status(result.error_code), content=result.model_dump(mode="json"))

    db.commit()
    return result
