from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.app.api.deps import get_db
from stockledger.app.api.responses import http_error
from stockledger.app.core.errors import StockLedgerError
from stockledger.app.db.models.models_v1 import Product
from stockledger.app.schemas.stock import VariantRead
from stockledger.services import inventory

router = APIRouter()


class ProductCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    active: bool = True


class VariantCreate(BaseModel):
    product_id: int
    sku: str = Field(min_length=1, max_length=100)
    opening_stock: int = Field(default=0, ge=0)


@router.get("/products")
def list_products(db: Session = Depends(get_db)):
    rows = db.execute(select(Product).order_by(Product.id)).scalars().all()
    return [
        {
            "id": p.id,
            "name": p.name,
            "active": p.active,
        }
        for p in rows
    ]


@router.post("/products", status_code=201)
def create_product(payload: ProductCreate, db: Session = Depends(get_db)):
    try:
        p = inventory.create_product(db, name=payload.name, active=payload.active)
    except StockLedgerError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    db.refresh(p)

    return {"id": p.id, "name": p.name, "active": p.active}


@router.post("/variants", status_code=201, response_model=VariantRead)
def create_variant(
    payload: VariantCreate,
    db: Session = Depends(get_db),
    actor: str | None = Header(default=None, alias="X-Actor"),
):
    try:
        v = inventory.create_variant(
            db,
            product_id=payload.product_id,
            sku=payload.sku,
            opening_stock=payload.opening_stock,
            actor=actor,
        )
    except StockLedgerError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    db.refresh(v)
    return v
