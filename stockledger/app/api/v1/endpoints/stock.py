from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stockledger.app.api.deps import get_db
from stockledger.app.schemas.stock import ReconciliationReport, VariantRead
from stockledger.services import inventory, ledger

router = APIRouter(prefix="/stock")


@router.get(
    "",
    response_model=list[VariantRead],
)
def get_stock(
    product_id: int | None = None,
    db: Session = Depends(get_db),
):
    """
    Stock (READ ONLY)
    - balances change only through /stock-movements
    """
    return inventory.list_variants(db, product_id=product_id)


@router.get("/{variant_id}/reconcile", response_model=ReconciliationReport)
def reconcile_stock(variant_id: int, db: Session = Depends(get_db)):
    report = ledger.reconcile_variant(db, variant_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Variant not found")
    return report
