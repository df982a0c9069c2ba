"""
Stock ledger service.

All ledger rows are written through append_movement(); the mutation engine
is its only caller. Reads cover the three access paths of the ledger
(by variant, by order, by recency) plus replay/reconciliation against the
stored balances.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockledger.app.db.models.core_types import MovementType
from stockledger.app.db.models.models_v1 import ProductVariant, StockMovement
from stockledger.app.schemas.stock import ReconciliationReport

logger = logging.getLogger(__name__)


class ReplayedBalance(NamedTuple):
    available: int
    reserved: int


def append_movement(
    db: Session,
    *,
    variant_id: int,
    movement_type: MovementType,
    quantity: int,
    balance_before: int,
    reserved_delta: int = 0,
    order_id: int | None = None,
    source: str | None = None,
    reason: str | None = None,
    notes: str | None = None,
    actor: str | None = None,
) -> StockMovement:
    mv = StockMovement(
        variant_id=variant_id,
        order_id=order_id,
        movement_type=movement_type,
        quantity=quantity,
        balance_before=balance_before,
        balance_after=balance_before + quantity,
        reserved_delta=reserved_delta,
        source=source,
        reason=reason,
        notes=notes,
        created_by=actor,
    )
    db.add(mv)
    db.flush()  # id, and visible to the aggregate queries below
    return mv


def _order_variant_rows(order_id: int, variant_id: int, *types: MovementType):
    return (
        select(StockMovement)
        .where(StockMovement.order_id == order_id)
        .where(StockMovement.variant_id == variant_id)
        .where(StockMovement.movement_type.in_(types))
    )


def outstanding_reservation(db: Session, *, order_id: int, variant_id: int) -> int:
    """
    Units still held for (order, variant): reserved and not yet confirmed
    or restored.
    """
    held = db.execute(
        select(func.coalesce(func.sum(StockMovement.reserved_delta), 0))
        .where(StockMovement.order_id == order_id)
        .where(StockMovement.variant_id == variant_id)
    ).scalar_one()
    return max(0, int(held))


def mark_reservation_sold(db: Session, *, order_id: int, variant_id: int) -> int:
    """
    Relabel the reserved movements of (order, variant) as sold, oldest
    first, as far as they are settled (confirmed or restored). A
    reservation only partly settled keeps its label. Returns the count.
    """
    rows = (
        db.execute(
            _order_variant_rows(order_id, variant_id, MovementType.reserved, MovementType.sold).order_by(
                StockMovement.id.asc()
            )
        )
        .scalars()
        .all()
    )
    total_reserved = sum(mv.reserved_delta for mv in rows)
    settled = total_reserved - outstanding_reservation(db, order_id=order_id, variant_id=variant_id)
    covered = sum(mv.reserved_delta for mv in rows if mv.movement_type == MovementType.sold)

    relabelled = 0
    for mv in rows:
        if mv.movement_type != MovementType.reserved:
            continue
        if covered + mv.reserved_delta > settled:
            break
        mv.movement_type = MovementType.sold
        mv.notes = "Stock confirmed for delivery"
        covered += mv.reserved_delta
        relabelled += 1
    db.flush()
    return relabelled


def list_movements(
    db: Session,
    *,
    variant_id: int | None = None,
    order_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[StockMovement]:
    """Newest first."""
    stmt = select(StockMovement)
    if variant_id is not None:
        stmt = stmt.where(StockMovement.variant_id == variant_id)
    if order_id is not None:
        stmt = stmt.where(StockMovement.order_id == order_id)
    stmt = stmt.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).offset(offset).limit(limit)
    return list(db.execute(stmt).scalars().all())


def movements_for_variant(db: Session, variant_id: int) -> list[StockMovement]:
    """Full history of one variant in append order."""
    return list(
        db.execute(
            select(StockMovement)
            .where(StockMovement.variant_id == variant_id)
            .order_by(StockMovement.id.asc())
        )
        .scalars()
        .all()
    )


def replay_movements(movements: list[StockMovement]) -> ReplayedBalance:
    """
    Rebuild (available, reserved) from zero: each entry carries the signed
    change it made to both counters.
    """
    available = 0
    reserved = 0
    for mv in movements:
        available += mv.quantity
        reserved += mv.reserved_delta
    return ReplayedBalance(available=available, reserved=reserved)


def replay_variant(db: Session, variant_id: int) -> ReplayedBalance:
    return replay_movements(movements_for_variant(db, variant_id))


def reconcile_variant(db: Session, variant_id: int) -> ReconciliationReport | None:
    variant = db.get(ProductVariant, variant_id)
    if variant is None:
        return None

    movements = movements_for_variant(db, variant_id)
    available, reserved = replay_movements(movements)
    balanced = available == variant.available_stock and reserved == variant.reserved_stock
    if not balanced:
        logger.warning(
            "ledger mismatch variant=%s stored=(%s,%s) replayed=(%s,%s)",
            variant_id,
            variant.available_stock,
            variant.reserved_stock,
            available,
            reserved,
        )

    return ReconciliationReport(
        variant_id=variant_id,
        stored_available=variant.available_stock,
        stored_reserved=variant.reserved_stock,
        replayed_available=available,
        replayed_reserved=reserved,
        movement_count=len(movements),
        balanced=balanced,
    )
