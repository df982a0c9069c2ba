"""
Write guards for rows that must not change once written.

- orders.readable_id: fixed once assigned; a legacy placeholder
  (LEGACY-*, TT-*) may be replaced by a well-formed YY-MM-DD-SEQ id once.
- stock_movements: append-only; the only update allowed is relabelling
  a reserved movement to sold on confirmation (notes may change with it).
  Deletes are rejected.

Both are installed as mapper events so every ORM flush goes through them.
"""

from __future__ import annotations

import re
from typing import Iterable

from sqlalchemy import event, inspect

from stockledger.app.core.errors import ImmutableFieldViolation
from stockledger.app.db.models.core_types import MovementType
from stockledger.app.db.models.models_v1 import Order, StockMovement

READABLE_ID_RE = re.compile(r"^\d{2}-\d{2}-\d{2}-\d+$")

# fixed: the PostgreSQL trigger in the initial migration hardcodes the same list
LEGACY_READABLE_ID_PREFIXES = ("LEGACY-", "TT-")

MOVEMENT_MUTABLE_FIELDS = {"movement_type", "notes"}


def is_well_formed_readable_id(value: str | None) -> bool:
    return bool(value) and READABLE_ID_RE.match(value) is not None


def is_legacy_readable_id(value: str | None, legacy_prefixes: Iterable[str]) -> bool:
    return bool(value) and any(value.startswith(p) for p in legacy_prefixes)


def check_readable_id_change(
    old: str | None,
    new: str | None,
    legacy_prefixes: Iterable[str] = LEGACY_READABLE_ID_PREFIXES,
) -> None:
    """Raise ImmutableFieldViolation unless old -> new is allowed."""
    if old == new:
        return

    if is_legacy_readable_id(old, legacy_prefixes) and is_well_formed_readable_id(new):
        return

    raise ImmutableFieldViolation(
        f"Order ID (readable_id) is immutable and cannot be changed. Original: {old}, Attempted: {new}",
        original=old,
        attempted=new,
    )


def check_movement_update(changes: dict[str, tuple[object, object]]) -> None:
    """
    changes: {attribute: (old, new)} for every modified column.
    """
    forbidden = sorted(set(changes) - MOVEMENT_MUTABLE_FIELDS)
    if forbidden:
        raise ImmutableFieldViolation(
            f"Stock movements are append-only; cannot change {', '.join(forbidden)}",
            fields=forbidden,
        )

    if "movement_type" in changes:
        old, new = changes["movement_type"]
        if not (old == MovementType.reserved and new == MovementType.sold):
            raise ImmutableFieldViolation(
                f"Stock movement type can only go from reserved to sold (got {old} -> {new})",
                original=str(old),
                attempted=str(new),
            )


def _column_changes(target) -> dict[str, tuple[object, object]]:
    state = inspect(target)
    changes: dict[str, tuple[object, object]] = {}
    for attr in state.mapper.column_attrs:
        hist = state.attrs[attr.key].history
        if not hist.has_changes():
            continue
        old = hist.deleted[0] if hist.deleted else None
        new = hist.added[0] if hist.added else None
        if old != new:
            changes[attr.key] = (old, new)
    return changes


@event.listens_for(Order, "before_update")
def _guard_order_readable_id(mapper, connection, target: Order) -> None:
    changes = _column_changes(target)
    if "readable_id" in changes:
        old, new = changes["readable_id"]
        check_readable_id_change(old, new)


@event.listens_for(StockMovement, "before_update")
def _guard_movement_update(mapper, connection, target: StockMovement) -> None:
    check_movement_update(_column_changes(target))


@event.listens_for(StockMovement, "before_delete")
def _guard_movement_delete(mapper, connection, target: StockMovement) -> None:
    raise ImmutableFieldViolation(
        f"Stock movement {target.id} cannot be deleted",
        movement_id=target.id,
    )
