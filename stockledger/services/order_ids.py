"""
Human-readable order ids: YY-MM-DD-SEQ.

SEQ restarts every calendar day (in the configured timezone) at
order_sequence_start. Allocation holds an advisory lock on the date prefix
until the caller's transaction ends, so two orders created the same day
never get the same id as long as the order row is inserted in the same
transaction as the allocation.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.app.core.config import get_settings
from stockledger.app.core.errors import NotFound, StockLedgerError, ValidationFailed
from stockledger.app.db.locks import advisory_xact_lock
from stockledger.app.db.models.models_v1 import Order
from stockledger.app.schemas.order import OrderIdPreview, OrderRead, OrderUpdateResult

logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def current_date() -> date:
    return datetime.now(ZoneInfo(get_settings().order_id_timezone)).date()


def date_prefix(today: date | None = None) -> str:
    return (today or current_date()).strftime("%y-%m-%d")


def parse_sequence(readable_id: str, prefix: str) -> int | None:
    """
    Sequence part of an id carrying this prefix, or None.

    Ids must have exactly four dash-separated parts. Stray non-digits in the
    last part are ignored (e.g. an exchange order "26-03-14-105E" counts
    as 105).
    """
    parts = readable_id.split("-")
    if len(parts) != 4 or "-".join(parts[:3]) != prefix:
        return None
    digits = _NON_DIGITS.sub("", parts[3])
    if not digits:
        return None
    return int(digits)


def _highest_sequence(db: Session, prefix: str) -> int | None:
    rows = db.execute(select(Order.readable_id).where(Order.readable_id.like(f"{prefix}-%"))).scalars()
    highest: int | None = None
    for rid in rows:
        seq = parse_sequence(rid, prefix)
        if seq is not None and (highest is None or seq > highest):
            highest = seq
    return highest


def _next_sequence(db: Session, prefix: str) -> int:
    """Suffixes below the start value (imports, test data) are ignored."""
    start = get_settings().order_sequence_start
    highest = _highest_sequence(db, prefix)
    if highest is None:
        return start
    return max(highest, start - 1) + 1


def allocate_readable_id(db: Session, *, today: date | None = None) -> str:
    """
    Next id for the day. The date lock stays held until the caller commits
    or rolls back; insert the order before that.
    """
    prefix = date_prefix(today)
    advisory_xact_lock(db, f"order-id:{prefix}")
    readable_id = f"{prefix}-{_next_sequence(db, prefix)}"
    logger.debug("allocated readable id %s", readable_id)
    return readable_id


def preview_next_readable_id(db: Session, *, today: date | None = None) -> OrderIdPreview:
    """What the next id would be right now. Takes no lock and reserves nothing."""
    prefix = date_prefix(today)
    seq = _next_sequence(db, prefix)
    return OrderIdPreview(preview_id=f"{prefix}-{seq}", date_prefix=prefix, sequence=seq)


def create_order(
    db: Session,
    *,
    readable_id: str | None = None,
    notes: str | None = None,
    today: date | None = None,
) -> Order:
    """
    Insert an order. A supplied readable_id (imports, legacy data) is kept
    as is; otherwise one is allocated.
    """
    if readable_id is not None:
        readable_id = readable_id.strip()
        if not readable_id:
            raise ValidationFailed("readable_id cannot be blank")

    try:
        with db.begin_nested():
            if readable_id is None:
                readable_id = allocate_readable_id(db, today=today)
            order = Order(readable_id=readable_id, notes=notes)
            db.add(order)
            db.flush()
    except IntegrityError as exc:
        raise ValidationFailed(f"Order ID {readable_id} already exists", readable_id=readable_id) from exc

    logger.info("created order %s (id=%s)", order.readable_id, order.id)
    return order


def change_readable_id(db: Session, *, order_id: int, new_readable_id: str) -> OrderUpdateResult:
    """
    Try to change an order's readable id. Only a legacy placeholder may be
    replaced, and only by a well-formed id; anything else is refused.
    """
    try:
        with db.begin_nested():
            order = db.get(Order, order_id)
            if order is None:
                raise NotFound(f"Order {order_id} not found", order_id=order_id)
            order.readable_id = new_readable_id
            db.flush()
    except StockLedgerError as exc:
        logger.warning("readable id change refused for order %s: %s", order_id, exc.message)
        return OrderUpdateResult(success=False, error_code=exc.code, message=exc.message)
    except IntegrityError:
        message = f"Order ID {new_readable_id} already exists"
        logger.warning("readable id change refused for order %s: %s", order_id, message)
        return OrderUpdateResult(success=False, error_code=ValidationFailed.code, message=message)

    logger.info("order %s readable id is now %s", order_id, order.readable_id)
    return OrderUpdateResult(success=True, order=OrderRead.model_validate(order))
