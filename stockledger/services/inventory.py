"""
Atomic stock mutation engine.

Every stock operation:
    - runs inside a savepoint (db.begin_nested()); the caller owns the commit
    - locks the touched variant rows in ascending id order before reading them
    - writes balances and ledger rows together, or neither
    - returns a StockOperationResult instead of raising

Store counter sales and returns follow the same rules. The catalog calls
at the bottom (products, variants) raise StockLedgerError.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stockledger.app.core.config import get_settings
from stockledger.app.core.errors import (
    InsufficientReserved,
    InsufficientStock,
    NotFound,
    StockLedgerError,
    ValidationFailed,
)
from stockledger.app.db.locks import lock_row
from stockledger.app.db.models.core_types import ErrorCode, MovementSource, MovementType
from stockledger.app.db.models.models_v1 import Order, Product, ProductVariant
from stockledger.app.schemas.stock import (
    AdjustmentLine,
    StockItemError,
    StockItemResult,
    StockLine,
    StockOperationResult,
)
from stockledger.services import ledger

logger = logging.getLogger(__name__)

DEFAULT_RESTORE_REASON = "Order cancelled"
DEFAULT_BATCH_REASON = "Batch adjustment"
DEFAULT_RETURN_REASON = "Store Return"

LineT = TypeVar("LineT", bound=BaseModel)


class _BatchRejected(StockLedgerError):
    """Pre-check failed on one or more lines; carries every failing line."""

    def __init__(self, errors: list[StockItemError]) -> None:
        super().__init__(f"{len(errors)} item(s) rejected: {errors[0].message}", errors=errors)
        self.code = errors[0].code
        self.errors = errors


class _BatchAborted(StockLedgerError):
    """An adjustment batch stopped at its first failing line."""

    def __init__(self, cause: StockLedgerError, position: int, processed: int) -> None:
        super().__init__(f"Batch adjustment failed at item {position}: {cause.message}")
        self.code = cause.code
        self.cause = cause
        self.processed = processed


# ---------- helpers ----------
def _diagnostic_code(exc: SQLAlchemyError) -> str | None:
    orig = getattr(exc, "orig", None)
    for attr in ("sqlstate", "pgcode"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    return getattr(exc, "code", None)


def _item_error(exc: StockLedgerError) -> StockItemError:
    d = exc.details
    return StockItemError(
        variant_id=d.get("variant_id"),
        sku=d.get("sku"),
        message=exc.message,
        code=exc.code,
        requested=d.get("requested"),
        available=d.get("available"),
        shortfall=d.get("shortfall"),
    )


def _failure(exc: StockLedgerError) -> StockOperationResult:
    if isinstance(exc, _BatchRejected):
        errors = exc.errors
    elif isinstance(exc, _BatchAborted):
        return StockOperationResult(
            success=False,
            errors=[_item_error(exc.cause)],
            error_code=exc.code,
            message=exc.message,
            processed_before_failure=exc.processed,
        )
    else:
        errors = [_item_error(exc)]

    return StockOperationResult(
        success=False,
        errors=errors,
        error_code=exc.code,
        message=exc.message,
    )


def _run(db: Session, operation: str, apply: Callable[[], StockOperationResult]) -> StockOperationResult:
    """Run apply() in a savepoint and turn any failure into a result."""
    try:
        with db.begin_nested():
            return apply()
    except StockLedgerError as exc:
        if exc.code == ErrorCode.internal:
            logger.error("%s failed: %s", operation, exc.message)
        else:
            logger.warning("%s rejected: %s", operation, exc.message)
        return _failure(exc)
    except SQLAlchemyError as exc:
        logger.exception("%s failed on a database error", operation)
        return StockOperationResult(
            success=False,
            error_code=ErrorCode.internal,
            message=f"{operation} failed: {exc.__class__.__name__}",
            diagnostic_code=_diagnostic_code(exc),
        )


def _parse_lines(items: Iterable[Any] | None, model: type[LineT]) -> list[LineT]:
    if items is None:
        raise ValidationFailed("No items provided")

    lines: list[LineT] = []
    for raw in items:
        if isinstance(raw, model):
            lines.append(raw)
            continue
        try:
            lines.append(model.model_validate(raw))
        except ValidationError as exc:
            raise ValidationFailed(f"Invalid item at position {len(lines) + 1}: {exc.errors()[0]['msg']}") from exc

    if not lines:
        raise ValidationFailed("No items provided")
    return lines


def _require_positive(lines: list[StockLine]) -> None:
    errors = [
        StockItemError(
            variant_id=line.variant_id,
            message=f"Quantity must be positive (got {line.quantity})",
            code=ErrorCode.validation_error,
            requested=line.quantity,
        )
        for line in lines
        if line.quantity <= 0
    ]
    if errors:
        raise _BatchRejected(errors)


def _require_order(db: Session, order_id: int) -> None:
    if db.get(Order, order_id) is None:
        raise NotFound(f"Order {order_id} not found", order_id=order_id)


def _lock_variant(db: Session, variant_id: int) -> ProductVariant | None:
    lock_row(db, "variant", variant_id)
    return db.execute(
        select(ProductVariant)
        .where(ProductVariant.id == variant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def _lock_variants(db: Session, variant_ids: Iterable[int]) -> dict[int, ProductVariant]:
    """Lock in ascending id order; missing ids are left out of the result."""
    found: dict[int, ProductVariant] = {}
    for vid in sorted(set(variant_ids)):
        v = _lock_variant(db, vid)
        if v is not None:
            found[vid] = v
    return found


def _require_available(lines: list[StockLine], variants: dict[int, ProductVariant]) -> None:
    """
    Check every line against available_stock; raise listing every failing
    line. Duplicate lines draw from the same running balance.
    """
    remaining = {vid: v.available_stock for vid, v in variants.items()}
    errors: list[StockItemError] = []
    for line in lines:
        v = variants.get(line.variant_id)
        if v is None:
            errors.append(
                StockItemError(
                    variant_id=line.variant_id,
                    message=f"Variant {line.variant_id} not found",
                    code=ErrorCode.not_found,
                    requested=line.quantity,
                )
            )
            continue
        have = remaining[line.variant_id]
        if have < line.quantity:
            errors.append(
                StockItemError(
                    variant_id=v.id,
                    sku=v.sku,
                    message=f"Insufficient stock for {v.sku}. Available: {have}, Requested: {line.quantity}",
                    code=ErrorCode.insufficient_stock,
                    requested=line.quantity,
                    available=have,
                    shortfall=line.quantity - have,
                )
            )
            continue
        remaining[line.variant_id] = have - line.quantity

    if errors:
        raise _BatchRejected(errors)


# ---------- reserve ----------
def reserve_batch(
    db: Session,
    items: Iterable[StockLine | Mapping[str, Any]],
    *,
    order_id: int | None = None,
    actor: str | None = None,
) -> StockOperationResult:
    """
    Move stock from available to reserved for every line, or for none.

    All lines are checked first; if any fails the result lists every
    failing line and nothing is written.
    """

    def apply() -> StockOperationResult:
        lines = _parse_lines(items, StockLine)
        _require_positive(lines)
        if order_id is not None:
            _require_order(db, order_id)

        variants = _lock_variants(db, (line.variant_id for line in lines))
        _require_available(lines, variants)

        results: list[StockItemResult] = []
        for line in lines:
            v = variants[line.variant_id]
            before, before_reserved = v.available_stock, v.reserved_stock
            v.available_stock = before - line.quantity
            v.reserved_stock = before_reserved + line.quantity

            mv = ledger.append_movement(
                db,
                variant_id=v.id,
                order_id=order_id,
                movement_type=MovementType.reserved,
                quantity=-line.quantity,
                balance_before=before,
                reserved_delta=line.quantity,
                source=MovementSource.order.value if order_id is not None else MovementSource.manual.value,
                notes="Stock reserved for order" if order_id is not None else "Stock reserved",
                actor=actor,
            )
            results.append(
                StockItemResult(
                    variant_id=v.id,
                    sku=v.sku,
                    previous_stock=before,
                    new_stock=v.available_stock,
                    previous_reserved=before_reserved,
                    new_reserved=v.reserved_stock,
                    deducted=line.quantity,
                    movement_id=mv.id,
                )
            )

        logger.info("reserved %d line(s) order=%s", len(results), order_id)
        return StockOperationResult(success=True, items=results)

    return _run(db, "reserve_batch", apply)


# ---------- confirm ----------
def confirm_reservation(
    db: Session,
    *,
    variant_id: int,
    quantity: int,
    order_id: int,
    actor: str | None = None,
) -> StockOperationResult:
    """
    Release part or all of an order's reservation as sold.

    reserved_stock drops, available_stock stays. The quantity is checked
    against what this order still holds for the variant, not against the
    variant-wide counter. A "confirmed" entry records the release, and the
    order's reserved entries become sold once the confirmations cover them.
    """

    def apply() -> StockOperationResult:
        if quantity <= 0:
            raise ValidationFailed(
                f"Quantity must be positive (got {quantity})",
                variant_id=variant_id,
                requested=quantity,
            )
        _require_order(db, order_id)

        v = _lock_variant(db, variant_id)
        if v is None:
            raise NotFound(f"Variant {variant_id} not found", variant_id=variant_id)

        held = min(
            ledger.outstanding_reservation(db, order_id=order_id, variant_id=v.id),
            v.reserved_stock,
        )
        if held < quantity:
            raise InsufficientReserved(
                f"Insufficient reserved stock for {v.sku} on order {order_id}. "
                f"Reserved: {held}, Requested: {quantity}",
                variant_id=v.id,
                sku=v.sku,
                requested=quantity,
                available=held,
                shortfall=quantity - held,
            )

        before_reserved = v.reserved_stock
        v.reserved_stock = before_reserved - quantity
        mv = ledger.append_movement(
            db,
            variant_id=v.id,
            order_id=order_id,
            movement_type=MovementType.confirmed,
            quantity=0,
            balance_before=v.available_stock,
            reserved_delta=-quantity,
            source=MovementSource.order.value,
            notes="Stock confirmed for delivery",
            actor=actor,
        )
        relabelled = ledger.mark_reservation_sold(db, order_id=order_id, variant_id=v.id)

        logger.info(
            "confirmed %d of %s for order %s (%d movement(s) relabelled)",
            quantity,
            v.sku,
            order_id,
            relabelled,
        )
        return StockOperationResult(
            success=True,
            items=[
                StockItemResult(
                    variant_id=v.id,
                    sku=v.sku,
                    previous_stock=v.available_stock,
                    new_stock=v.available_stock,
                    previous_reserved=before_reserved,
                    new_reserved=v.reserved_stock,
                    confirmed=quantity,
                    movement_id=mv.id,
                )
            ],
        )

    return _run(db, "confirm_reservation", apply)


# ---------- restore ----------
def restore_batch(
    db: Session,
    items: Iterable[StockLine | Mapping[str, Any]],
    *,
    order_id: int | None = None,
    reason: str | None = None,
    actor: str | None = None,
) -> StockOperationResult:
    """
    Return stock from reserved to available.

    Unknown variants are skipped, not errors. With an order_id the amount
    is capped at what that order still holds for the variant, so restoring
    after a confirmation (or twice) changes nothing. reserved_stock never
    goes below zero.
    """
    reason = reason or DEFAULT_RESTORE_REASON

    def apply() -> StockOperationResult:
        lines = _parse_lines(items, StockLine)
        _require_positive(lines)
        if order_id is not None:
            _require_order(db, order_id)

        variants = _lock_variants(db, (line.variant_id for line in lines))

        results: list[StockItemResult] = []
        skipped: list[int] = []
        for line in lines:
            v = variants.get(line.variant_id)
            if v is None:
                skipped.append(line.variant_id)
                continue

            qty = line.quantity
            if order_id is not None:
                qty = min(qty, ledger.outstanding_reservation(db, order_id=order_id, variant_id=v.id))
                if qty <= 0:
                    skipped.append(v.id)
                    continue

            before, before_reserved = v.available_stock, v.reserved_stock
            v.available_stock = before + qty
            v.reserved_stock = max(0, before_reserved - qty)

            mv = ledger.append_movement(
                db,
                variant_id=v.id,
                order_id=order_id,
                movement_type=MovementType.restored,
                quantity=qty,
                balance_before=before,
                reserved_delta=v.reserved_stock - before_reserved,
                source=MovementSource.order.value if order_id is not None else MovementSource.manual.value,
                reason=reason,
                notes=f"Stock restored: {reason}",
                actor=actor,
            )
            results.append(
                StockItemResult(
                    variant_id=v.id,
                    sku=v.sku,
                    previous_stock=before,
                    new_stock=v.available_stock,
                    previous_reserved=before_reserved,
                    new_reserved=v.reserved_stock,
                    restored=qty,
                    movement_id=mv.id,
                )
            )

        if skipped:
            logger.info("restore skipped variant(s) %s order=%s", skipped, order_id)
        logger.info("restored %d line(s) order=%s", len(results), order_id)
        return StockOperationResult(success=True, items=results, skipped=skipped)

    return _run(db, "restore_batch", apply)


# ---------- adjust ----------
def _validate_adjustment(variant_id: int, delta: int, reason: str | None) -> str:
    if delta == 0:
        raise ValidationFailed("Adjustment quantity cannot be zero", variant_id=variant_id, requested=delta)

    min_len = get_settings().min_reason_length
    cleaned = (reason or "").strip()
    if len(cleaned) < min_len:
        raise ValidationFailed(
            f"Reason is required (minimum {min_len} characters)",
            variant_id=variant_id,
            requested=delta,
        )
    return cleaned


def _apply_adjustment(
    db: Session,
    v: ProductVariant,
    delta: int,
    reason: str,
    actor: str | None,
) -> StockItemResult:
    before = v.available_stock
    after = before + delta
    if after < 0:
        raise InsufficientStock(
            f"Insufficient stock for {v.sku}. Current: {before}, Requested: {delta}",
            variant_id=v.id,
            sku=v.sku,
            requested=-delta,
            available=before,
            shortfall=-after,
        )

    v.available_stock = after
    mv = ledger.append_movement(
        db,
        variant_id=v.id,
        movement_type=MovementType.adjustment_in if delta > 0 else MovementType.adjustment_out,
        quantity=delta,
        balance_before=before,
        source=MovementSource.adjustment.value,
        reason=reason,
        notes=f"Atomic adjustment: {delta:+d} units",
        actor=actor,
    )
    return StockItemResult(
        variant_id=v.id,
        sku=v.sku,
        previous_stock=before,
        new_stock=after,
        adjusted=delta,
        movement_id=mv.id,
    )


def adjust_stock(
    db: Session,
    *,
    variant_id: int,
    quantity_delta: int,
    reason: str | None,
    actor: str | None = None,
) -> StockOperationResult:
    """Manual correction of available_stock by a signed delta."""

    def apply() -> StockOperationResult:
        cleaned = _validate_adjustment(variant_id, quantity_delta, reason)
        v = _lock_variant(db, variant_id)
        if v is None:
            raise NotFound(f"Variant {variant_id} not found", variant_id=variant_id)

        item = _apply_adjustment(db, v, quantity_delta, cleaned, actor)
        logger.info("adjusted %s by %+d (%s) actor=%s", v.sku, quantity_delta, cleaned, actor)
        return StockOperationResult(success=True, items=[item])

    return _run(db, "adjust_stock", apply)


def adjust_batch(
    db: Session,
    adjustments: Iterable[AdjustmentLine | Mapping[str, Any]],
    *,
    actor: str | None = None,
) -> StockOperationResult:
    """
    Apply several adjustments, all or nothing.

    Stops at the first failing line; the result reports it together with
    how many lines had gone through before it (all rolled back).
    """

    def apply() -> StockOperationResult:
        lines = _parse_lines(adjustments, AdjustmentLine)
        variants = _lock_variants(db, (line.variant_id for line in lines))

        results: list[StockItemResult] = []
        for position, line in enumerate(lines, start=1):
            try:
                cleaned = _validate_adjustment(line.variant_id, line.quantity, line.reason or DEFAULT_BATCH_REASON)
                v = variants.get(line.variant_id)
                if v is None:
                    raise NotFound(f"Variant {line.variant_id} not found", variant_id=line.variant_id)
                results.append(_apply_adjustment(db, v, line.quantity, cleaned, actor))
            except StockLedgerError as exc:
                raise _BatchAborted(exc, position=position, processed=len(results)) from exc

        logger.info("batch adjusted %d line(s) actor=%s", len(results), actor)
        return StockOperationResult(success=True, items=results)

    return _run(db, "adjust_batch", apply)


# ---------- store counter ----------
def deduct_sale_batch(
    db: Session,
    items: Iterable[StockLine | Mapping[str, Any]],
    *,
    order_id: int | None = None,
    actor: str | None = None,
) -> StockOperationResult:
    """
    Immediate sale at the store counter: available_stock drops and nothing
    is reserved. Same all-or-nothing checking as reserve_batch.
    """

    def apply() -> StockOperationResult:
        lines = _parse_lines(items, StockLine)
        _require_positive(lines)
        if order_id is not None:
            _require_order(db, order_id)

        variants = _lock_variants(db, (line.variant_id for line in lines))
        _require_available(lines, variants)

        results: list[StockItemResult] = []
        for line in lines:
            v = variants[line.variant_id]
            before = v.available_stock
            v.available_stock = before - line.quantity

            mv = ledger.append_movement(
                db,
                variant_id=v.id,
                order_id=order_id,
                movement_type=MovementType.sale,
                quantity=-line.quantity,
                balance_before=before,
                source=MovementSource.store_pos.value,
                notes=f"Store Sale: {v.product.name} x {line.quantity}",
                actor=actor,
            )
            results.append(
                StockItemResult(
                    variant_id=v.id,
                    sku=v.sku,
                    previous_stock=before,
                    new_stock=v.available_stock,
                    deducted=line.quantity,
                    movement_id=mv.id,
                )
            )

        logger.info("store sale of %d line(s) order=%s", len(results), order_id)
        return StockOperationResult(success=True, items=results)

    return _run(db, "deduct_sale_batch", apply)


def deduct_sale(
    db: Session,
    *,
    variant_id: int,
    quantity: int,
    order_id: int | None = None,
    actor: str | None = None,
) -> StockOperationResult:
    return deduct_sale_batch(
        db,
        [{"variant_id": variant_id, "quantity": quantity}],
        order_id=order_id,
        actor=actor,
    )


def restore_return(
    db: Session,
    *,
    variant_id: int,
    quantity: int,
    order_id: int | None = None,
    reason: str | None = None,
    actor: str | None = None,
) -> StockOperationResult:
    """Store refund: the returned units go straight back to available_stock."""
    reason = reason or DEFAULT_RETURN_REASON

    def apply() -> StockOperationResult:
        if quantity <= 0:
            raise ValidationFailed(
                f"Quantity must be positive (got {quantity})",
                variant_id=variant_id,
                requested=quantity,
            )
        if order_id is not None:
            _require_order(db, order_id)

        v = _lock_variant(db, variant_id)
        if v is None:
            raise NotFound(f"Variant {variant_id} not found", variant_id=variant_id)

        before = v.available_stock
        v.available_stock = before + quantity
        mv = ledger.append_movement(
            db,
            variant_id=v.id,
            order_id=order_id,
            movement_type=MovementType.return_,
            quantity=quantity,
            balance_before=before,
            source=MovementSource.store_pos.value,
            reason=reason,
            notes=f"Store Return: {v.product.name} x {quantity}",
            actor=actor,
        )

        logger.info("store return of %d x %s order=%s", quantity, v.sku, order_id)
        return StockOperationResult(
            success=True,
            items=[
                StockItemResult(
                    variant_id=v.id,
                    sku=v.sku,
                    previous_stock=before,
                    new_stock=v.available_stock,
                    restored=quantity,
                    movement_id=mv.id,
                )
            ],
        )

    return _run(db, "restore_return", apply)


# ---------- catalog ----------
def create_product(db: Session, *, name: str, active: bool = True) -> Product:
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Product name is required")

    product = Product(name=name, active=active)
    db.add(product)
    db.flush()
    return product


def create_variant(
    db: Session,
    *,
    product_id: int,
    sku: str,
    opening_stock: int = 0,
    actor: str | None = None,
) -> ProductVariant:
    """
    New variant with an optional opening balance. A non-zero opening
    balance is written to the ledger so replay starts from zero.

    Raises ValidationFailed / NotFound; setup calls are not batch results.
    """
    sku = (sku or "").strip()
    if not sku:
        raise ValidationFailed("SKU is required")
    if opening_stock < 0:
        raise ValidationFailed(f"Opening stock cannot be negative (got {opening_stock})", sku=sku)
    if db.get(Product, product_id) is None:
        raise NotFound(f"Product {product_id} not found", product_id=product_id)

    try:
        with db.begin_nested():
            variant = ProductVariant(
                product_id=product_id,
                sku=sku,
                available_stock=opening_stock,
                reserved_stock=0,
            )
            db.add(variant)
            db.flush()

            if opening_stock:
                ledger.append_movement(
                    db,
                    variant_id=variant.id,
                    movement_type=MovementType.adjustment_in,
                    quantity=opening_stock,
                    balance_before=0,
                    source=MovementSource.opening.value,
                    reason="Opening balance",
                    actor=actor,
                )
    except IntegrityError as exc:
        raise ValidationFailed(f"SKU {sku} already exists", sku=sku) from exc

    logger.info("created variant %s (id=%s) opening=%s", sku, variant.id, opening_stock)
    return variant


def list_variants(db: Session, *, product_id: int | None = None) -> list[ProductVariant]:
    stmt = select(ProductVariant)
    if product_id is not None:
        stmt = stmt.where(ProductVariant.product_id == product_id)
    return list(db.execute(stmt.order_by(ProductVariant.id.asc())).scalars().all())
