from sqlalchemy import select

from stockledger.app.db.models.core_types import ErrorCode, MovementType
from stockledger.app.db.models.models_v1 import StockMovement
from stockledger.services import inventory, order_ids


def _movements(db, variant_id, movement_type=None):
    stmt = select(StockMovement).where(StockMovement.variant_id == variant_id)
    if movement_type is not None:
        stmt = stmt.where(StockMovement.movement_type == movement_type)
    return db.execute(stmt.order_by(StockMovement.id)).scalars().all()


def test_reserve_moves_available_to_reserved(db_session, make_variant):
    """
    GIVEN a variant with 10 available
    WHEN 4 are reserved for an order
    THEN available=6, reserved=4 and one reserved movement (-4, 10 -> 6)
    """
    v = make_variant(10)
    order = order_ids.create_order(db_session)

    result = inventory.reserve_batch(db_session, [{"variant_id": v.id, "quantity": 4}], order_id=order.id)
    db_session.commit()

    assert result.success
    item = result.items[0]
    assert (item.previous_stock, item.new_stock, item.deducted) == (10, 6, 4)

    db_session.refresh(v)
    assert (v.available_stock, v.reserved_stock) == (6, 4)

    [mv] = _movements(db_session, v.id, MovementType.reserved)
    assert mv.quantity == -4
    assert (mv.balance_before, mv.balance_after) == (10, 6)
    assert mv.order_id == order.id
    assert mv.source == "order"
    assert item.movement_id == mv.id


def test_reserve_exact_available_leaves_zero(db_session, make_variant):
    v = make_variant(3)

    result = inventory.reserve_batch(db_session, [{"variant_id": v.id, "quantity": 3}])

    assert result.success
    assert result.items[0].new_stock == 0
    assert v.available_stock == 0


def test_reserve_insufficient_lists_every_failure_and_applies_nothing(db_session, make_variant):
    ok = make_variant(10)
    short = make_variant(2)
    empty = make_variant(0)

    result = inventory.reserve_batch(
        db_session,
        [
            {"variant_id": ok.id, "quantity": 5},
            {"variant_id": short.id, "quantity": 3},
            {"variant_id": empty.id, "quantity": 1},
        ],
    )

    assert not result.success
    assert result.error_code == ErrorCode.insufficient_stock
    assert [e.variant_id for e in result.errors] == [short.id, empty.id]

    err = result.errors[0]
    assert err.sku == short.sku
    assert (err.requested, err.available, err.shortfall) == (3, 2, 1)

    db_session.refresh(ok)
    assert (ok.available_stock, ok.reserved_stock) == (10, 0)
    assert _movements(db_session, ok.id, MovementType.reserved) == []


def test_reserve_duplicate_lines_share_the_balance(db_session, make_variant):
    v = make_variant(5)

    result = inventory.reserve_batch(
        db_session,
        [{"variant_id": v.id, "quantity": 3}, {"variant_id": v.id, "quantity": 3}],
    )

    assert not result.success
    assert result.errors[0].available == 2
    assert result.errors[0].shortfall == 1

    db_session.refresh(v)
    assert v.available_stock == 5

    result = inventory.reserve_batch(
        db_session,
        [{"variant_id": v.id, "quantity": 3}, {"variant_id": v.id, "quantity": 2}],
    )
    assert result.success
    assert [i.new_stock for i in result.items] == [2, 0]
    assert v.reserved_stock == 5


def test_reserve_unknown_variant_is_not_found(db_session, make_variant):
    v = make_variant(10)

    result = inventory.reserve_batch(
        db_session,
        [{"variant_id": v.id, "quantity": 1}, {"variant_id": 999_999, "quantity": 1}],
    )

    assert not result.success
    assert result.error_code == ErrorCode.not_found
    assert result.errors[0].variant_id == 999_999
    db_session.refresh(v)
    assert v.available_stock == 10


def test_reserve_rejects_empty_and_non_positive(db_session, make_variant):
    v = make_variant(10)

    empty = inventory.reserve_batch(db_session, [])
    assert not empty.success
    assert empty.error_code == ErrorCode.validation_error

    bad = inventory.reserve_batch(
        db_session,
        [{"variant_id": v.id, "quantity": 0}, {"variant_id": v.id, "quantity": -2}],
    )
    assert not bad.success
    assert bad.error_code == ErrorCode.validation_error
    assert len(bad.errors) == 2
    # opening balance only
    assert len(_movements(db_session, v.id)) == 1


def test_reserve_for_missing_order_is_not_found(db_session, make_variant):
    v = make_variant(10)

    result = inventory.reserve_batch(db_session, [{"variant_id": v.id, "quantity": 1}], order_id=424242)

    assert not result.success
    assert result.error_code == ErrorCode.not_found
    db_session.refresh(v)
    assert v.available_stock == 10


def test_failed_reserve_keeps_earlier_work_in_the_transaction(db_session, make_variant):
    """Only the failing call's savepoint is rolled back."""
    v = make_variant(5)

    first = inventory.reserve_batch(db_session, [{"variant_id": v.id, "quantity": 2}])
    second = inventory.reserve_batch(db_session, [{"variant_id": v.id, "quantity": 10}])
    db_session.commit()

    assert first.success and not second.success
    db_session.refresh(v)
    assert (v.available_stock, v.reserved_stock) == (3, 2)
