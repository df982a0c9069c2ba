import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from stockledger.app.core.errors import ImmutableFieldViolation
from stockledger.app.db.models.core_types import ErrorCode
from stockledger.app.db.models.immutability import (
    LEGACY_READABLE_ID_PREFIXES,
    check_readable_id_change,
    is_well_formed_readable_id,
)
from stockledger.services import order_ids

LEGACY = LEGACY_READABLE_ID_PREFIXES


@pytest.mark.parametrize(
    "value, expected",
    [
        ("26-02-05-101", True),
        ("26-02-05-1", True),
        ("26-2-05-101", False),
        ("26-02-05-101E", False),
        ("LEGACY-1", False),
        ("", False),
        (None, False),
    ],
)
def test_well_formed(value, expected):
    assert is_well_formed_readable_id(value) is expected


def test_check_readable_id_change_rules():
    check_readable_id_change("26-02-05-101", "26-02-05-101", LEGACY)
    check_readable_id_change("LEGACY-0042", "26-02-05-150", LEGACY)
    check_readable_id_change("TT-9", "26-02-05-151", LEGACY)

    for old, new in [
        ("26-02-05-101", "26-02-05-102"),
        ("LEGACY-0042", "LEGACY-0043"),
        ("LEGACY-0042", "not-an-id"),
        ("26-02-05-101", "LEGACY-1"),
    ]:
        with pytest.raises(ImmutableFieldViolation):
            check_readable_id_change(old, new, LEGACY)


def test_assigned_id_cannot_change(db_session):
    order = order_ids.create_order(db_session, readable_id="26-02-05-101")
    db_session.commit()

    result = order_ids.change_readable_id(db_session, order_id=order.id, new_readable_id="26-02-05-999")

    assert not result.success
    assert result.error_code == ErrorCode.immutable_field_violation
    assert "immutable" in result.message
    db_session.refresh(order)
    assert order.readable_id == "26-02-05-101"


def test_legacy_id_can_be_replaced_once(db_session):
    order = order_ids.create_order(db_session, readable_id="LEGACY-0042")
    db_session.commit()

    first = order_ids.change_readable_id(db_session, order_id=order.id, new_readable_id="26-02-05-140")
    db_session.commit()
    second = order_ids.change_readable_id(db_session, order_id=order.id, new_readable_id="26-02-05-141")

    assert first.success
    assert first.order.readable_id == "26-02-05-140"
    assert not second.success
    assert second.error_code == ErrorCode.immutable_field_violation


def test_direct_orm_write_is_guarded(db_session):
    order = order_ids.create_order(db_session, readable_id="26-02-05-101")
    db_session.commit()

    order.readable_id = "26-02-05-102"
    with pytest.raises(ImmutableFieldViolation):
        db_session.flush()
    db_session.rollback()


def test_change_on_missing_order(db_session):
    result = order_ids.change_readable_id(db_session, order_id=4040, new_readable_id="26-02-05-101")

    assert result.error_code == ErrorCode.not_found


def test_change_to_taken_id_is_rejected(db_session):
    order_ids.create_order(db_session, readable_id="26-02-05-101")
    legacy = order_ids.create_order(db_session, readable_id="TT-12")
    db_session.commit()

    result = order_ids.change_readable_id(db_session, order_id=legacy.id, new_readable_id="26-02-05-101")

    assert not result.success
    assert result.error_code == ErrorCode.validation_error


@pytest.mark.postgresql_only
def test_trigger_guards_writes_that_bypass_the_orm(db_session):
    order = order_ids.create_order(db_session, readable_id="26-02-05-101")
    db_session.commit()

    with pytest.raises(DBAPIError):
        db_session.execute(
            text("UPDATE orders SET readable_id = :new WHERE id = :id"),
            {"new": "26-02-05-102", "id": order.id},
        )
    db_session.rollback()
    db_session.refresh(order)
    assert order.readable_id == "26-02-05-101"


@pytest.mark.postgresql_only
@pytest.mark.parametrize("prefix", LEGACY_READABLE_ID_PREFIXES)
def test_trigger_accepts_the_same_legacy_prefixes(db_session, prefix):
    order = order_ids.create_order(db_session, readable_id=f"{prefix}0042")
    db_session.commit()

    db_session.execute(
        text("UPDATE orders SET readable_id = :new WHERE id = :id"),
        {"new": "26-02-05-150", "id": order.id},
    )
    db_session.commit()
    db_session.refresh(order)

    assert order.readable_id == "26-02-05-150"
