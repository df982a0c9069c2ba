import enum
from datetime import datetime, timezone

from sqlalchemy import BigInteger, Integer

# BIGINT is not a rowid alias on SQLite, so autoincrement needs INTEGER there
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MovementType(str, enum.Enum):
    reserved = "reserved"
    sold = "sold"
    # releases reserved_stock on confirmation; available_stock untouched
    confirmed = "confirmed"
    restored = "restored"
    adjustment_in = "adjustment_in"
    adjustment_out = "adjustment_out"
    # store counter: immediate sale / refund, reserved_stock untouched
    sale = "sale"
    return_ = "return"
    # legacy manual entries
    damage = "damage"
    adjustment = "adjustment"


class MovementSource(str, enum.Enum):
    order = "order"
    manual = "manual"
    adjustment = "adjustment"
    opening = "opening"
    store_pos = "store_pos"


class ErrorCode(str, enum.Enum):
    validation_error = "VALIDATION_ERROR"
    not_found = "NOT_FOUND"
    insufficient_stock = "INSUFFICIENT_STOCK"
    insufficient_reserved = "INSUFFICIENT_RESERVED"
    immutable_field_violation = "IMMUTABLE_FIELD_VIOLATION"
    internal = "INTERNAL"
