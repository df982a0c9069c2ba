from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    String,
    Integer,
    DateTime,
    Boolean,
    ForeignKey,
    Text,
    Enum,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.app.db.base import Base
from stockledger.app.db.models.core_types import BigIntPK, MovementType, utcnow


# ---------- CATALOG ----------
class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    variants: Mapped[list["ProductVariant"]] = relationship(back_populates="product")


class ProductVariant(Base):
    """
    Balance row of a sellable variant.

    available_stock: free to sell
    reserved_stock: held by orders not yet confirmed as sold
    Only the mutation engine writes these two counters.
    """

    __tablename__ = "product_variants"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    sku: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)

    available_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    product: Mapped[Product] = relationship(back_populates="variants")

    __table_args__ = (
        CheckConstraint("available_stock >= 0", name="ck_variant_available_nonneg"),
        CheckConstraint("reserved_stock >= 0", name="ck_variant_reserved_nonneg"),
    )


# ---------- ORDERS ----------
class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    # YY-MM-DD-SEQ, immutable once assigned (see immutability.py)
    readable_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, active_history=True)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index(
            "ix_orders_readable_id_prefix",
            "readable_id",
            postgresql_ops={"readable_id": "text_pattern_ops"},
        ),
    )


# ---------- LEDGER ----------
class StockMovement(Base):
    """
    Append-only ledger row.

    quantity is the signed delta applied to available_stock;
    balance_before / balance_after snapshot that counter.
    reserved_delta is the signed delta applied to reserved_stock, so
    summing both columns replays the two counters.
    """

    __tablename__ = "stock_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)

    variant_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("product_variants.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    order_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        index=True,
    )

    movement_type: Mapped[MovementType] = mapped_column(
        Enum(
            MovementType,
            name="movement_type",
            native_enum=False,
            length=32,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        active_history=True,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_delta: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    source: Mapped[str | None] = mapped_column(String(50))
    reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(128))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    __table_args__ = (
        CheckConstraint("quantity <> 0 OR reserved_delta <> 0", name="ck_stock_movement_nonzero"),
        CheckConstraint("balance_after >= 0", name="ck_stock_movement_balance_nonneg"),
        Index("ix_stock_movements_variant_time", "variant_id", "created_at"),
        Index("ix_stock_movements_order_variant", "order_id", "variant_id"),
    )
