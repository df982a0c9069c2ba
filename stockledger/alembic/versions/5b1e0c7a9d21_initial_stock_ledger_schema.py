"""initial stock ledger schema

Revision ID: 5b1e0c7a9d21
Revises:
Create Date: 2026-10-19 09:12:40.118204
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5b1e0c7a9d21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

MOVEMENT_TYPES = (
    "reserved",
    "sold",
    "confirmed",
    "restored",
    "adjustment_in",
    "adjustment_out",
    "sale",
    "return",
    "damage",
    "adjustment",
)


def upgrade() -> None:
    op.create_table(
        "products",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "product_variants",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("product_id", sa.BigInteger(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("sku", sa.String(100), nullable=False, unique=True),
        sa.Column("available_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("available_stock >= 0", name="ck_variant_available_nonneg"),
        sa.CheckConstraint("reserved_stock >= 0", name="ck_variant_reserved_nonneg"),
    )
    op.create_index("ix_product_variants_product_id", "product_variants", ["product_id"])

    op.create_table(
        "orders",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("readable_id", sa.String(64), nullable=False, unique=True),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index(
        "ix_orders_readable_id_prefix",
        "orders",
        ["readable_id"],
        postgresql_ops={"readable_id": "text_pattern_ops"},
    )

    op.create_table(
        "stock_movements",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column(
            "variant_id",
            sa.BigInteger(),
            sa.ForeignKey("product_variants.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("order_id", sa.BigInteger(), sa.ForeignKey("orders.id", ondelete="RESTRICT")),
        sa.Column(
            "movement_type",
            sa.Enum(*MOVEMENT_TYPES, name="movement_type", native_enum=False, length=32),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reserved_delta", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("source", sa.String(50)),
        sa.Column("reason", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(128)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("quantity <> 0 OR reserved_delta <> 0", name="ck_stock_movement_nonzero"),
        sa.CheckConstraint("balance_after >= 0", name="ck_stock_movement_balance_nonneg"),
    )
    op.create_index("ix_stock_movements_variant_id", "stock_movements", ["variant_id"])
    op.create_index("ix_stock_movements_order_id", "stock_movements", ["order_id"])
    op.create_index("ix_stock_movements_created_at", "stock_movements", ["created_at"])
    op.create_index("ix_stock_movements_variant_time", "stock_movements", ["variant_id", "created_at"])
    op.create_index("ix_stock_movements_order_variant", "stock_movements", ["order_id", "variant_id"])

    if op.get_bind().dialect.name != "postgresql":
        return

    # Same rule as the ORM guard, for writes that bypass the ORM.
    # Legacy prefixes must match immutability.LEGACY_READABLE_ID_PREFIXES.
    op.execute("""
    CREATE OR REPLACE FUNCTION prevent_readable_id_change()
    RETURNS TRIGGER AS $$
    BEGIN
        IF OLD.readable_id IS DISTINCT FROM NEW.readable_id THEN
            IF (OLD.readable_id LIKE 'LEGACY-%' OR OLD.readable_id LIKE 'TT-%')
               AND NEW.readable_id ~ '^[0-9]{2}-[0-9]{2}-[0-9]{2}-[0-9]+$' THEN
                RETURN NEW;
            END IF;
            RAISE EXCEPTION 'Order ID (readable_id) is immutable and cannot be changed. Original: %, Attempted: %',
                OLD.readable_id, NEW.readable_id
                USING ERRCODE = 'check_violation';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql;
    """)
    op.execute("""
    DO $$
    BEGIN
        IF NOT EXISTS (
            SELECT 1 FROM pg_trigger WHERE tgname = 'trg_orders_readable_id_immutable'
        ) THEN
            CREATE TRIGGER trg_orders_readable_id_immutable
            BEFORE UPDATE OF readable_id ON orders
            FOR EACH ROW EXECUTE FUNCTION prevent_readable_id_change();
        END IF;
    END $$;
    """)


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        op.execute("DROP TRIGGER IF EXISTS trg_orders_readable_id_immutable ON orders;")
        op.execute("DROP FUNCTION IF EXISTS prevent_readable_id_change();")

    op.drop_table("stock_movements")
    op.drop_table("orders")
    op.drop_table("product_variants")
    op.drop_table("products")
