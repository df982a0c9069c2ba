from __future__ import annotations

import logging

from sqlalchemy import select

from stockledger.app.core.config import get_settings
from stockledger.app.core.logging import setup_logging
from stockledger.app.db.session import SessionLocal, get_engine
from stockledger.app.db.models.models_v1 import Product, ProductVariant
from stockledger.services import inventory

logger = logging.getLogger(__name__)

DEMO_PRODUCT = "Demo T-shirt"
DEMO_VARIANTS = [
    ("DEMO-TSHIRT-M", 10),
    ("DEMO-TSHIRT-L", 5),
]


def run_seed(db=None) -> dict[str, int]:
    """
    Demo catalog: one product, two variants with opening balances.
    Safe to run again; existing rows are left alone.
    """
    own_session = db is None
    if own_session:
        db = SessionLocal(bind=get_engine())
    try:
        # 1) Product
        product = db.scalar(select(Product).where(Product.name == DEMO_PRODUCT))
        if not product:
            product = inventory.create_product(db, name=DEMO_PRODUCT)
            db.commit()

        # 2) Variants, opening stock goes through the ledger
        created: dict[str, int] = {}
        for sku, opening in DEMO_VARIANTS:
            if db.scalar(select(ProductVariant).where(ProductVariant.sku == sku)):
                continue
            v = inventory.create_variant(db, product_id=product.id, sku=sku, opening_stock=opening, actor="seed")
            created[sku] = v.id
            db.commit()

        logger.info("SEED OK: product=%s, new variants=%s", DEMO_PRODUCT, sorted(created))
        return created
    finally:
        if own_session:
            db.close()


if __name__ == "__main__":
    setup_logging(get_settings().log_level)
    run_seed()
