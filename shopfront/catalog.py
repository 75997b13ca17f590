"""
Product catalog queries and admin operations.

A product is *listed* when it is published and not removed. Only listed
products are visible publicly and only listed products can be bought; removed
products also disappear from the admin views.
"""
import logging

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from . import config
from .db import transaction
from .errors import ProductNotFound
from .models import Product, utcnow

logger = logging.getLogger(__name__)

ACTIVE = Product.deleted_at.is_(None)
LISTED = and_(Product.published.is_(True), ACTIVE)


def list_products(db: Session, include_unpublished: bool = False) -> list[Product]:
    cond = ACTIVE if include_unpublished else LISTED
    return list(db.scalars(select(Product).where(cond).order_by(Product.id.desc())))


def get_product(db: Session, product_id: int, include_unpublished: bool = False) -> Product:
    cond = ACTIVE if include_unpublished else LISTED
    product = db.scalars(select(Product).where(Product.id == product_id, cond)).first()
    if product is None:
        raise ProductNotFound(product_id)
    return product


def update_product(db: Session, product_id: int, changes: dict) -> Product:
    with transaction(db):
        product = get_product(db, product_id, include_unpublished=True)
        for field, value in changes.items():
            setattr(product, field, value)
    db.refresh(product)
    return product


def remove_product(db: Session, product_id: int) -> None:
    """Soft-delete a product. Existing order items keep pointing at it."""
    with transaction(db):
        product = get_product(db, product_id, include_unpublished=True)
        product.deleted_at = utcnow()
        product.published = False
    logger.info("Product %s removed", product_id)


def list_categories(db: Session) -> list[str]:
    stmt = (
        select(Product.category)
        .where(LISTED, Product.category != "")
        .distinct()
        .order_by(Product.category)
    )
    return list(db.scalars(stmt))


def product_stats(db: Session) -> dict:
    total = db.scalar(select(func.count(Product.id)).where(ACTIVE)) or 0
    published = db.scalar(select(func.count(Product.id)).where(LISTED)) or 0
    low_stock = db.scalar(
        select(func.count(Product.id)).where(
            ACTIVE, Product.stock > 0, Product.stock < config.LOW_STOCK_THRESHOLD
        )
    ) or 0
    out_of_stock = db.scalar(select(func.count(Product.id)).where(ACTIVE, Product.stock == 0)) or 0

    count = func.count(Product.id).label("count")
    by_category = [
        {"category": category, "count": n}
        for category, n in db.execute(
            select(Product.category, count)
            .where(ACTIVE)
            .group_by(Product.category)
            .order_by(count.desc(), Product.category)
        )
    ]

    return {
        "total": total,
        "published": published,
        "by_category": by_category,
        "low_stock": low_stock,
        "out_of_stock": out_of_stock,
    }
