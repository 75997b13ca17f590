import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from .db import transaction
from .errors import InsufficientStock, ProductNotFound, ValidationFailed
from .models import Product

logger = logging.getLogger(__name__)


def _expire_cached_stock(db: Session, product_id: int) -> None:
    cached = db.identity_map.get(db.identity_key(Product, product_id))
    if cached is not None:
        db.expire(cached, ["stock"])


def reserve_stock(db: Session, product_id: int, quantity: int) -> bool:
    """
    Decrement stock only if at least ``quantity`` is available.

    The check and the decrement are one UPDATE, so concurrent callers can never
    drive the counter below zero. Runs inside the caller's transaction and
    returns False when nothing was reserved.
    """
    result = db.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    _expire_cached_stock(db, product_id)
    return result.rowcount == 1


def release_stock(db: Session, product_id: int, quantity: int) -> None:
    db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    _expire_cached_stock(db, product_id)


def adjust_stock(db: Session, product_id: int, delta: int) -> Product:
    """Add (delta > 0) or remove (delta < 0) units from a product's stock."""
    if delta == 0:
        raise ValidationFailed("Stock delta must not be zero")

    with transaction(db):
        product = db.get(Product, product_id, with_for_update=True, populate_existing=True)
        if product is None or product.is_deleted:
            raise ProductNotFound(product_id)

        available = product.stock
        if delta < 0:
            if not reserve_stock(db, product_id, -delta):
                raise InsufficientStock(
                    [{"product_id": product_id, "available": available, "requested": -delta}]
                )
        else:
            release_stock(db, product_id, delta)

    db.refresh(product)
    logger.info("Stock adjusted product=%s delta=%s stock=%s", product_id, delta, product.stock)
    return product
