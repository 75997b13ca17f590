"""
Order placement, the order status state machine, and order queries.

Placement is the one place stock is taken from the catalog for a sale: product
rows are locked, checked, and decremented in the same transaction that writes
the order and its items. Nothing survives a failed placement.
"""
import logging
from datetime import timedelta
from typing import Iterable, NamedTuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import config
from .catalog import LISTED
from .db import transaction
from .errors import (
    CancellationNotAllowed,
    IllegalTransition,
    InsufficientStock,
    OrderNotEditable,
    OrderNotFound,
    ProductsNotFound,
    TransactionFailed,
    ValidationFailed,
)
from .models import Order, OrderItem, OrderStatus, Product, utcnow
from .policy import Action, Actor, enforce
from .shared.events import publish
from .stock import release_stock, reserve_stock

logger = logging.getLogger(__name__)


class OrderLine(NamedTuple):
    product_id: int
    quantity: int


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.DELIVERED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
}

CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})

# order items are immutable once placed
EDITABLE_FIELDS = frozenset({"delivery_address"})


# --- state machine ---


def parse_status(value: str | OrderStatus) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise ValidationFailed(f"Unknown order status '{value}' (expected one of {allowed})")


def can_transition(current: str | OrderStatus, target: str | OrderStatus) -> bool:
    return OrderStatus(target) in TRANSITIONS[OrderStatus(current)]


def ensure_transition(current: str | OrderStatus, target: str | OrderStatus) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(OrderStatus(current).value, OrderStatus(target).value)


def can_be_cancelled(order: Order) -> bool:
    return not order.is_cancelled and OrderStatus(order.status) in CANCELLABLE


def is_editable(order: Order) -> bool:
    return not order.is_cancelled and OrderStatus(order.status) == OrderStatus.PENDING


# --- validation ---


def validate_lines(lines: list[OrderLine]) -> None:
    """Reject bad carts before any database work."""
    if not lines:
        raise ValidationFailed("Order must contain at least one item")

    seen: set[int] = set()
    for line in lines:
        if line.product_id in seen:
            raise ValidationFailed(
                f"Product {line.product_id} appears more than once in the order",
                product_id=line.product_id,
            )
        seen.add(line.product_id)

    for line in lines:
        if line.quantity <= 0:
            raise ValidationFailed(
                f"Quantity for product {line.product_id} must be greater than 0",
                product_id=line.product_id,
            )
        if line.quantity > config.MAX_ITEM_QUANTITY:
            raise ValidationFailed(
                f"Quantity for product {line.product_id} cannot exceed {config.MAX_ITEM_QUANTITY}",
                product_id=line.product_id,
            )


def validate_address(address: str | None) -> None:
    if address is not None and len(address) > config.MAX_ADDRESS_LENGTH:
        raise ValidationFailed(f"Delivery address cannot exceed {config.MAX_ADDRESS_LENGTH} characters")


# --- placement ---


def _lock_products(db: Session, product_ids: Iterable[int]) -> dict[int, Product]:
    # ascending id order keeps concurrent multi-product placements deadlock-free
    stmt = (
        select(Product)
        .where(Product.id.in_(list(product_ids)), LISTED)
        .order_by(Product.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {p.id: p for p in db.scalars(stmt)}


def place_order_in_transaction(
    db: Session,
    user_id: str,
    lines: list[OrderLine],
    delivery_address: str | None = None,
    unit_prices: dict[int, int] | None = None,
) -> Order:
    """
    Lock, check, write and decrement inside the caller's transaction.

    ``unit_prices`` overrides the catalog price per product (checkout snapshots);
    otherwise the current catalog price becomes the price at purchase.
    """
    products = _lock_products(db, (line.product_id for line in lines))

    missing = [line.product_id for line in lines if line.product_id not in products]
    if missing:
        raise ProductsNotFound(missing)

    shortages = [
        {
            "product_id": line.product_id,
            "available": products[line.product_id].stock,
            "requested": line.quantity,
        }
        for line in lines
        if products[line.product_id].stock < line.quantity
    ]
    if shortages:
        raise InsufficientStock(shortages)

    prices = {
        line.product_id: unit_prices[line.product_id] if unit_prices else products[line.product_id].price
        for line in lines
    }

    order = Order(
        user_id=user_id,
        status=OrderStatus.PENDING.value,
        total_amount=sum(prices[line.product_id] * line.quantity for line in lines),
        delivery_address=delivery_address,
    )
    order.items = [
        OrderItem(
            product_id=line.product_id,
            quantity=line.quantity,
            price_at_purchase=prices[line.product_id],
        )
        for line in lines
    ]
    db.add(order)
    db.flush()

    for line in sorted(lines, key=lambda l: l.product_id):
        if not reserve_stock(db, line.product_id, line.quantity):
            # only reachable when the backend ignores FOR UPDATE
            available = db.scalar(select(Product.stock).where(Product.id == line.product_id))
            raise InsufficientStock(
                [{"product_id": line.product_id, "available": available, "requested": line.quantity}]
            )

    return order


def place_order(
    db: Session,
    user_id: str,
    lines: list[OrderLine],
    delivery_address: str | None = None,
) -> Order:
    validate_lines(lines)
    validate_address(delivery_address)

    try:
        with transaction(db):
            order = place_order_in_transaction(db, user_id, lines, delivery_address)
    except SQLAlchemyError as e:
        logger.exception("Order placement failed for user=%s", user_id)
        raise TransactionFailed("Failed to create order") from e

    logger.info("Order placed id=%s user=%s total=%s", order.id, user_id, order.total_amount)
    publish(
        "order.placed",
        {"order_id": order.id, "user_id": user_id, "total_amount": order.total_amount},
    )
    return load_order(db, order.id)


# --- queries ---


def load_order(db: Session, order_id: str) -> Order | None:
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .options(selectinload(Order.items).selectinload(OrderItem.product))
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def _lock_order(db: Session, order_id: str) -> Order | None:
    stmt = (
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def get_order(db: Session, order_id: str, actor: Actor) -> Order:
    order = load_order(db, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    enforce(actor, Action.VIEW, order.user_id, OrderNotFound(order_id))
    return order


def list_orders(
    db: Session,
    actor: Actor,
    status: str | None = None,
    user_id: str | None = None,
) -> list[Order]:
    stmt = select(Order).options(selectinload(Order.items).selectinload(OrderItem.product))

    if not actor.is_admin:
        user_id = actor.user_id
    if user_id is not None:
        stmt = stmt.where(Order.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Order.status == parse_status(status).value)

    return list(db.scalars(stmt.order_by(Order.created_at.desc(), Order.id)))


# --- mutations ---


def update_order(db: Session, order_id: str, actor: Actor, changes: dict) -> Order:
    """Apply only the fields present in ``changes``; absent fields keep their value."""
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise ValidationFailed(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
    if "delivery_address" in changes:
        validate_address(changes["delivery_address"])

    with transaction(db):
        order = _lock_order(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        enforce(actor, Action.EDIT, order.user_id, OrderNotFound(order_id))
        if not is_editable(order):
            raise OrderNotEditable("Cancelled" if order.is_cancelled else order.status)
        for field, value in changes.items():
            setattr(order, field, value)

    return load_order(db, order_id)


def transition_status(db: Session, order_id: str, actor: Actor, new_status: str | OrderStatus) -> Order:
    enforce(actor, Action.TRANSITION)
    target = parse_status(new_status)

    with transaction(db):
        order = _lock_order(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        if order.is_cancelled:
            raise IllegalTransition(f"{order.status} (cancelled)", target.value)
        previous = order.status
        ensure_transition(previous, target)
        order.status = target.value

    logger.info("Order %s status %s -> %s by %s", order_id, previous, target.value, actor.user_id)
    publish("order.status_changed", {"order_id": order_id, "from": previous, "to": target.value})
    return load_order(db, order_id)


def cancel_order(db: Session, order_id: str, actor: Actor, restock: bool | None = None) -> Order:
    """
    Cancel a Pending or Processing order.

    With ``restock`` (default: RESTOCK_ON_CANCEL) every item's quantity goes
    back to its product in the same transaction that sets ``cancelled_at``.
    """
    if restock is None:
        restock = config.RESTOCK_ON_CANCEL

    with transaction(db):
        order = _lock_order(db, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        enforce(actor, Action.CANCEL, order.user_id, OrderNotFound(order_id))
        if order.is_cancelled:
            raise CancellationNotAllowed(f"Order {order_id} is already cancelled")
        if not can_be_cancelled(order):
            raise CancellationNotAllowed(f"Cannot cancel an order in status {order.status}")

        order.cancelled_at = utcnow()
        if restock:
            for item in sorted(order.items, key=lambda i: i.product_id):
                release_stock(db, item.product_id, item.quantity)

    logger.info("Order %s cancelled by %s restock=%s", order_id, actor.user_id, restock)
    publish("order.cancelled", {"order_id": order_id, "user_id": order.user_id, "restocked": restock})
    return load_order(db, order_id)


def order_stats(db: Session, actor: Actor) -> dict:
    enforce(actor, Action.STATS)

    active = Order.cancelled_at.is_(None)
    total = db.scalar(select(func.count(Order.id)).where(active)) or 0
    revenue = db.scalar(select(func.coalesce(func.sum(Order.total_amount), 0)).where(active)) or 0
    by_status = [
        {"status": status, "count": count}
        for status, count in db.execute(
            select(Order.status, func.count(Order.id)).where(active).group_by(Order.status).order_by(Order.status)
        )
    ]
    since = utcnow() - timedelta(hours=24)
    recent = db.scalar(select(func.count(Order.id)).where(active, Order.created_at >= since)) or 0
    cancelled = db.scalar(select(func.count(Order.id)).where(Order.cancelled_at.is_not(None))) or 0

    return {
        "total": total,
        "by_status": by_status,
        "total_revenue": int(revenue),
        "average_order_value": int(revenue) // total if total else 0,
        "recent_orders": recent,
        "cancelled": cancelled,
    }
