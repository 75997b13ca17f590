"""
Checkout sessions: a frozen cart snapshot bridging local state and a hosted
payment page.

A session is created ``pending`` and only ever moves to ``completed`` through
``complete_checkout_session`` / ``confirm_checkout``. Expiry is passive: rows
past ``expires_at`` are simply invisible to every read here.
"""
import logging
from datetime import timedelta
from typing import NamedTuple
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .catalog import LISTED
from .db import transaction
from .errors import (
    CheckoutSessionNotFound,
    PaymentError,
    PaymentNotCompleted,
    ProductsNotFound,
    TransactionFailed,
    ValidationFailed,
)
from .models import CheckoutSession, CheckoutStatus, Order, Product, utcnow
from .orders import OrderLine, load_order, place_order_in_transaction, validate_address, validate_lines
from .payments import LineItem, PaymentGateway
from .policy import Action, Actor, enforce
from .shared.events import publish

logger = logging.getLogger(__name__)

PAID_STATUSES = frozenset({"paid", "no_payment_required"})


class CartLine(NamedTuple):
    product_id: int
    quantity: int
    price: int


def snapshot(lines: list[CartLine], total: int) -> dict:
    return {
        "items": [
            {"productId": line.product_id, "quantity": line.quantity, "price": line.price}
            for line in lines
        ],
        "total": total,
    }


def snapshot_lines(cart_data: dict) -> list[CartLine]:
    return [CartLine(i["productId"], i["quantity"], i["price"]) for i in cart_data["items"]]


def validate_cart(lines: list[CartLine], total: int, currency: str) -> None:
    validate_lines([OrderLine(line.product_id, line.quantity) for line in lines])

    for line in lines:
        if line.price < 0:
            raise ValidationFailed(f"Price for product {line.product_id} cannot be negative")

    expected = sum(line.price * line.quantity for line in lines)
    if total != expected:
        raise ValidationFailed(f"Cart total {total} does not match item sum {expected}", expected_total=expected)

    if len(currency) != 3 or not currency.isalpha():
        raise ValidationFailed(f"Invalid currency '{currency}'")


def with_session_id(url: str, session_id: str) -> str:
    # the caller's query is kept verbatim so provider placeholders like
    # {CHECKOUT_SESSION_ID} survive
    parts = urlsplit(url)
    param = urlencode({"sessionId": session_id})
    query = f"{parts.query}&{param}" if parts.query else param
    return urlunsplit(parts._replace(query=query))


def _open_session(
    db: Session,
    actor: Actor,
    lines: list[CartLine],
    total: int,
    currency: str,
    metadata: dict | None,
) -> tuple[CheckoutSession, list[LineItem]]:
    validate_cart(lines, total, currency)

    ids = [line.product_id for line in lines]
    products = {p.id: p for p in db.scalars(select(Product).where(Product.id.in_(ids), LISTED))}
    missing = [pid for pid in ids if pid not in products]
    if missing:
        raise ProductsNotFound(missing)

    mismatches = [
        {"product_id": line.product_id, "price": line.price, "current_price": products[line.product_id].price}
        for line in lines
        if products[line.product_id].price != line.price
    ]
    if mismatches:
        raise ValidationFailed("Cart prices no longer match the catalog", price_mismatches=mismatches)

    line_items = [
        LineItem(
            name=products[line.product_id].name,
            unit_amount=line.price,
            quantity=line.quantity,
            currency=currency,
            image_url=products[line.product_id].image_url,
        )
        for line in lines
    ]

    now = utcnow()
    session = CheckoutSession(
        user_id=actor.user_id,
        cart_data=snapshot(lines, total),
        session_metadata=metadata,
        currency=currency,
        status=CheckoutStatus.PENDING.value,
        created_at=now,
        expires_at=now + timedelta(minutes=config.CHECKOUT_SESSION_TTL_MINUTES),
    )
    try:
        with transaction(db):
            db.add(session)
    except SQLAlchemyError as e:
        logger.exception("Failed to persist checkout session for user=%s", actor.user_id)
        raise TransactionFailed("Failed to create checkout session") from e

    db.refresh(session)
    return session, line_items


def _record_external_id(db: Session, session: CheckoutSession, external_id: str) -> None:
    with transaction(db):
        session.external_session_id = external_id
    db.refresh(session)


async def create_checkout_session(
    db: Session,
    gateway: PaymentGateway,
    actor: Actor,
    lines: list[CartLine],
    total: int,
    currency: str,
    success_url: str,
    cancel_url: str,
    metadata: dict | None = None,
) -> tuple[CheckoutSession, str]:
    """
    Persist a pending session, then open a hosted payment page for it.

    Returns the session and the provider redirect URL. When the provider call
    fails the pending row stays behind and goes stale at its expiry. Database
    work runs in the thread pool; only the provider call is awaited here.
    """
    session, line_items = await run_in_threadpool(
        _open_session, db, actor, lines, total, currency.lower(), metadata
    )

    session_id = session.id
    try:
        hosted = await gateway.create_hosted_session(
            line_items,
            success_url=with_session_id(success_url, session_id),
            cancel_url=with_session_id(cancel_url, session_id),
            client_reference_id=session_id,
            metadata={"checkout_session_id": session_id},
        )
    except PaymentError as e:
        logger.warning("Payment provider rejected checkout session %s: %s %s", session_id, e.code, e.message)
        raise

    await run_in_threadpool(_record_external_id, db, session, hosted.id)

    logger.info("Checkout session %s created external=%s", session_id, hosted.id)
    return session, hosted.url


def get_checkout_session(
    db: Session,
    session_id: str,
    actor: Actor | None = None,
    lock: bool = False,
) -> CheckoutSession:
    """Return the session if it is still pending and unexpired."""
    stmt = select(CheckoutSession).where(
        CheckoutSession.id == session_id,
        CheckoutSession.status == CheckoutStatus.PENDING.value,
        CheckoutSession.expires_at > utcnow(),
    )
    if lock:
        stmt = stmt.with_for_update()
    session = db.scalars(stmt.execution_options(populate_existing=True)).first()
    if session is None:
        raise CheckoutSessionNotFound(session_id)
    if actor is not None:
        enforce(actor, Action.CHECKOUT, session.user_id, CheckoutSessionNotFound(session_id))
    return session


def complete_checkout_session(db: Session, session_id: str, actor: Actor | None = None) -> CheckoutSession:
    with transaction(db):
        session = get_checkout_session(db, session_id, actor, lock=True)
        session.status = CheckoutStatus.COMPLETED.value
    logger.info("Checkout session %s completed", session_id)
    return session


def confirm_checkout(
    db: Session,
    session_id: str,
    actor: Actor,
    delivery_address: str | None = None,
) -> Order:
    """
    Complete the session and place its order from the snapshot, atomically.

    Items and prices come from the snapshot, not the live catalog. If the
    order cannot be placed the session stays pending.
    """
    validate_address(delivery_address)

    try:
        with transaction(db):
            session = get_checkout_session(db, session_id, actor, lock=True)
            lines = snapshot_lines(session.cart_data)
            order = place_order_in_transaction(
                db,
                session.user_id,
                [OrderLine(line.product_id, line.quantity) for line in lines],
                delivery_address,
                unit_prices={line.product_id: line.price for line in lines},
            )
            session.status = CheckoutStatus.COMPLETED.value
            session.order_id = order.id
    except SQLAlchemyError as e:
        logger.exception("Checkout confirmation failed for session=%s", session_id)
        raise TransactionFailed("Failed to confirm checkout") from e

    order_id = order.id
    logger.info("Checkout session %s confirmed as order %s", session_id, order_id)
    publish("checkout.completed", {"checkout_session_id": session_id, "order_id": order_id})
    return load_order(db, order_id)


def _external_id_for(db: Session, session_id: str, actor: Actor) -> str | None:
    session = get_checkout_session(db, session_id, actor)
    external_id = session.external_session_id
    # release the read transaction before the network round trip
    db.rollback()
    return external_id


async def ensure_paid(db: Session, gateway: PaymentGateway, session_id: str, actor: Actor) -> None:
    """Ask the provider whether the hosted session behind ``session_id`` was paid."""
    external_id = await run_in_threadpool(_external_id_for, db, session_id, actor)

    if external_id is None:
        raise PaymentNotCompleted("Checkout session has no payment attached")

    hosted = await gateway.retrieve_hosted_session(external_id)
    if hosted.payment_status not in PAID_STATUSES:
        raise PaymentNotCompleted(
            f"Payment for checkout session {session_id} is not completed",
            payment_status=hosted.payment_status,
        )
