import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Depends, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import catalog, checkout, orders, stock
from .config import CORS_ORIGINS, LOG_LEVEL, PAYMENT_TIMEOUT
from .db import get_db, init_schema, transaction
from .errors import ShopError
from .models import CheckoutSession, Order, Product
from .payments import PaymentGateway, default_gateway
from .policy import Actor
from .schemas import (
    CartItemOut,
    CategoriesOut,
    CheckoutConfirmIn,
    CheckoutCreateIn,
    CheckoutCreateOut,
    CheckoutSessionOut,
    OrderCreateIn,
    OrderItemOut,
    OrderOut,
    OrderStatsOut,
    OrderStatusIn,
    OrderUpdateIn,
    ProductCreate,
    ProductOut,
    ProductStatsOut,
    ProductUpdate,
    StockAdjustIn,
)
from .shared.security import current_actor, require_admin

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("shopfront")

# Reuse the payment client across invocations
_gateway: PaymentGateway | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _gateway
    init_schema()
    _gateway = default_gateway(httpx.AsyncClient(timeout=PAYMENT_TIMEOUT))
    yield
    if _gateway:
        await _gateway.aclose()
        _gateway = None


app = FastAPI(title="shopfront", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, **exc.extra},
    )


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        # fallback in case lifespan didn't run (tests)
        _gateway = default_gateway()
    return _gateway


def product_out(p: Product) -> ProductOut:
    return ProductOut.model_validate(p)


def order_out(o: Order) -> OrderOut:
    items = [
        OrderItemOut(
            id=i.id,
            product_id=i.product_id,
            product_name=i.product.name if i.product else "Unavailable product",
            quantity=i.quantity,
            price_at_purchase=i.price_at_purchase,
        )
        for i in o.items
    ]
    return OrderOut(
        id=o.id,
        user_id=o.user_id,
        status=o.status,
        total_amount=o.total_amount,
        delivery_address=o.delivery_address,
        cancelled=o.is_cancelled,
        cancelled_at=o.cancelled_at,
        created_at=o.created_at,
        updated_at=o.updated_at,
        items=items,
    )


def checkout_out(s: CheckoutSession) -> CheckoutSessionOut:
    return CheckoutSessionOut(
        id=s.id,
        user_id=s.user_id,
        status=s.status,
        currency=s.currency,
        items=[
            CartItemOut(product_id=line.product_id, quantity=line.quantity, price=line.price)
            for line in checkout.snapshot_lines(s.cart_data)
        ],
        total=s.cart_data["total"],
        metadata=s.session_metadata,
        external_session_id=s.external_session_id,
        order_id=s.order_id,
        created_at=s.created_at,
        expires_at=s.expires_at,
    )


# --- catalog ---


@app.get("/products", response_model=list[ProductOut])
def list_published(db: Session = Depends(get_db)):
    return [product_out(p) for p in catalog.list_products(db)]


@app.get("/products/categories", response_model=CategoriesOut)
def list_categories(db: Session = Depends(get_db)):
    return CategoriesOut(categories=catalog.list_categories(db))


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: int, db: Session = Depends(get_db)):
    return product_out(catalog.get_product(db, product_id))


@app.get("/admin/products", response_model=list[ProductOut])
def admin_list(actor: Actor = Depends(require_admin), db: Session = Depends(get_db)):
    return [product_out(p) for p in catalog.list_products(db, include_unpublished=True)]


@app.get("/admin/products/stats", response_model=ProductStatsOut)
def admin_product_stats(actor: Actor = Depends(require_admin), db: Session = Depends(get_db)):
    return catalog.product_stats(db)


@app.post("/admin/products", response_model=ProductOut, status_code=201)
def admin_create(payload: ProductCreate, actor: Actor = Depends(require_admin), db: Session = Depends(get_db)):
    p = Product(**payload.model_dump())
    with transaction(db):
        db.add(p)
    db.refresh(p)
    logger.info("Product %s created by %s", p.id, actor.user_id)
    return product_out(p)


@app.patch("/admin/products/{product_id}", response_model=ProductOut)
def admin_update(
    product_id: int,
    payload: ProductUpdate,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    return product_out(catalog.update_product(db, product_id, changes))


@app.delete("/admin/products/{product_id}", status_code=204)
def admin_delete(product_id: int, actor: Actor = Depends(require_admin), db: Session = Depends(get_db)):
    catalog.remove_product(db, product_id)
    return Response(status_code=204)


@app.patch("/admin/products/{product_id}/stock", response_model=ProductOut)
def admin_adjust_stock(
    product_id: int,
    payload: StockAdjustIn,
    actor: Actor = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return product_out(stock.adjust_stock(db, product_id, payload.delta))


# --- orders ---


@app.post("/orders", response_model=OrderOut, status_code=201)
def create_order(payload: OrderCreateIn, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    lines = [orders.OrderLine(it.product_id, it.quantity) for it in payload.items]
    order = orders.place_order(db, actor.user_id, lines, payload.delivery_address)
    return order_out(order)


@app.get("/orders", response_model=list[OrderOut])
def list_orders(
    status: str | None = None,
    user_id: str | None = None,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return [order_out(o) for o in orders.list_orders(db, actor, status=status, user_id=user_id)]


@app.get("/orders/stats", response_model=OrderStatsOut)
def order_stats(actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return orders.order_stats(db, actor)


@app.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return order_out(orders.get_order(db, order_id, actor))


@app.patch("/orders/{order_id}", response_model=OrderOut)
def update_order(
    order_id: str,
    payload: OrderUpdateIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return order_out(orders.update_order(db, order_id, actor, payload.model_dump(exclude_unset=True)))


@app.patch("/orders/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: str,
    payload: OrderStatusIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
):
    return order_out(orders.transition_status(db, order_id, actor, payload.status))


@app.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: str, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return order_out(orders.cancel_order(db, order_id, actor))


# --- checkout ---


@app.post("/checkout/sessions", response_model=CheckoutCreateOut, status_code=201)
async def create_checkout_session(
    payload: CheckoutCreateIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    lines = [checkout.CartLine(it.product_id, it.quantity, it.price) for it in payload.items]
    session, payment_url = await checkout.create_checkout_session(
        db,
        gateway,
        actor,
        lines,
        total=payload.total,
        currency=payload.currency,
        success_url=str(payload.success_url),
        cancel_url=str(payload.cancel_url),
        metadata=payload.metadata,
    )
    return CheckoutCreateOut(session_id=session.id, payment_url=payment_url, expires_at=session.expires_at)


@app.get("/checkout/sessions/{session_id}", response_model=CheckoutSessionOut)
def get_checkout_session(session_id: str, actor: Actor = Depends(current_actor), db: Session = Depends(get_db)):
    return checkout_out(checkout.get_checkout_session(db, session_id, actor))


@app.post("/checkout/sessions/{session_id}/complete", response_model=OrderOut, status_code=201)
async def complete_checkout_session(
    session_id: str,
    payload: CheckoutConfirmIn,
    actor: Actor = Depends(current_actor),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    await checkout.ensure_paid(db, gateway, session_id, actor)
    order = await run_in_threadpool(checkout.confirm_checkout, db, session_id, actor, payload.delivery_address)
    return order_out(order)


@app.get("/health")
def health():
    return {"ok": True}
