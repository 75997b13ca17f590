"""Pytest fixtures for shopfront tests."""

import os
import tempfile
import time
from pathlib import Path

# Settings are read at import time, so the environment must be ready first.
_TMP_DIR = Path(tempfile.mkdtemp(prefix="shopfront-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'shopfront.db'}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["EVENT_BACKEND"] = "none"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
for _name in ("DB_SCHEMA", "JWT_ISSUER", "JWT_AUDIENCE"):
    os.environ.pop(_name, None)

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from shopfront.db import Base, SessionLocal, engine
from shopfront.main import app, get_payment_gateway
from shopfront.models import Product
from shopfront.payments import PaymentGateway
from shopfront.policy import Actor, Role

ALICE = Actor(user_id="alice", role=Role.CLIENT)
BOB = Actor(user_id="bob", role=Role.CLIENT)
ADMIN = Actor(user_id="root", role=Role.ADMIN)


def make_token(sub: str, role: str = "Client", ttl: int = 3600) -> str:
    now = int(time.time())
    return jwt.encode(
        {"sub": sub, "role": role, "iat": now, "exp": now + ttl},
        "test-secret",
        algorithm="HS256",
    )


def auth_headers(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {make_token(actor.user_id, actor.role.value)}"}


@pytest.fixture(autouse=True)
def schema():
    """Fresh tables for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_product():
    """Create a product in its own session and return it detached."""

    def _make(name="Widget", price=1000, stock=10, published=True, **fields) -> Product:
        session = SessionLocal()
        try:
            product = Product(name=name, price=price, stock=stock, published=published, **fields)
            session.add(product)
            session.commit()
            session.refresh(product)
            return product
        finally:
            session.close()

    return _make


def read_stock(product_id: int) -> int:
    session = SessionLocal()
    try:
        return session.get(Product, product_id).stock
    finally:
        session.close()


class StripeStub:
    """Stands in for the Stripe Checkout API behind httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.create_status = 200
        self.create_body: dict = {"id": "cs_test_1", "url": "https://checkout.stripe.test/c/cs_test_1"}
        self.payment_status = "paid"
        self.raise_exc: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_exc is not None:
            raise self.raise_exc
        if request.method == "POST" and request.url.path == "/v1/checkout/sessions":
            return httpx.Response(self.create_status, json=self.create_body)
        if request.method == "GET" and request.url.path.startswith("/v1/checkout/sessions/"):
            external_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(
                200, json={"id": external_id, "url": None, "payment_status": self.payment_status}
            )
        return httpx.Response(404, json={"error": {"type": "invalid_request_error", "message": "No such route"}})


@pytest.fixture
def stripe_stub():
    return StripeStub()


@pytest.fixture
def gateway(stripe_stub):
    client = httpx.AsyncClient(transport=httpx.MockTransport(stripe_stub.handler))
    return PaymentGateway("sk_test_123", "https://stripe.test", client=client)


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
