from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.cart_service.cart_manager import CartReservationManager
from services.cart_service.models import Customer
from services.checkout_service.orchestrator import CheckoutOrchestrator
from services.checkout_service.rate_limiter import RateLimiter
from services.checkout_service.webhook_processor import WebhookProcessor
from services.inventory_service.models import Product
from services.inventory_service.repository import InventoryLedger
from services.order_service.materializer import OrderMaterializer
from shared.config import Settings
from shared.database import Base, init_db

WEBHOOK_SECRET = "sk_test_webhook_secret"


class FakeGateway:
    """Records initialize/verify calls and answers like Paystack."""

    def __init__(self, fail: bool = False, status: bool = True):
        self.fail = fail
        self.status = status
        self.initialized: List[Dict[str, Any]] = []
        self.verify_status = "success"

    def initialize(self, reference, email, amount, currency, callback_url, metadata):
        if self.fail:
            raise ConnectionError("gateway unreachable")
        self.initialized.append(
            {
                "reference": reference,
                "email": email,
                "amount": amount,
                "currency": currency,
                "callback_url": callback_url,
                "metadata": metadata,
            }
        )
        return {
            "status": self.status,
            "data": {
                "authorization_url": f"https://checkout.paystack.test/{reference}",
                "reference": reference,
            },
        }

    def verify(self, reference):
        return {"status": True, "data": {"status": self.verify_status}}


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, str]] = []

    def send(self, to_email, subject, body):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append({"to": to_email, "subject": subject, "body": body})
        return True


class FakeRedis:
    """Just enough of redis.Redis for the fixed-window limiter."""

    def __init__(self):
        self.values: Dict[str, int] = {}
        self.ttls: Dict[str, int] = {}

    def incr(self, key):
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def delete(self, key):
        self.values.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """A session for arranging and asserting, separate from the code under test."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        paystack_secret_key=WEBHOOK_SECRET,
        access_token_secret="test-access-secret",
        materializer_retry_delay_seconds=0,
        webhook_retry_base_delay_seconds=0,
        hold_ttl_seconds=900,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def make_product(session_factory):
    def _make(name="Ankara Wrap Dress", price=100.0, count_in_stock=5, image="dress.png") -> str:
        session = session_factory()
        try:
            product = InventoryLedger(session).create_product(name, price, count_in_stock, image=image)
            session.commit()
            return product.id
        finally:
            session.close()

    return _make


@pytest.fixture
def make_customer(session_factory):
    def _make(street: Optional[str] = "12 Marina Road", email="ada@example.com", name="Ada") -> str:
        session = session_factory()
        try:
            customer = Customer(
                name=name,
                email=email,
                street=street,
                city="Lagos",
                postal_code="100001",
                country="NG",
                phone="+2348000000000",
            )
            session.add(customer)
            session.commit()
            return customer.id
        finally:
            session.close()

    return _make


@pytest.fixture
def stock(session_factory):
    """Fresh (count_in_stock, reserved_quantity) for a product."""

    def _stock(product_id: str):
        session = session_factory()
        try:
            product = session.get(Product, product_id)
            return product.count_in_stock, product.reserved_quantity
        finally:
            session.close()

    return _stock


@pytest.fixture
def cart_manager(session_factory):
    return CartReservationManager(session_factory)


@pytest.fixture
def orchestrator(gateway, session_factory, settings):
    orchestrator = CheckoutOrchestrator(gateway, session_factory=session_factory, settings=settings)
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def materializer(session_factory):
    return OrderMaterializer(session_factory, max_retries=3, retry_delay=0, sleep=lambda _: None)


@pytest.fixture
def webhook_processor(materializer, notifier, session_factory):
    return WebhookProcessor(
        materializer,
        notifier,
        secret=WEBHOOK_SECRET,
        session_factory=session_factory,
        retry_base_delay=0,
        sleep=lambda _: None,
        run_in_background=lambda fn: fn(),
    )


@pytest.fixture
def rate_limiter():
    return RateLimiter(FakeRedis(), limit=3, window_seconds=900, prefix="verify")


@pytest.fixture
def client(session_factory, settings, gateway, notifier, rate_limiter):
    from services import dependencies
    from services.main import app

    app.dependency_overrides[dependencies.provide_session_factory] = lambda: session_factory
    app.dependency_overrides[dependencies.provide_settings] = lambda: settings
    app.dependency_overrides[dependencies.provide_gateway] = lambda: gateway
    app.dependency_overrides[dependencies.provide_notifier] = lambda: notifier
    app.dependency_overrides[dependencies.provide_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[dependencies.provide_background_runner] = lambda: (lambda fn: fn())

    # No `with`: lifespan (real database, seeding, sweeper thread) is not started
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_header(settings, monkeypatch):
    """Bearer header factory for a user id, signed with the test access secret."""
    from shared import auth

    monkeypatch.setattr(auth, "get_settings", lambda: settings)

    def _header(user_id: str, is_admin: bool = False) -> Dict[str, str]:
        token = jwt.encode({"id": user_id, "isAdmin": is_admin}, settings.access_token_secret, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _header
