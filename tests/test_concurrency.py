"""
Races between real threads on a database with real locking.

The in-memory engine in conftest shares one connection, so these tests replace the
`engine` fixture with a file-backed SQLite database (or TEST_DATABASE_URL when set,
e.g. a throwaway PostgreSQL) where every thread gets its own connection.
"""

import json
import os
import threading

import pytest
from sqlalchemy import create_engine

from services.cart_service.models import Reservation
from services.checkout_service.payment_gateway import sign_payload
from services.checkout_service.schemas import CheckoutItem
from services.checkout_service.webhook_processor import WebhookOutcome
from services.order_service.models import Order
from shared.database import Base, init_db
from shared.errors import ConflictError, InsufficientStock
from tests.conftest import WEBHOOK_SECRET


@pytest.fixture
def engine(tmp_path):
    url = os.environ.get("TEST_DATABASE_URL")
    if url:
        engine = create_engine(url, pool_pre_ping=True)
    else:
        engine = create_engine(
            f"sqlite:///{tmp_path / 'orders.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


def run_together(*calls):
    """Start every call on its own thread behind a barrier; returns (results, errors) in call order."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)
    errors = [None] * len(calls)

    def worker(index, call):
        barrier.wait()
        try:
            results[index] = call()
        except Exception as e:
            errors[index] = e

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert not any(thread.is_alive() for thread in threads)
    return results, errors


def test_two_checkouts_for_the_last_unit(orchestrator, make_customer, make_product, stock, db):
    first = make_customer(email="first@example.com")
    second = make_customer(email="second@example.com")
    product_id = make_product(count_in_stock=1)

    results, errors = run_together(
        lambda: orchestrator.checkout(first, [CheckoutItem(product_id=product_id, quantity=1)]),
        lambda: orchestrator.checkout(second, [CheckoutItem(product_id=product_id, quantity=1)]),
    )

    assert len([r for r in results if r is not None]) == 1
    losers = [e for e in errors if e is not None]
    assert len(losers) == 1
    # The loser either saw the unit gone or lost the lock race; both roll back
    assert isinstance(losers[0], (InsufficientStock, ConflictError))

    count_in_stock, reserved = stock(product_id)
    assert count_in_stock == 0
    assert reserved == 1
    assert db.query(Reservation).filter(Reservation.reserved.is_(True)).count() == 1


def test_two_deliveries_of_the_same_webhook(
    cart_manager, orchestrator, gateway, webhook_processor, make_customer, make_product, stock, db
):
    user_id = make_customer()
    product_id = make_product(count_in_stock=2)
    line = cart_manager.add_to_cart(user_id, product_id, 2)
    orchestrator.checkout(user_id, [CheckoutItem(product_id=product_id, quantity=2, reservation_id=line.id)])

    call = gateway.initialized[0]
    raw = json.dumps(
        {
            "event": "charge.success",
            "data": {"reference": call["reference"], "amount": call["amount"], "metadata": call["metadata"]},
        }
    ).encode()
    signature = sign_payload(raw, WEBHOOK_SECRET)

    results, errors = run_together(
        lambda: webhook_processor.handle(raw, signature),
        lambda: webhook_processor.handle(raw, signature),
    )

    assert errors == [None, None]
    assert sorted(r.outcome.value for r in results) == [WebhookOutcome.DUPLICATE.value, WebhookOutcome.PROCESSED.value]
    assert db.query(Order).filter(Order.payment_id == call["reference"]).count() == 1

    count_in_stock, reserved = stock(product_id)
    assert count_in_stock == 0
    assert reserved == 0
