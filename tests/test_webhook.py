"""Webhook processing: signature, idempotency, after-commit side effects."""

import json

import pytest

from services.cart_service.models import CartEntry, Reservation
from services.cart_service.cart_repository import ReservationStore
from services.checkout_service.payment_gateway import sign_payload, to_kobo
from services.checkout_service.schemas import CheckoutItem
from services.checkout_service.webhook_processor import WebhookOutcome
from services.order_service.models import FailedMaterialization, Order, OutboxEvent
from shared.errors import ConflictError, MaterializationFailed, Unauthorized, ValidationError
from tests.conftest import WEBHOOK_SECRET


def charge_success(call, metadata=None):
    """Paystack charge.success body for a recorded initialize call."""
    body = {
        "event": "charge.success",
        "data": {
            "reference": call["reference"],
            "amount": call["amount"],
            "status": "success",
            "customer": {"email": call["email"]},
            "metadata": call["metadata"] if metadata is None else metadata,
        },
    }
    return json.dumps(body).encode("utf-8")


def signed(raw):
    return raw, sign_payload(raw, WEBHOOK_SECRET)


@pytest.fixture
def checked_out(cart_manager, orchestrator, gateway, make_customer, make_product):
    """Customer A buys 2 of a product with 5 in stock; returns (user_id, product_id, call)."""
    user_id = make_customer(name="Ada")
    product_id = make_product(name="Adire Shirt", price=75.5, count_in_stock=5)
    line = cart_manager.add_to_cart(user_id, product_id, 2, selected_size="L")
    orchestrator.checkout(
        user_id, [CheckoutItem(product_id=product_id, quantity=2, selected_size="L", reservation_id=line.id)]
    )
    return user_id, product_id, gateway.initialized[0]


def test_charge_success_creates_the_order(webhook_processor, checked_out, notifier, stock, db):
    user_id, product_id, call = checked_out

    result = webhook_processor.handle(*signed(charge_success(call)))

    assert result.outcome == WebhookOutcome.PROCESSED
    assert result.reference == call["reference"]
    assert stock(product_id) == (3, 0)

    order = db.get(Order, result.order_id)
    assert order.user_id == user_id
    assert order.total_price == pytest.approx(151.0)
    assert order.items[0].selected_size == "L"

    # Processed lines are purged from the cart after commit
    assert db.query(Reservation).filter(Reservation.user_id == user_id).count() == 0
    assert db.query(CartEntry).filter(CartEntry.user_id == user_id).count() == 0

    assert len(notifier.sent) == 1
    assert notifier.sent[0]["to"] == "ada@example.com"
    assert result.order_id in notifier.sent[0]["subject"] + notifier.sent[0]["body"]


def test_redelivery_is_a_no_op(webhook_processor, checked_out, notifier, stock, db):
    _, product_id, call = checked_out
    raw, signature = signed(charge_success(call))

    first = webhook_processor.handle(raw, signature)
    second = webhook_processor.handle(raw, signature)

    assert first.outcome == WebhookOutcome.PROCESSED
    assert second.outcome == WebhookOutcome.DUPLICATE
    assert db.query(Order).count() == 1
    assert stock(product_id) == (3, 0)
    assert len(notifier.sent) == 1


def test_bad_signature_is_rejected_before_anything_happens(webhook_processor, checked_out, stock, db):
    _, product_id, call = checked_out
    raw = charge_success(call)

    with pytest.raises(Unauthorized):
        webhook_processor.handle(raw, sign_payload(raw, "wrong-secret"))
    with pytest.raises(Unauthorized):
        webhook_processor.handle(raw, None)
    with pytest.raises(Unauthorized):
        webhook_processor.handle(raw + b" ", sign_payload(raw, WEBHOOK_SECRET))

    assert db.query(Order).count() == 0
    assert stock(product_id) == (3, 2)


def test_other_events_are_ignored(webhook_processor, db):
    raw = json.dumps({"event": "transfer.success", "data": {"reference": "T-1"}}).encode()

    result = webhook_processor.handle(*signed(raw))

    assert result.outcome == WebhookOutcome.IGNORED
    assert db.query(Order).count() == 0


def test_metadata_sent_as_a_json_string_is_accepted(webhook_processor, checked_out, db):
    _, _, call = checked_out

    result = webhook_processor.handle(*signed(charge_success(call, metadata=json.dumps(call["metadata"]))))

    assert result.outcome == WebhookOutcome.PROCESSED


def test_malformed_payloads_are_validation_errors(webhook_processor, checked_out):
    _, _, call = checked_out

    with pytest.raises(ValidationError):
        webhook_processor.handle(*signed(b"not json"))
    with pytest.raises(ValidationError):
        webhook_processor.handle(*signed(charge_success(call, metadata="{broken")))
    with pytest.raises(ValidationError):
        webhook_processor.handle(*signed(charge_success(call, metadata={"user_id": "u", "cart_items": []})))


def test_notification_failure_does_not_fail_the_webhook(webhook_processor, checked_out, notifier, db):
    _, _, call = checked_out
    notifier.fail = True

    result = webhook_processor.handle(*signed(charge_success(call)))

    assert result.outcome == WebhookOutcome.PROCESSED
    assert db.query(Order).count() == 1
    assert notifier.sent == []


def test_cart_purge_failure_does_not_fail_the_webhook(webhook_processor, checked_out, monkeypatch, db):
    _, _, call = checked_out

    def broken(self, user_id, reservation_ids):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(ReservationStore, "purge_processed", broken)

    result = webhook_processor.handle(*signed(charge_success(call)))

    assert result.outcome == WebhookOutcome.PROCESSED
    assert db.query(Order).count() == 1


def test_terminal_failure_is_reported_not_retried(webhook_processor, checked_out, session_factory, db):
    """Stock vanished between checkout and payment: nothing to retry."""
    from services.inventory_service.models import Product

    _, product_id, call = checked_out
    session = session_factory()
    try:
        product = session.get(Product, product_id)
        product.count_in_stock = 0
        product.reserved_quantity = 0
        session.commit()
    finally:
        session.close()

    # Drop the hold so the units must come straight from stock
    with pytest.raises(MaterializationFailed):
        webhook_processor.handle(
            *signed(
                charge_success(
                    call,
                    metadata={
                        **call["metadata"],
                        "cart_items": [{**item, "reservation_id": None} for item in call["metadata"]["cart_items"]],
                    },
                )
            )
        )

    failure = db.query(FailedMaterialization).filter_by(payment_id=call["reference"]).one()
    assert failure.attempts == 1
    assert failure.error_type == "InsufficientStock"


def test_persistent_conflicts_are_retried_then_surface(webhook_processor, checked_out, monkeypatch, stock, db):
    _, product_id, call = checked_out
    sleeps = []
    webhook_processor.sleep = sleeps.append
    webhook_processor.retry_base_delay = 1.0

    def conflict(self, reservation):
        raise ConflictError("changed concurrently")

    monkeypatch.setattr(ReservationStore, "mark_processed", conflict)

    with pytest.raises(MaterializationFailed) as excinfo:
        webhook_processor.handle(*signed(charge_success(call)))

    assert excinfo.value.status_code == 500
    assert not excinfo.value.transient
    assert sleeps == [1.0, 2.0, 4.0]
    assert db.query(Order).count() == 0
    assert stock(product_id) == (3, 2)

    # One failure record and one event for the whole delivery, not one per retry
    failure = db.query(FailedMaterialization).filter_by(payment_id=call["reference"]).one()
    assert failure.attempts == 16
    assert failure.error_type == "ConflictError"
    failed_events = db.query(OutboxEvent).filter(OutboxEvent.event_type == "order.materialization_failed").all()
    assert len(failed_events) == 1
    assert json.loads(failed_events[0].event_data)["attempts"] == 16


def test_amount_mismatch_is_logged_but_processed(webhook_processor, checked_out, caplog):
    _, _, call = checked_out
    assert call["amount"] == to_kobo(151.0)

    with caplog.at_level("WARNING"):
        result = webhook_processor.handle(*signed(charge_success({**call, "amount": 100})))

    assert result.outcome == WebhookOutcome.PROCESSED
    assert "does not match" in caplog.text
