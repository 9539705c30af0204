"""
webhook_processor.py - Paystack Webhook Processor

Applies charge.success events to the order store:

    1. verify x-paystack-signature (HMAC-SHA512 of the raw body, constant-time compare);
       a bad signature is rejected and never retried
    2. ignore every other event type
    3. parse reference + metadata into a MaterializationRequest
    4. materialize (the duplicate check on payment_id happens inside that transaction)
    5. after commit: purge the processed cart lines, send the confirmation email in the
       background; neither step can change the outcome

Transient failures (write conflicts, unexpected errors) are retried with exponential
backoff before the gateway is told the delivery failed; Paystack then redelivers.
"""

import enum
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from services.cart_service.cart_repository import ReservationStore
from services.cart_service.models import Customer
from services.checkout_service.payment_gateway import to_kobo, verify_signature
from services.notification_service.email_sender import Notifier, build_order_confirmation_email
from services.order_service.materializer import (
    MaterializationRequest,
    MaterializationResult,
    OrderMaterializer,
)
from services.order_service.repository import OrderRepository
from shared.database import transaction
from shared.errors import MaterializationFailed, Unauthorized, ValidationError

logger = logging.getLogger(__name__)

CHARGE_SUCCESS = "charge.success"


class WebhookOutcome(str, enum.Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass
class WebhookResult:
    outcome: WebhookOutcome
    reference: Optional[str] = None
    order_id: Optional[str] = None
    attempts: int = 0


def start_background_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="order-notification", daemon=True).start()


class WebhookProcessor:
    """Verifies, de-duplicates and applies gateway confirmation events."""

    def __init__(
        self,
        materializer: OrderMaterializer,
        notifier: Notifier,
        secret: str,
        session_factory: Optional[sessionmaker] = None,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        currency: str = "NGN",
        sleep: Callable[[float], None] = time.sleep,
        run_in_background: Callable[[Callable[[], None]], None] = start_background_thread,
    ):
        self.materializer = materializer
        self.notifier = notifier
        self.secret = secret
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.currency = currency
        self.sleep = sleep
        self.run_in_background = run_in_background

    def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        if not verify_signature(raw_body, signature, self.secret):
            logger.warning("Rejected webhook with invalid signature")
            raise Unauthorized("Invalid signature")

        payload = self._parse(raw_body)
        event = payload.get("event")
        if event != CHARGE_SUCCESS:
            logger.info(f"Ignoring webhook event {event}")
            return WebhookResult(outcome=WebhookOutcome.IGNORED)

        data = payload.get("data") or {}
        request = self._build_request(data)
        reference = request.payment_id

        attempt = 0
        total_attempts = 0
        while True:
            attempt += 1
            result = self.materializer.materialize(request, record_failure=False)
            total_attempts += result.attempts
            if result.duplicate:
                logger.info(
                    f"Duplicate webhook detected for {reference}",
                    extra={"reference": reference, "event_type": CHARGE_SUCCESS},
                )
                return WebhookResult(outcome=WebhookOutcome.DUPLICATE, reference=reference, attempts=attempt)
            if result.success:
                break
            if not result.transient or attempt > self.max_retries:
                result.attempts = total_attempts
                self.materializer.record_failure(request, result)
                logger.error(
                    f"Webhook processing for {reference} failed after {attempt} attempt(s): {result.error}",
                    extra={"reference": reference, "event_type": CHARGE_SUCCESS},
                )
                raise MaterializationFailed(result.error or "Order materialization failed")
            delay = self.retry_base_delay * 2 ** (attempt - 1)
            logger.warning(f"Retrying webhook for {reference} in {delay}s ({result.error_type}: {result.error})")
            self.sleep(delay)

        self._after_commit(request, result, data)
        return WebhookResult(
            outcome=WebhookOutcome.PROCESSED,
            reference=reference,
            order_id=result.order_id,
            attempts=attempt,
        )

    def _parse(self, raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            raise ValidationError("Malformed webhook payload")
        if not isinstance(payload, dict):
            raise ValidationError("Malformed webhook payload")
        return payload

    def _build_request(self, data: Dict[str, Any]) -> MaterializationRequest:
        reference = data.get("reference")
        metadata = data.get("metadata") or {}
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                raise ValidationError("Malformed webhook metadata")
        if not reference or not isinstance(metadata, dict):
            raise ValidationError("Webhook is missing reference or metadata")

        try:
            request = MaterializationRequest(
                user_id=metadata.get("user_id"),
                payment_id=reference,
                items=metadata.get("cart_items") or [],
                total_amount=metadata.get("total_amount"),
            )
        except PydanticValidationError as e:
            logger.warning(f"Malformed metadata on webhook {reference}: {e}")
            raise ValidationError("Malformed webhook metadata")

        amount = data.get("amount")
        if amount is not None and request.total_amount is not None and int(amount) != to_kobo(request.total_amount):
            logger.warning(
                f"Paid amount {amount} does not match checkout total {to_kobo(request.total_amount)} for {reference}",
                extra={"reference": reference},
            )
        return request

    def _after_commit(self, request: MaterializationRequest, result: MaterializationResult, data: Dict[str, Any]) -> None:
        try:
            with transaction(self.session_factory, label=f"purge cart for {request.payment_id}") as db:
                ReservationStore(db).purge_processed(request.user_id, result.processed_reservation_ids)
        except Exception as e:
            logger.error(f"Could not purge processed cart lines for {request.payment_id}: {e}")

        fallback_email = (data.get("customer") or {}).get("email")
        self.run_in_background(lambda: self.notify_order_confirmed(result.order_id, fallback_email))

    def notify_order_confirmed(self, order_id: str, fallback_email: Optional[str] = None) -> bool:
        """Send the confirmation email. Failures are logged, never raised."""
        try:
            with transaction(self.session_factory, label=f"load order {order_id} for notification") as db:
                order = OrderRepository(db).require_order(order_id)
                customer = db.query(Customer).filter(Customer.id == order.user_id).first()
                recipient = (customer.email if customer else None) or fallback_email
                name = customer.name if customer else "Customer"
                items = [
                    {"name": item.product_name, "quantity": item.quantity, "price": item.product_price}
                    for item in order.items
                ]
                subject, body = build_order_confirmation_email(name, order.id, items, order.total_price, self.currency)

            if not recipient:
                logger.warning(f"No email address for order {order_id}, skipping confirmation")
                return False
            sent = self.notifier.send(recipient, subject, body)
            if not sent:
                logger.error(f"Order confirmation email for {order_id} was not delivered")
            return sent
        except Exception as e:
            logger.error(f"Error sending order confirmation for {order_id}: {e}")
            return False
