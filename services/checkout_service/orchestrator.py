"""
orchestrator.py - Checkout Orchestrator

Turns the customer's cart snapshot into a stock hold and a Paystack payment intent.

STATE MACHINE (per attempt):
    INITIATED -> HOLDING_STOCK -> AWAITING_PAYMENT -> CONFIRMED | EXPIRED | FAILED

    INITIATED         request validated (non-empty cart, known customer, shipping street)
    HOLDING_STOCK     every line tops its hold up to its quantity through the ledger and
                      is marked reserved with expiry = now + hold TTL
    AWAITING_PAYMENT  the gateway returned an authorization URL; holds are committed
    CONFIRMED         the webhook materialized the order (webhook_processor.py)
    EXPIRED           the sweeper released the hold (expiry_sweeper.py)
    FAILED            stock, gateway or timeout failure; nothing of the attempt remains

Everything from the first reserve to the gateway response runs in one transaction, so
a failure anywhere (third line out of stock, gateway rejection, timeout) rolls back all
holds taken by the attempt. The gateway call is bounded by the hold TTL.
"""

import enum
import logging
import secrets
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from services.cart_service.cart_repository import ReservationStore
from services.cart_service.models import Customer, Reservation
from services.checkout_service.payment_gateway import PaymentGateway, to_kobo
from services.checkout_service.schemas import CheckoutItem
from services.inventory_service.repository import InventoryLedger
from services.order_service.repository import OrderRepository
from shared.config import Settings, get_settings
from shared.database import transaction
from shared.datetime_utils import utc_now
from shared.errors import NotFoundError, PaymentError, ServiceError, ValidationError
from shared.events import CheckoutInitiatedEvent

logger = logging.getLogger(__name__)


class CheckoutState(str, enum.Enum):
    INITIATED = "INITIATED"
    HOLDING_STOCK = "HOLDING_STOCK"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


@dataclass
class CheckoutResult:
    authorization_url: str
    reference: str
    total_amount: float
    hold_expires_at: datetime
    state: CheckoutState = CheckoutState.AWAITING_PAYMENT


def generate_reference() -> str:
    """ORDER-<epoch ms>-<random>, unique per checkout attempt."""
    return f"ORDER-{int(time.time() * 1000)}-{secrets.randbelow(1_000_000)}"


class CheckoutOrchestrator:
    """Places checkout holds and requests a payment intent."""

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory: Optional[sessionmaker] = None,
        settings: Optional[Settings] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.executor = executor or ThreadPoolExecutor(max_workers=8, thread_name_prefix="gateway")

    def checkout(self, user_id: str, cart_items: List[CheckoutItem]) -> CheckoutResult:
        state = CheckoutState.INITIATED
        if not cart_items:
            raise ValidationError("Invalid request: cartItems must be a non-empty array")

        hold_ttl = self.settings.hold_ttl_seconds
        try:
            with transaction(self.session_factory, label=f"checkout for user {user_id}") as db:
                customer = db.query(Customer).filter(Customer.id == user_id).first()
                if not customer:
                    raise NotFoundError("User not found")
                if not customer.has_shipping_address:
                    raise ValidationError("Shipping address required")

                state = CheckoutState.HOLDING_STOCK
                reference = generate_reference()
                expiry = utc_now() + timedelta(seconds=hold_ttl)
                ledger = InventoryLedger(db)
                store = ReservationStore(db)

                lines = self._resolve_lines(store, user_id, cart_items)
                metadata_items: List[Dict[str, Any]] = []
                total_amount = 0.0

                # Product rows are locked before reservation rows
                for item, line in sorted(zip(cart_items, lines), key=lambda pair: pair[0].product_id):
                    missing = item.quantity - line.held_quantity
                    if missing > 0:
                        ledger.reserve(item.product_id, missing)
                    elif missing < 0:
                        ledger.release(item.product_id, -missing)
                    store.place_hold(line, item.quantity, item.quantity, expiry)

                for item, line in zip(cart_items, lines):
                    product = ledger.require_product(item.product_id)
                    total_amount += product.price * item.quantity
                    metadata_items.append(
                        {
                            "reservation_id": line.id,
                            "product_id": item.product_id,
                            "quantity": item.quantity,
                            "selected_size": item.selected_size,
                            "selected_color": item.selected_color,
                            "price_snapshot": product.price,
                            "name_snapshot": product.name,
                            "image_snapshot": product.image,
                        }
                    )
                logger.info(
                    f"Holding {len(lines)} lines for user {user_id} until {expiry.isoformat()}",
                    extra={"reference": reference, "correlation_id": reference},
                )

                response = self._initialize_payment(
                    reference=reference,
                    email=customer.email,
                    amount=to_kobo(total_amount),
                    currency=self.settings.paystack_currency,
                    callback_url=f"{self.settings.client_success_url.rstrip('/')}/success",
                    metadata={
                        "user_id": user_id,
                        "total_amount": total_amount,
                        "cart_items": metadata_items,
                    },
                    timeout=hold_ttl,
                )
                data = response.get("data") or {}

                OrderRepository(db).add_outbox_event(
                    reference,
                    CheckoutInitiatedEvent(
                        correlation_id=reference,
                        user_id=user_id,
                        reference=reference,
                        total_amount=total_amount,
                        items=metadata_items,
                        hold_expires_at=expiry,
                    ),
                )
                state = CheckoutState.AWAITING_PAYMENT
        except ServiceError as e:
            logger.warning(f"Checkout for user {user_id} failed in state {state.value}: {e.message}")
            raise

        logger.info(
            f"Checkout awaiting payment for user {user_id}",
            extra={"reference": reference, "event_type": "checkout.initiated"},
        )
        return CheckoutResult(
            authorization_url=data["authorization_url"],
            reference=data.get("reference") or reference,
            total_amount=total_amount,
            hold_expires_at=expiry,
            state=state,
        )

    def verify(self, reference: Optional[str]) -> Dict[str, str]:
        if not reference:
            raise ValidationError("No reference provided")
        try:
            verification = self.gateway.verify(reference)
        except Exception as e:
            logger.error(f"Verification of {reference} failed: {e}")
            raise ValidationError("Transaction verification failed")

        if not verification or not verification.get("status"):
            raise ValidationError("Transaction verification failed")
        return {
            "status": (verification.get("data") or {}).get("status", "unknown"),
            "message": "Transaction verified successfully",
        }

    def _resolve_lines(self, store: ReservationStore, user_id: str, cart_items: List[CheckoutItem]) -> List[Reservation]:
        """Map each requested item onto a cart line, creating one for items not in the cart."""
        lines: List[Reservation] = []
        seen = set()
        for item in cart_items:
            if item.reservation_id:
                line = store.get_for_user(user_id, item.reservation_id)
                if line.product_id != item.product_id:
                    raise ValidationError(f"Cart line {line.id} is not for product {item.product_id}")
            else:
                # A retried checkout finds its own held line again; prefer lines in the state the client saw
                candidates = [
                    candidate
                    for candidate in store.find_open_lines(
                        user_id, item.product_id, item.selected_size, item.selected_color
                    )
                    if candidate.id not in seen
                ]
                candidates.sort(key=lambda candidate: candidate.reserved != item.reserved)
                line = candidates[0] if candidates else None
                if line is None:
                    line = store.create(
                        user_id,
                        item.product_id,
                        item.quantity,
                        item.selected_size,
                        item.selected_color,
                        held_quantity=0,
                    )

            if line.processed:
                raise ValidationError(f"Cart line {line.id} has already been ordered")
            if line.id in seen:
                raise ValidationError(f"Cart line {line.id} appears more than once")
            seen.add(line.id)
            lines.append(line)
        return lines

    def _initialize_payment(self, timeout: float, **kwargs) -> Dict[str, Any]:
        future = self.executor.submit(self.gateway.initialize, **kwargs)
        try:
            response = future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            logger.error(f"Payment gateway timed out after {timeout}s", extra={"reference": kwargs.get("reference")})
            raise PaymentError("Transaction timeout")
        except Exception as e:
            logger.error(f"Payment gateway error: {e}", extra={"reference": kwargs.get("reference")})
            raise PaymentError("Payment initialization failed")

        if not response or not response.get("status") or not (response.get("data") or {}).get("authorization_url"):
            raise PaymentError("Payment initialization failed")
        return response

    def shutdown(self) -> None:
        self.executor.shutdown(wait=False)
