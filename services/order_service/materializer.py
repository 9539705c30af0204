"""
materializer.py - Order Materializer

Turns a confirmed payment into an Order. One attempt is one transaction:

    1. duplicate check on payment_id (an existing order means the event was already applied)
    2. per item, in product order: confirm the units the cart line holds, take any units
       it does not hold straight from stock, give back any surplus hold, then mark the
       line processed under its version guard
    3. create the Order and OrderItem snapshots, drop the lines from the cart, write the
       order.confirmed outbox event

A write conflict (version mismatch, stale data, lock or serialization failure) rolls the
attempt back and the whole materialization is retried, a bounded number of times with a
fixed delay. Exhaustion or a terminal error yields a failed MaterializationResult and a
FailedMaterialization row for operators; nothing is silently dropped.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from services.cart_service.cart_repository import ReservationStore
from services.cart_service.models import Customer
from services.inventory_service.repository import InventoryLedger
from services.order_service.repository import OrderRepository
from shared.database import transaction
from shared.errors import ConflictError, ServiceError, ValidationError
from shared.events import OrderConfirmedEvent, OrderMaterializationFailedEvent

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 1.0


class MaterializationItem(BaseModel):
    """One purchased line as carried in the payment metadata."""

    product_id: str
    quantity: int = Field(..., gt=0)
    reservation_id: Optional[str] = None
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None
    price_snapshot: Optional[float] = None
    name_snapshot: Optional[str] = None
    image_snapshot: Optional[str] = None


class MaterializationRequest(BaseModel):
    user_id: str
    payment_id: str
    items: List[MaterializationItem] = Field(..., min_length=1)
    total_amount: Optional[float] = None


@dataclass
class MaterializationResult:
    """Outcome of materializing one payment."""

    success: bool
    order_id: Optional[str] = None
    attempts: int = 0
    duplicate: bool = False
    error_type: Optional[str] = None
    error: Optional[str] = None
    transient: bool = False
    processed_reservation_ids: List[str] = field(default_factory=list)


class OrderMaterializer:
    """Creates orders from confirmed payments, retrying on write conflicts."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep

    def materialize(self, request: MaterializationRequest, record_failure: bool = True) -> MaterializationResult:
        """Run up to 1 + max_retries attempts and return a definitive result."""
        last_error: Optional[Exception] = None
        attempts = 0

        while attempts <= self.max_retries:
            attempts += 1
            try:
                order_id, processed_ids, duplicate = self._materialize_once(request)
            except ConflictError as e:
                last_error = e
                if attempts <= self.max_retries:
                    logger.warning(
                        f"Write conflict materializing payment {request.payment_id} "
                        f"(attempt {attempts}/{self.max_retries + 1}), retrying in {self.retry_delay}s"
                    )
                    self.sleep(self.retry_delay)
                continue
            except IntegrityError as e:
                if self._order_exists(request.payment_id):
                    logger.info(f"Payment {request.payment_id} was materialized concurrently")
                    return MaterializationResult(success=True, duplicate=True, attempts=attempts)
                return self._fail(request, e, attempts, record_failure)
            except ServiceError as e:
                return self._fail(request, e, attempts, record_failure)
            except Exception as e:
                logger.exception(f"Unexpected error materializing payment {request.payment_id}")
                return self._fail(request, e, attempts, record_failure)

            if duplicate:
                logger.info(f"Payment {request.payment_id} already has order {order_id}")
            else:
                logger.info(
                    f"Materialized order {order_id} for payment {request.payment_id} after {attempts} attempt(s)",
                    extra={"event_type": "order.confirmed", "reference": request.payment_id},
                )
            return MaterializationResult(
                success=True,
                order_id=order_id,
                attempts=attempts,
                duplicate=duplicate,
                processed_reservation_ids=processed_ids,
            )

        return self._fail(request, last_error, attempts, record_failure)

    def _materialize_once(self, request: MaterializationRequest) -> Tuple[str, List[str], bool]:
        with transaction(self.session_factory, label=f"materialize {request.payment_id}") as db:
            orders = OrderRepository(db)
            existing = orders.get_by_payment_id(request.payment_id)
            if existing:
                return existing.id, [], True

            ledger = InventoryLedger(db)
            store = ReservationStore(db)

            # Stock and reservation writes in product order, order row last
            processed_ids: List[str] = []
            for item in sorted(request.items, key=lambda i: (i.product_id, i.reservation_id or "")):
                reservation = store.get(item.reservation_id) if item.reservation_id else None
                if reservation and reservation.user_id != request.user_id:
                    raise ValidationError(f"Reservation {item.reservation_id} does not belong to this user")
                if reservation and reservation.product_id != item.product_id:
                    raise ValidationError(f"Reservation {item.reservation_id} is for a different product")
                if reservation and reservation.processed and orders.get_by_payment_id(request.payment_id):
                    # Committed by a concurrent delivery after the duplicate check above
                    raise ConflictError(f"Payment {request.payment_id} was materialized concurrently")

                held = reservation.held_quantity if reservation and not reservation.processed else 0
                from_hold = min(held, item.quantity)
                ledger.confirm(item.product_id, from_hold)
                ledger.direct_decrement(item.product_id, item.quantity - from_hold)
                ledger.release(item.product_id, held - from_hold)

                if reservation and not reservation.processed:
                    store.mark_processed(reservation)
                    processed_ids.append(reservation.id)

            order_items = []
            for item in request.items:
                product = ledger.get_product(item.product_id)
                order_items.append(
                    {
                        "product_id": item.product_id,
                        "quantity": item.quantity,
                        "selected_size": item.selected_size,
                        "selected_color": item.selected_color,
                        "product_price": item.price_snapshot if item.price_snapshot is not None else product.price,
                        "product_name": item.name_snapshot or product.name,
                        "product_image": item.image_snapshot or product.image,
                    }
                )

            total = request.total_amount
            if total is None:
                total = sum(entry["product_price"] * entry["quantity"] for entry in order_items)

            customer = db.query(Customer).filter(Customer.id == request.user_id).first()
            shipping = None
            if customer:
                shipping = {
                    "street": customer.street,
                    "city": customer.city,
                    "postal_code": customer.postal_code,
                    "country": customer.country,
                    "phone": customer.phone,
                }

            order = orders.create_order(
                user_id=request.user_id,
                payment_id=request.payment_id,
                items=order_items,
                total_price=total,
                shipping=shipping,
            )
            store.remove_from_cart(request.user_id, processed_ids)
            orders.add_outbox_event(
                order.id,
                OrderConfirmedEvent(
                    correlation_id=request.payment_id,
                    order_id=order.id,
                    user_id=request.user_id,
                    payment_id=request.payment_id,
                    total_price=total,
                    item_count=len(order_items),
                ),
            )
            orders.resolve_failed_materialization(request.payment_id)
            return order.id, processed_ids, False

    def _order_exists(self, payment_id: str) -> bool:
        with transaction(self.session_factory, label="duplicate check") as db:
            return OrderRepository(db).get_by_payment_id(payment_id) is not None

    def _fail(
        self,
        request: MaterializationRequest,
        error: Optional[Exception],
        attempts: int,
        record_failure: bool,
    ) -> MaterializationResult:
        result = MaterializationResult(
            success=False,
            attempts=attempts,
            error_type=type(error).__name__ if error else "UnknownError",
            error=getattr(error, "message", None) or str(error),
            transient=isinstance(error, ServiceError) and error.transient,
        )
        if record_failure:
            self.record_failure(request, result)
        else:
            logger.warning(
                f"Materialization attempt for payment {request.payment_id} failed after {attempts} attempt(s): "
                f"{result.error_type}: {result.error}"
            )
        return result

    def record_failure(self, request: MaterializationRequest, result: MaterializationResult) -> None:
        """
        Log the failure at ERROR and keep it for operators.

        Upserts the FailedMaterialization row for the payment and writes one
        order.materialization_failed outbox event. Never raises.
        """
        logger.error(
            f"Order materialization failed for payment {request.payment_id} after {result.attempts} attempt(s): "
            f"{result.error_type}: {result.error}",
            extra={"event_type": "order.materialization_failed", "reference": request.payment_id},
        )
        try:
            with transaction(self.session_factory, label="record materialization failure") as db:
                repo = OrderRepository(db)
                repo.record_failed_materialization(
                    payment_id=request.payment_id,
                    user_id=request.user_id,
                    payload=request.model_dump(mode="json"),
                    error_type=result.error_type,
                    error_message=result.error,
                    attempts=result.attempts,
                )
                repo.add_outbox_event(
                    request.payment_id,
                    OrderMaterializationFailedEvent(
                        correlation_id=request.payment_id,
                        payment_id=request.payment_id,
                        user_id=request.user_id,
                        error_type=result.error_type,
                        error_message=result.error,
                        attempts=result.attempts,
                    ),
                )
        except Exception as e:
            logger.exception(
                f"Could not record failed materialization for payment {request.payment_id}: {e}",
                extra={"event_type": "order.materialization_failed", "reference": request.payment_id},
            )
