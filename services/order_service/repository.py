import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from services.order_service.models import (
    FailedMaterialization,
    Order,
    OrderItem,
    OrderStatus,
    OutboxEvent,
)
from shared.datetime_utils import utc_now
from shared.errors import NotFoundError, ValidationError
from shared.events import BaseEvent

logger = logging.getLogger(__name__)


class OrderRepository:
    """Repository for order operations."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def create_order(
        self,
        user_id: str,
        payment_id: str,
        items: List[Dict[str, Any]],
        total_price: float,
        shipping: Optional[Dict[str, Optional[str]]] = None,
        status: OrderStatus = OrderStatus.PROCESSED,
    ) -> Order:
        """Create an order and its item snapshots."""
        shipping = shipping or {}
        order = Order(
            user_id=user_id,
            payment_id=payment_id,
            status=status.value,
            status_history=[status.value],
            total_price=total_price,
            shipping_street=shipping.get("street"),
            shipping_city=shipping.get("city"),
            shipping_postal_code=shipping.get("postal_code"),
            shipping_country=shipping.get("country"),
            phone=shipping.get("phone"),
            date_ordered=utc_now(),
        )
        self.db.add(order)
        self.db.flush()

        for position, item in enumerate(items):
            self.db.add(OrderItem(order_id=order.id, position=position, **item))
        self.db.flush()
        logger.info(f"Created order {order.id} for user {user_id} (payment {payment_id})")
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        """Get order by id."""
        return self.db.query(Order).filter(Order.id == order_id).first()

    def require_order(self, order_id: str) -> Order:
        order = self.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return order

    def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        return self.db.query(Order).filter(Order.payment_id == payment_id).first()

    def get_orders_by_user(self, user_id: str) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.user_id == user_id)
            .order_by(Order.date_ordered.desc())
            .all()
        )

    def count_orders(self) -> int:
        return self.db.query(Order).count()

    def update_order_status(self, order_id: str, status: str) -> Order:
        """Set a new status and append it to the history."""
        try:
            new_status = OrderStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid order status: {status}")

        order = self.require_order(order_id)
        if order.status == new_status.value:
            return order

        # JSON columns are not mutation-tracked, so assign a new list
        order.status = new_status.value
        order.status_history = list(order.status_history or []) + [new_status.value]
        self.db.flush()
        logger.info(f"Updated order {order_id} status to {new_status.value}")
        return order

    def add_outbox_event(self, aggregate_id: str, event: BaseEvent) -> OutboxEvent:
        """Add event to outbox."""
        outbox_event = OutboxEvent(
            aggregate_id=aggregate_id,
            event_type=event.event_type,
            event_data=event.model_dump_json(),
            published="N",
        )
        self.db.add(outbox_event)
        self.db.flush()
        logger.info(f"Added outbox event {event.event_type} for {aggregate_id}")
        return outbox_event

    def get_unpublished_events(self, limit: int = 100) -> List[OutboxEvent]:
        """Get unpublished outbox events, oldest first."""
        return (
            self.db.query(OutboxEvent)
            .filter(OutboxEvent.published == "N")
            .order_by(OutboxEvent.created_at)
            .limit(limit)
            .all()
        )

    def mark_event_published(self, event_id: str) -> None:
        """Mark outbox event as published."""
        event = self.db.query(OutboxEvent).filter(OutboxEvent.id == event_id).first()
        if event:
            event.published = "Y"
            event.published_at = utc_now()
            self.db.flush()

    def record_failed_materialization(
        self,
        payment_id: str,
        user_id: Optional[str],
        payload: Dict[str, Any],
        error_type: str,
        error_message: str,
        attempts: int,
    ) -> FailedMaterialization:
        """Insert or refresh the failure row for a payment."""
        record = (
            self.db.query(FailedMaterialization)
            .filter(FailedMaterialization.payment_id == payment_id)
            .first()
        )
        if record:
            record.attempts = (record.attempts or 0) + attempts
            record.error_type = error_type
            record.error_message = error_message
            record.payload = payload
            record.resolved = False
        else:
            record = FailedMaterialization(
                payment_id=payment_id,
                user_id=user_id,
                payload=payload,
                error_type=error_type,
                error_message=error_message,
                attempts=attempts,
                resolved=False,
            )
            self.db.add(record)
        self.db.flush()
        return record

    def resolve_failed_materialization(self, payment_id: str) -> bool:
        resolved = (
            self.db.query(FailedMaterialization)
            .filter(
                FailedMaterialization.payment_id == payment_id,
                FailedMaterialization.resolved.is_(False),
            )
            .update({FailedMaterialization.resolved: True}, synchronize_session=False)
        )
        if resolved:
            logger.info(f"Marked failed materialization for payment {payment_id} resolved")
        return resolved > 0

    def get_failed_materialization(self, payment_id: str) -> Optional[FailedMaterialization]:
        return (
            self.db.query(FailedMaterialization)
            .filter(FailedMaterialization.payment_id == payment_id)
            .first()
        )
