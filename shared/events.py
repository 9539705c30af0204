"""
events.py - Domain Event Schema Definitions

PURPOSE:
    Pydantic models for the domain events the ordering pipeline emits. Events are
    written to the outbox table inside the same transaction as the state change that
    produced them, then published to Kafka by the OutboxPublisher.

EVENTS:
    - checkout.initiated: stock held, payment intent created, awaiting the webhook
    - order.confirmed: webhook confirmed payment, order materialized
    - order.materialization_failed: paid order could not be materialized (operator alert)
    - reservation.expired: sweeper released a hold whose TTL elapsed

COMMON FIELDS (BaseEvent):
    - event_id: unique identifier (UUID)
    - event_type: event category and action
    - timestamp: UTC timestamp of event creation
    - correlation_id: the payment reference, linking checkout, webhook and order

USAGE:
    event = OrderConfirmedEvent(
        correlation_id=reference,
        order_id=order.id,
        user_id=order.user_id,
        payment_id=reference,
        total_price=order.total_price,
    )
    json_data = event.model_dump_json()
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class BaseEvent(BaseModel):
    """Base event model for all domain events."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: str


class CheckoutInitiatedEvent(BaseEvent):
    """
    Published when a checkout attempt holds stock and receives a payment intent.
    Consumers: analytics (checkout funnel), abandoned-checkout tracking.
    """

    event_type: str = "checkout.initiated"
    user_id: str
    reference: str
    total_amount: float
    items: List[Dict[str, Any]]
    hold_expires_at: datetime


class OrderConfirmedEvent(BaseEvent):
    """
    Published when a confirmed payment has been materialized into an order.
    Consumers: fulfillment, analytics (conversion tracking).
    """

    event_type: str = "order.confirmed"
    order_id: str
    user_id: str
    payment_id: str
    total_price: float
    item_count: int


class OrderMaterializationFailedEvent(BaseEvent):
    """Published when a paid checkout could not be turned into an order."""

    event_type: str = "order.materialization_failed"
    payment_id: str
    user_id: Optional[str] = None
    error_type: str
    error_message: str
    attempts: int


class ReservationExpiredEvent(BaseEvent):
    """Published when the sweeper releases an expired checkout hold."""

    event_type: str = "reservation.expired"
    reservation_id: str
    user_id: str
    product_id: str
    released_quantity: int


EVENT_TYPE_MAP = {
    "checkout.initiated": CheckoutInitiatedEvent,
    "order.confirmed": OrderConfirmedEvent,
    "order.materialization_failed": OrderMaterializationFailedEvent,
    "reservation.expired": ReservationExpiredEvent,
}

ALL_TOPICS = list(EVENT_TYPE_MAP)
