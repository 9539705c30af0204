import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.orm import relationship

from shared.database import Base, new_id


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out-for-delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    ON_HOLD = "on-hold"
    EXPIRED = "expired"


ACTIVE_STATUSES = {
    OrderStatus.PENDING,
    OrderStatus.PROCESSED,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.ON_HOLD,
}
COMPLETED_STATUSES = {OrderStatus.DELIVERED}
CANCELLED_STATUSES = {OrderStatus.CANCELLED, OrderStatus.EXPIRED}


class Order(Base):
    """Order model. payment_id is the gateway reference and is unique."""

    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    payment_id = Column(String(255), unique=True, nullable=False, index=True)
    status = Column(String(50), default=OrderStatus.PENDING.value, nullable=False)
    status_history = Column(JSON, nullable=False, default=list)
    total_price = Column(Float, nullable=False)
    shipping_street = Column(String(255), nullable=True)
    shipping_city = Column(String(255), nullable=True)
    shipping_postal_code = Column(String(32), nullable=True)
    shipping_country = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)
    date_ordered = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.position")


class OrderItem(Base):
    """Snapshot of a purchased line, decoupled from later catalog edits."""

    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), nullable=False)
    quantity = Column(Integer, nullable=False)
    selected_size = Column(String(50), nullable=True)
    selected_color = Column(String(50), nullable=True)
    product_price = Column(Float, nullable=False)
    product_name = Column(String(255), nullable=False)
    product_image = Column(String(500), nullable=True)

    order = relationship("Order", back_populates="items")


class FailedMaterialization(Base):
    """Paid checkouts that could not be turned into an order, kept for operators."""

    __tablename__ = "failed_materializations"

    id = Column(String(36), primary_key=True, default=new_id)
    payment_id = Column(String(255), unique=True, nullable=False, index=True)
    user_id = Column(String(36), nullable=True)
    payload = Column(JSON, nullable=False)
    error_type = Column(String(100), nullable=False)
    error_message = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)


class OutboxEvent(Base):
    """Outbox pattern for reliable Kafka publishing."""

    __tablename__ = "outbox_events"

    id = Column(String(36), primary_key=True, default=new_id)
    aggregate_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_data = Column(Text, nullable=False)  # JSON string
    published = Column(String(1), default="N", nullable=False)  # Y or N
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    published_at = Column(DateTime(timezone=True), nullable=True)
