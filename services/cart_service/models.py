import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)

from shared.database import Base, new_id


class ReservationState(str, enum.Enum):
    UNRESERVED = "UNRESERVED"
    RESERVED = "RESERVED"
    PROCESSED = "PROCESSED"


class Customer(Base):
    """Read model of the external user service: contact and shipping details only."""

    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    street = Column(String(255), nullable=True)
    city = Column(String(255), nullable=True)
    postal_code = Column(String(32), nullable=True)
    country = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)

    @property
    def has_shipping_address(self) -> bool:
        return bool(self.street and self.street.strip())


class Reservation(Base):
    """
    A cart line.

    held_quantity is the number of units of this line currently counted in the
    product's reserved_quantity. reserved/reservation_expiry mark a checkout hold.
    """

    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservations_quantity_positive"),
        CheckConstraint("held_quantity >= 0", name="ck_reservations_held_quantity_non_negative"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    selected_size = Column(String(50), nullable=True)
    selected_color = Column(String(50), nullable=True)
    held_quantity = Column(Integer, nullable=False, default=0)
    reserved = Column(Boolean, nullable=False, default=False, index=True)
    reservation_expiry = Column(DateTime(timezone=True), nullable=True, index=True)
    processed = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def state(self) -> ReservationState:
        if self.processed:
            return ReservationState.PROCESSED
        if self.reserved:
            return ReservationState.RESERVED
        return ReservationState.UNRESERVED

    def matches_variant(self, selected_size, selected_color) -> bool:
        return self.selected_size == selected_size and self.selected_color == selected_color


class CartEntry(Base):
    """Membership of a reservation in its owner's cart."""

    __tablename__ = "cart_entries"
    __table_args__ = (UniqueConstraint("reservation_id", name="uq_cart_entries_reservation_id"),)

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    reservation_id = Column(String(36), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
