"""
cart_manager.py - Cart Reservation Manager

Adds, modifies and removes cart lines while keeping the Inventory Ledger in step:
adding takes stock immediately (the line's held_quantity), modifying reserves or
releases exactly the delta, removing gives back whatever the line still holds. Each
call is one transaction spanning the Reservation Store and the Inventory Ledger, so a
rejected reservation leaves neither the cart nor the stock counts changed.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from services.cart_service.cart_repository import ReservationStore
from services.cart_service.models import Customer, Reservation
from services.cart_service.schemas import CartLineResponse, CartResponse
from services.inventory_service.models import Product
from services.inventory_service.repository import InventoryLedger
from shared.database import transaction
from shared.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def build_cart_line(reservation: Reservation, product: Optional[Product]) -> CartLineResponse:
    """Join a line with its product and compute the storefront flags."""
    missing_units = max(reservation.quantity - reservation.held_quantity, 0)
    return CartLineResponse(
        id=reservation.id,
        product_id=reservation.product_id,
        quantity=reservation.quantity,
        selected_size=reservation.selected_size,
        selected_color=reservation.selected_color,
        held_quantity=reservation.held_quantity,
        reserved=reservation.reserved,
        reservation_expiry=reservation.reservation_expiry,
        processed=reservation.processed,
        state=reservation.state.value,
        product_name=product.name if product else None,
        product_image=product.image if product else None,
        product_price=product.price if product else None,
        product_exists=product is not None,
        product_out_of_stock=product is not None and product.count_in_stock < missing_units,
    )


class CartReservationManager:
    """Cart operations that reconcile every quantity change with the ledger."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def add_to_cart(
        self,
        user_id: str,
        product_id: str,
        quantity: int,
        selected_size: Optional[str] = None,
        selected_color: Optional[str] = None,
    ) -> CartLineResponse:
        """Take `quantity` units and add them to a matching open line or a new one."""
        if quantity <= 0:
            raise ValidationError("Quantity must be at least 1")

        with transaction(self.session_factory, label="add to cart") as db:
            self._require_customer(db, user_id)
            store = ReservationStore(db)
            ledger = InventoryLedger(db)

            ledger.reserve(product_id, quantity)

            line = store.find_unreserved_line(user_id, product_id, selected_size, selected_color)
            if line:
                store.set_quantities(line, line.quantity + quantity, line.held_quantity + quantity)
            else:
                line = store.create(
                    user_id,
                    product_id,
                    quantity,
                    selected_size,
                    selected_color,
                    held_quantity=quantity,
                )

            logger.info(f"Added {quantity} x {product_id} to cart of user {user_id} (line {line.id})")
            return build_cart_line(line, ledger.get_product(product_id))

    def modify_quantity(self, user_id: str, reservation_id: str, quantity: int) -> Optional[CartLineResponse]:
        """
        Set a line's quantity, reserving or releasing the difference.

        Returns None when quantity is 0 and the line was removed.
        """
        if quantity < 0:
            raise ValidationError("Quantity must be >= 0")
        if quantity == 0:
            self.remove_from_cart(user_id, reservation_id)
            return None

        with transaction(self.session_factory, label="modify cart quantity") as db:
            self._require_customer(db, user_id)
            store = ReservationStore(db)
            ledger = InventoryLedger(db)

            line = store.get_for_user(user_id, reservation_id)
            if line.reserved:
                raise ValidationError("Cart line is held by a checkout in progress")

            delta = quantity - line.held_quantity
            if delta > 0:
                ledger.reserve(line.product_id, delta)
            elif delta < 0:
                ledger.release(line.product_id, -delta)

            store.set_quantities(line, quantity, quantity)
            logger.info(f"Cart line {reservation_id} quantity set to {quantity} (delta {delta})")
            return build_cart_line(line, ledger.get_product(line.product_id))

    def remove_from_cart(self, user_id: str, reservation_id: str) -> None:
        """Give back whatever the line holds and delete it."""
        with transaction(self.session_factory, label="remove from cart") as db:
            self._require_customer(db, user_id)
            store = ReservationStore(db)
            ledger = InventoryLedger(db)

            line = store.get_for_user(user_id, reservation_id)
            if line.processed:
                raise ValidationError("Cart line has already been ordered")

            if line.held_quantity:
                ledger.release(line.product_id, line.held_quantity)
            store.delete(line)

    def get_cart(self, user_id: str) -> CartResponse:
        with transaction(self.session_factory, label="read cart") as db:
            self._require_customer(db, user_id)
            store = ReservationStore(db)
            ledger = InventoryLedger(db)

            items = [build_cart_line(line, ledger.get_product(line.product_id)) for line in store.list_cart(user_id)]
            total = sum((item.product_price or 0.0) * item.quantity for item in items if item.product_exists)
            return CartResponse(user_id=user_id, items=items, total_amount=total, item_count=len(items))

    def get_line(self, user_id: str, reservation_id: str) -> CartLineResponse:
        with transaction(self.session_factory, label="read cart line") as db:
            line = ReservationStore(db).get_for_user(user_id, reservation_id)
            return build_cart_line(line, InventoryLedger(db).get_product(line.product_id))

    def cart_count(self, user_id: str) -> int:
        with transaction(self.session_factory, label="count cart") as db:
            self._require_customer(db, user_id)
            store = ReservationStore(db)
            store.prune_orphans(user_id)
            return store.cart_count(user_id)

    @staticmethod
    def _require_customer(db: Session, user_id: str) -> Customer:
        customer = db.query(Customer).filter(Customer.id == user_id).first()
        if not customer:
            raise NotFoundError("User not found")
        return customer
