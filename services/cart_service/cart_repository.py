"""
cart_repository.py - Reservation Store

Owns cart lines (Reservation rows) and cart membership (CartEntry rows). Every state
change is a conditional UPDATE guarded by the version the caller read, so a line that
was changed by a concurrent transaction (the webhook processing it, the sweeper
expiring it) is never overwritten: the guarded write touches zero rows and the store
raises ConflictError, or returns False where the caller treats that as a skip.

Stock counts are not touched here; callers pair every held_quantity change with the
matching InventoryLedger operation inside the same transaction.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from services.cart_service.models import CartEntry, Reservation
from shared.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class ReservationStore:
    """Repository for cart lines and cart membership."""

    def __init__(self, db: Session):
        """Initialize with the caller's transactional session."""
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, reservation_id: str) -> Optional[Reservation]:
        """Get reservation by ID."""
        return self.db.query(Reservation).filter(Reservation.id == reservation_id).first()

    def get_for_user(self, user_id: str, reservation_id: str) -> Reservation:
        """Get a line that is in the user's cart, or raise NotFoundError."""
        in_cart = (
            self.db.query(CartEntry)
            .filter(CartEntry.user_id == user_id, CartEntry.reservation_id == reservation_id)
            .first()
        )
        if not in_cart:
            raise NotFoundError("Product not in your cart")

        reservation = self.get(reservation_id)
        if not reservation or reservation.user_id != user_id:
            logger.warning(f"Orphan cart entry {reservation_id} for user {user_id}")
            raise NotFoundError("Cart product not found")
        return reservation

    def list_cart(self, user_id: str) -> List[Reservation]:
        """Lines in the user's cart, oldest first. Orphan entries are pruned."""
        self.prune_orphans(user_id)
        return (
            self.db.query(Reservation)
            .join(CartEntry, CartEntry.reservation_id == Reservation.id)
            .filter(CartEntry.user_id == user_id)
            .order_by(Reservation.created_at, Reservation.id)
            .all()
        )

    def cart_count(self, user_id: str) -> int:
        return self.db.query(CartEntry).filter(CartEntry.user_id == user_id).count()

    def find_unreserved_line(
        self,
        user_id: str,
        product_id: str,
        selected_size: Optional[str],
        selected_color: Optional[str],
    ) -> Optional[Reservation]:
        """An open (no checkout hold, not processed) line for the same product and variant."""
        candidates = (
            self.db.query(Reservation)
            .join(CartEntry, CartEntry.reservation_id == Reservation.id)
            .filter(
                CartEntry.user_id == user_id,
                Reservation.product_id == product_id,
                Reservation.reserved.is_(False),
                Reservation.processed.is_(False),
            )
            .all()
        )
        for reservation in candidates:
            if reservation.matches_variant(selected_size, selected_color):
                return reservation
        return None

    def find_open_lines(
        self,
        user_id: str,
        product_id: str,
        selected_size: Optional[str],
        selected_color: Optional[str],
    ) -> List[Reservation]:
        """Unprocessed lines for the same product and variant, held ones first."""
        candidates = (
            self.db.query(Reservation)
            .join(CartEntry, CartEntry.reservation_id == Reservation.id)
            .filter(
                CartEntry.user_id == user_id,
                Reservation.product_id == product_id,
                Reservation.processed.is_(False),
            )
            .order_by(Reservation.reserved.desc(), Reservation.created_at, Reservation.id)
            .all()
        )
        return [r for r in candidates if r.matches_variant(selected_size, selected_color)]

    def find_expired(self, now: datetime, limit: int = 500) -> List[Reservation]:
        """Checkout holds whose TTL has elapsed without confirmation."""
        return (
            self.db.query(Reservation)
            .filter(
                Reservation.reserved.is_(True),
                Reservation.processed.is_(False),
                Reservation.reservation_expiry <= now,
            )
            .order_by(Reservation.reservation_expiry)
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        user_id: str,
        product_id: str,
        quantity: int,
        selected_size: Optional[str],
        selected_color: Optional[str],
        held_quantity: int,
    ) -> Reservation:
        """Create an UNRESERVED line and add it to the user's cart."""
        reservation = Reservation(
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            selected_size=selected_size,
            selected_color=selected_color,
            held_quantity=held_quantity,
            reserved=False,
            processed=False,
            version=0,
        )
        self.db.add(reservation)
        self.db.flush()
        self.db.add(CartEntry(user_id=user_id, reservation_id=reservation.id))
        self.db.flush()
        logger.info(f"Created cart line {reservation.id} ({quantity} x {product_id}) for user {user_id}")
        return reservation

    def set_quantities(self, reservation: Reservation, quantity: int, held_quantity: int) -> None:
        """Overwrite quantity and held units of an open line."""
        self._guarded_update(
            reservation,
            Reservation.processed.is_(False),
            {Reservation.quantity: quantity, Reservation.held_quantity: held_quantity},
        )

    def place_hold(self, reservation: Reservation, quantity: int, held_quantity: int, expiry: datetime) -> None:
        """Mark the line RESERVED for checkout until expiry."""
        self._guarded_update(
            reservation,
            Reservation.processed.is_(False),
            {
                Reservation.quantity: quantity,
                Reservation.held_quantity: held_quantity,
                Reservation.reserved: True,
                Reservation.reservation_expiry: expiry,
            },
        )

    def mark_processed(self, reservation: Reservation) -> None:
        """Terminal transition: the line became an order item."""
        self._guarded_update(
            reservation,
            Reservation.processed.is_(False),
            {
                Reservation.processed: True,
                Reservation.reserved: False,
                Reservation.held_quantity: 0,
                Reservation.reservation_expiry: None,
            },
        )

    def expire_hold(self, reservation_id: str, expected_version: int, now: datetime) -> bool:
        """
        Revert an expired checkout hold to UNRESERVED.

        Returns False, without raising, when the line changed since it was selected
        (processed, re-held, removed) so the sweeper can skip it.
        """
        updated = (
            self.db.query(Reservation)
            .filter(
                and_(
                    Reservation.id == reservation_id,
                    Reservation.version == expected_version,
                    Reservation.reserved.is_(True),
                    Reservation.processed.is_(False),
                    Reservation.reservation_expiry <= now,
                )
            )
            .update(
                {
                    Reservation.reserved: False,
                    Reservation.held_quantity: 0,
                    Reservation.reservation_expiry: None,
                    Reservation.version: Reservation.version + 1,
                },
                synchronize_session="fetch",
            )
        )
        return updated == 1

    def delete(self, reservation: Reservation) -> None:
        """Delete a line and its cart membership."""
        self.db.query(CartEntry).filter(CartEntry.reservation_id == reservation.id).delete(
            synchronize_session=False
        )
        deleted = (
            self.db.query(Reservation)
            .filter(Reservation.id == reservation.id, Reservation.version == reservation.version)
            .delete(synchronize_session="fetch")
        )
        if deleted != 1:
            raise ConflictError(f"Cart line {reservation.id} changed concurrently")
        logger.info(f"Deleted cart line {reservation.id} for user {reservation.user_id}")

    def remove_from_cart(self, user_id: str, reservation_ids: Iterable[str]) -> int:
        """Drop cart membership for the given lines."""
        ids = list(reservation_ids)
        if not ids:
            return 0
        removed = (
            self.db.query(CartEntry)
            .filter(CartEntry.user_id == user_id, CartEntry.reservation_id.in_(ids))
            .delete(synchronize_session=False)
        )
        logger.info(f"Removed {removed} lines from cart of user {user_id}")
        return removed

    def purge_processed(self, user_id: str, reservation_ids: Iterable[str]) -> int:
        """Delete lines that were turned into order items."""
        ids = list(reservation_ids)
        if not ids:
            return 0
        self.remove_from_cart(user_id, ids)
        purged = (
            self.db.query(Reservation)
            .filter(
                Reservation.user_id == user_id,
                Reservation.id.in_(ids),
                Reservation.processed.is_(True),
            )
            .delete(synchronize_session=False)
        )
        logger.info(f"Purged {purged} processed cart lines for user {user_id}")
        return purged

    def prune_orphans(self, user_id: str) -> int:
        """Remove cart entries whose reservation no longer exists."""
        live_ids = select(Reservation.id).where(Reservation.user_id == user_id)
        pruned = (
            self.db.query(CartEntry)
            .filter(CartEntry.user_id == user_id, CartEntry.reservation_id.not_in(live_ids))
            .delete(synchronize_session=False)
        )
        if pruned:
            logger.warning(f"Pruned {pruned} orphan cart entries for user {user_id}")
        return pruned

    def _guarded_update(self, reservation: Reservation, guard, values: dict) -> None:
        values = dict(values)
        values[Reservation.version] = Reservation.version + 1
        updated = (
            self.db.query(Reservation)
            .filter(
                and_(
                    Reservation.id == reservation.id,
                    Reservation.version == reservation.version,
                    guard,
                )
            )
            .update(values, synchronize_session="fetch")
        )
        if updated != 1:
            logger.warning(f"Cart line {reservation.id} changed concurrently (expected version {reservation.version})")
            raise ConflictError(f"Cart line {reservation.id} changed concurrently")
