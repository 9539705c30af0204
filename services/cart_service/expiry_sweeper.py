"""
expiry_sweeper.py - Reservation Expiry Sweeper

Background job that reclaims stock from checkout holds whose TTL elapsed without a
payment confirmation. Each expired line is handled in its own transaction: the units it
holds go back to the ledger and the line reverts to UNRESERVED, guarded by the version
read when the line was selected. A line the webhook processed (or anything else
changed) in the meantime is skipped; a failure on one line is logged and the sweep
moves on to the next.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from services.cart_service.cart_repository import ReservationStore
from services.inventory_service.repository import InventoryLedger
from services.order_service.repository import OrderRepository
from shared.database import transaction
from shared.datetime_utils import utc_now
from shared.events import ReservationExpiredEvent

logger = logging.getLogger(__name__)


class _SkipReservation(Exception):
    """Rolls back one line's transaction when its version guard fails."""


@dataclass
class SweepReport:
    released: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class ReservationExpirySweeper:
    """Releases expired checkout holds on a fixed interval."""

    def __init__(self, session_factory: Optional[sessionmaker] = None, interval_seconds: float = 1800):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Release every hold expired at `now`."""
        now = now or utc_now()
        report = SweepReport()

        with transaction(self.session_factory, label="select expired holds") as db:
            candidates = [(r.id, r.version) for r in ReservationStore(db).find_expired(now)]

        if not candidates:
            logger.debug("No expired reservations")
            return report

        logger.info(f"Found {len(candidates)} expired reservations")
        for reservation_id, version in candidates:
            try:
                self._release_one(reservation_id, version, now)
            except _SkipReservation:
                logger.info(f"Reservation {reservation_id} changed since selection, skipping")
                report.skipped.append(reservation_id)
            except Exception as e:
                logger.error(f"Error releasing reservation {reservation_id}: {e}")
                report.failed.append(reservation_id)
            else:
                report.released.append(reservation_id)

        logger.info(
            f"Sweep finished: {len(report.released)} released, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed"
        )
        return report

    def _release_one(self, reservation_id: str, version: int, now: datetime) -> None:
        with transaction(self.session_factory, label=f"expire reservation {reservation_id}") as db:
            store = ReservationStore(db)
            reservation = store.get(reservation_id)
            if not reservation or reservation.version != version or reservation.processed:
                raise _SkipReservation(reservation_id)

            held = reservation.held_quantity
            product_id = reservation.product_id
            user_id = reservation.user_id

            # Product row first, then the reservation
            InventoryLedger(db).release(product_id, held)
            if not store.expire_hold(reservation_id, version, now):
                raise _SkipReservation(reservation_id)

            OrderRepository(db).add_outbox_event(
                reservation_id,
                ReservationExpiredEvent(
                    correlation_id=reservation_id,
                    reservation_id=reservation_id,
                    user_id=user_id,
                    product_id=product_id,
                    released_quantity=held,
                ),
            )
            logger.info(f"Released {held} units of {product_id} from expired reservation {reservation_id}")

    def start(self) -> threading.Thread:
        """Run sweep_once every interval in a daemon thread."""
        self._thread = threading.Thread(target=self._run, name="reservation-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"Reservation expiry sweeper started (every {self.interval_seconds}s)")
        return self._thread

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.sweep_once()
            except Exception as e:
                logger.error(f"Error in reservation sweep: {e}")
            self._stop.wait(self.interval_seconds)

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Reservation expiry sweeper stopped")
