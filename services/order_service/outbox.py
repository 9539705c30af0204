"""
outbox.py - Outbox Publisher

Domain events are written to the outbox_events table in the same transaction as the
state change that produced them (checkout hold placed, order materialized, hold
expired, materialization failed). This background thread polls for unpublished rows,
publishes each one to the Kafka topic named after its event type and marks it
published only after the producer has flushed. A crash between commit and publish
leaves the row unpublished, so it is retried on the next poll or after a restart.
"""

import json
import logging
import threading
from typing import Optional

from sqlalchemy.orm import sessionmaker

from services.order_service.repository import OrderRepository
from shared.database import transaction

logger = logging.getLogger(__name__)


class OutboxPublisher:
    """Background thread to publish outbox events."""

    def __init__(self, producer, session_factory: Optional[sessionmaker] = None, poll_interval: float = 2):
        """Initialize publisher."""
        self.producer = producer
        self.session_factory = session_factory
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> threading.Thread:
        """Start publisher thread."""
        self._thread = threading.Thread(target=self._publish_loop, name="outbox-publisher", daemon=True)
        self._thread.start()
        logger.info("Outbox publisher started")
        return self._thread

    def publish_pending(self) -> int:
        """Publish every unpublished event once. Returns the number published."""
        published = 0
        with transaction(self.session_factory, label="outbox publish") as db:
            repo = OrderRepository(db)
            for event in repo.get_unpublished_events():
                try:
                    self.producer.publish(event.event_type, json.loads(event.event_data))
                except Exception as e:
                    # Leave it unpublished; the next poll retries it
                    logger.error(f"Error publishing outbox event {event.id}: {e}")
                    continue
                repo.mark_event_published(event.id)
                published += 1
                logger.info(f"Published outbox event {event.event_type} for {event.aggregate_id}")
        return published

    def _publish_loop(self) -> None:
        """Poll and publish outbox events."""
        while not self._stop.is_set():
            try:
                self.publish_pending()
            except Exception as e:
                logger.error(f"Error in outbox publisher: {e}")
            self._stop.wait(self.poll_interval)

    def stop(self) -> None:
        """Stop publisher thread."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("Outbox publisher stopped")
