"""
kafka_client.py - Kafka Producer Wrapper

PURPOSE:
    Publishes domain events (checkout.initiated, order.confirmed, reservation.expired,
    order.materialization_failed) to Kafka. Only the OutboxPublisher calls it: request
    handlers never publish directly, they write outbox rows inside their transaction.

PRODUCER FEATURES:
    - JSON serialization of pydantic events or plain dicts (outbox payloads)
    - Delivery acknowledgment from all replicas (acks=all)
    - 3 retry attempts on failure, snappy compression
    - Message key = correlation_id so every event of one checkout lands on one partition

USAGE:
    producer = BaseKafkaProducer("localhost:9092", client_id="ordering-outbox")
    producer.publish("order.confirmed", event)
    producer.flush()
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

from confluent_kafka import KafkaException, Producer
from confluent_kafka.error import KafkaError

from shared.events import BaseEvent

logger = logging.getLogger(__name__)


class BaseKafkaProducer:
    """Kafka producer with JSON serialization and delivery callbacks."""

    def __init__(self, bootstrap_servers: str, client_id: str = "producer"):
        """
        Initialize Kafka producer.

        Args:
            bootstrap_servers: Comma-separated Kafka broker addresses
            client_id: Unique identifier for this producer instance
        """
        self.config = {
            "bootstrap.servers": bootstrap_servers,
            "client.id": client_id,
            "acks": "all",
            "retries": 3,
            "compression.type": "snappy",
        }
        self.producer = Producer(self.config)

    def _delivery_report(self, err: Optional[KafkaError], msg) -> None:
        """Delivery report handler called by producer on message delivery."""
        if err is not None:
            logger.error(f"Message delivery failed: {err}")
        else:
            logger.debug(
                f"Message delivered to topic={msg.topic()}, "
                f"partition={msg.partition()}, offset={msg.offset()}"
            )

    def publish(self, topic: str, event: Union[BaseEvent, Dict[str, Any]], timeout: float = 10.0) -> None:
        """
        Publish event to Kafka topic and wait for delivery.

        Raises KafkaException when the broker reports a delivery error or the
        message is still queued after the flush timeout.
        """
        if isinstance(event, dict):
            message = json.dumps(event, default=str)
            event_type = event.get("event_type", "unknown")
            event_id = event.get("event_id", "unknown")
            correlation_id = event.get("correlation_id", "unknown")
        else:
            message = event.model_dump_json()
            event_type = event.event_type
            event_id = event.event_id
            correlation_id = event.correlation_id

        failures: List[KafkaError] = []

        def on_delivery(err: Optional[KafkaError], msg) -> None:
            self._delivery_report(err, msg)
            if err is not None:
                failures.append(err)

        try:
            self.producer.produce(
                topic=topic,
                key=str(correlation_id).encode("utf-8"),
                value=message.encode("utf-8"),
                callback=on_delivery,
            )
            remaining = self.producer.flush(timeout)
            if failures:
                raise KafkaException(failures[0])
            if remaining:
                raise KafkaException(KafkaError(KafkaError._MSG_TIMED_OUT, f"{remaining} message(s) still queued"))
            logger.info(
                f"Published event {event_id} to {topic}",
                extra={"event_type": event_type, "correlation_id": correlation_id},
            )
        except Exception as e:
            logger.error(f"Error publishing event to {topic}: {e}")
            raise

    def flush(self) -> None:
        """Flush any pending messages."""
        self.producer.flush()
