"""
logging_config.py - Centralized JSON Logging Configuration

PURPOSE:
    Structured JSON logging for the ordering backend: cart, checkout, webhook,
    materializer and sweeper modules all log through the standard logging module and
    this formatter turns every record into a single JSON line on stdout.

JSON LOG FIELDS:
    - timestamp: ISO 8601, UTC
    - level: INFO, WARNING, ERROR, ...
    - logger: module name where the log originated
    - message: the log message
    - service_name: injected automatically by ServiceFilter
    - correlation_id: optional, links the checkout attempt to its webhook
    - event_type: optional, domain event being handled (e.g. "order.confirmed")
    - reference: optional, payment reference of the checkout attempt
    - exception: stack trace when exc_info is set

USAGE:
    from shared.logging_config import setup_logging
    setup_logging("ordering-service", level="INFO")

    logger = logging.getLogger(__name__)
    logger.info("Hold placed", extra={"reference": reference, "event_type": "checkout.initiated"})

EXAMPLE JSON OUTPUT:
    {
        "timestamp": "2026-02-23T22:48:51.001014+00:00",
        "level": "INFO",
        "logger": "services.checkout_service.orchestrator",
        "message": "Checkout awaiting payment for user 42",
        "service_name": "ordering-service",
        "reference": "ORDER-1771886931001-482913"
    }
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

CONTEXT_FIELDS = ("correlation_id", "service_name", "event_type", "reference")


class JsonFormatter(logging.Formatter):
    """Custom formatter that outputs JSON logs with correlation context."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ServiceFilter(logging.Filter):
    """Stamp every record with the service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        return True


def setup_logging(service_name: str, level: str = "INFO") -> None:
    """Setup JSON logging for a service."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(ServiceFilter(service_name))

    logger = logging.getLogger()
    logger.setLevel(level)
    for existing in list(logger.handlers):
        if isinstance(existing.formatter, JsonFormatter):
            logger.removeHandler(existing)
    logger.addHandler(handler)
