"""
main.py - Ordering Service (cart, checkout, payment webhook, orders)

PURPOSE:
    One FastAPI application serving the ordering pipeline. Every workflow shares one
    PostgreSQL database, so cart mutations, checkout holds and order materialization
    are each a single database transaction.

FLOW:
    1. POST /users/{id}/cart            stock is taken into the cart line (held)
    2. POST /checkout                   holds topped up, expiry set, Paystack intent created
    3. POST /checkout/webhook           charge.success -> order materialized, cart purged,
                                        confirmation email sent in the background
    4. ReservationExpirySweeper         releases holds whose 15 minute TTL elapsed

API ENDPOINTS:
    GET    /health
    GET    /users/{user_id}/cart        (Bearer token, own cart or admin, all cart routes)
    GET    /users/{user_id}/cart/count
    GET    /users/{user_id}/cart/{reservation_id}
    POST   /users/{user_id}/cart
    PUT    /users/{user_id}/cart/{reservation_id}
    DELETE /users/{user_id}/cart/{reservation_id}
    POST   /checkout                    (Bearer token)
    POST   /checkout/webhook            (x-paystack-signature)
    GET    /checkout/verify?reference=  (rate limited)
    GET    /orders/count                (admin)
    GET    /orders/user/{user_id}       (own orders or admin)
    GET    /orders/{order_id}           (own order or admin)
    PUT    /orders/{order_id}/status    (admin)

BACKGROUND THREADS:
    - Reservation expiry sweeper (every SWEEP_INTERVAL_SECONDS, default 30 minutes)
    - Outbox publisher (every OUTBOX_POLL_INTERVAL_SECONDS) when KAFKA_ENABLED

USAGE:
    python -m services.main
    Access: http://localhost:8000/docs
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from services.cart_service.expiry_sweeper import ReservationExpirySweeper
from services.cart_service.routes import router as cart_router
from services.checkout_service.routes import router as checkout_router
from services.inventory_service.seed_data import seed_products
from services.order_service.outbox import OutboxPublisher
from services.order_service.routes import router as order_router
from shared.config import get_settings
from shared.database import get_session_factory, init_db
from shared.errors import register_exception_handlers
from shared.kafka_client import BaseKafkaProducer
from shared.logging_config import setup_logging
from shared.topic_initializer import create_topics

settings = get_settings()

# Setup logging
setup_logging(settings.service_name, settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage app lifecycle."""
    logger.info("Starting Ordering Service...")
    session_factory = get_session_factory()

    # Initialize database
    try:
        init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    # Seed products
    db = session_factory()
    try:
        seed_products(db)
        logger.info("Products seeded")
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to seed products: {e}")
    finally:
        db.close()

    producer = None
    outbox_publisher = None
    if settings.kafka_enabled:
        # Initialize Kafka topics
        try:
            create_topics(settings.kafka_bootstrap_servers)
            logger.info("Kafka topics initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Kafka topics: {e}")
            raise

        # Initialize Kafka producer
        try:
            producer = BaseKafkaProducer(settings.kafka_bootstrap_servers, client_id="ordering-outbox")
            logger.info("Kafka producer initialized")
        except Exception as e:
            logger.error(f"Failed to initialize Kafka producer: {e}")
            raise

        outbox_publisher = OutboxPublisher(
            producer,
            session_factory=session_factory,
            poll_interval=settings.outbox_poll_interval_seconds,
        )
        outbox_publisher.start()
    else:
        logger.info("Kafka disabled, outbox events stay in the database")

    sweeper = ReservationExpirySweeper(session_factory, interval_seconds=settings.sweep_interval_seconds)
    sweeper.start()

    yield

    logger.info("Shutting down Ordering Service...")
    sweeper.stop()
    if outbox_publisher:
        outbox_publisher.stop()
    if producer:
        producer.flush()


app = FastAPI(title="Ordering Service", version="1.0.0", lifespan=lifespan)
register_exception_handlers(app)
app.include_router(cart_router)
app.include_router(checkout_router)
app.include_router(order_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": settings.service_name,
        "version": "1.0.0",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
