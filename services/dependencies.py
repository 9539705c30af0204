"""
dependencies.py - FastAPI dependency providers

Routers never build collaborators themselves: they ask for them through these
providers, which main.py wires to real infrastructure (PostgreSQL, Paystack, SMTP,
Redis) and tests replace through app.dependency_overrides.
"""

from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Callable

from fastapi import Depends
from sqlalchemy.orm import sessionmaker

from services.cart_service.cart_manager import CartReservationManager
from services.checkout_service.orchestrator import CheckoutOrchestrator
from services.checkout_service.payment_gateway import PaymentGateway, PaystackGateway
from services.checkout_service.rate_limiter import RateLimiter, create_redis_client
from services.checkout_service.webhook_processor import WebhookProcessor, start_background_thread
from services.notification_service.email_sender import EmailSender, Notifier
from services.order_service.materializer import OrderMaterializer
from shared.config import Settings, get_settings
from shared.database import get_session_factory

gateway_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="gateway")


def provide_settings() -> Settings:
    return get_settings()


def provide_session_factory() -> sessionmaker:
    return get_session_factory()


@lru_cache
def provide_gateway() -> PaymentGateway:
    settings = get_settings()
    return PaystackGateway(settings.paystack_secret_key, base_url=settings.paystack_base_url)


@lru_cache
def provide_notifier() -> Notifier:
    settings = get_settings()
    return EmailSender(
        host=settings.smtp_host,
        port=settings.smtp_port,
        from_address=settings.smtp_from,
        username=settings.smtp_username or None,
        password=settings.smtp_password or None,
        use_tls=settings.smtp_use_tls,
    )


@lru_cache
def provide_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(
        create_redis_client(settings.redis_url),
        limit=settings.verify_rate_limit,
        window_seconds=settings.verify_rate_window_seconds,
        prefix="verify",
    )


def provide_background_runner() -> Callable[[Callable[[], None]], None]:
    return start_background_thread


def provide_cart_manager(
    session_factory: sessionmaker = Depends(provide_session_factory),
) -> CartReservationManager:
    return CartReservationManager(session_factory)


def provide_orchestrator(
    gateway: PaymentGateway = Depends(provide_gateway),
    session_factory: sessionmaker = Depends(provide_session_factory),
    settings: Settings = Depends(provide_settings),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(gateway, session_factory=session_factory, settings=settings, executor=gateway_executor)


def provide_materializer(
    session_factory: sessionmaker = Depends(provide_session_factory),
    settings: Settings = Depends(provide_settings),
) -> OrderMaterializer:
    return OrderMaterializer(
        session_factory,
        max_retries=settings.materializer_max_retries,
        retry_delay=settings.materializer_retry_delay_seconds,
    )


def provide_webhook_processor(
    materializer: OrderMaterializer = Depends(provide_materializer),
    notifier: Notifier = Depends(provide_notifier),
    session_factory: sessionmaker = Depends(provide_session_factory),
    settings: Settings = Depends(provide_settings),
    run_in_background: Callable = Depends(provide_background_runner),
) -> WebhookProcessor:
    return WebhookProcessor(
        materializer,
        notifier,
        secret=settings.paystack_secret_key,
        session_factory=session_factory,
        max_retries=settings.webhook_max_retries,
        retry_base_delay=settings.webhook_retry_base_delay_seconds,
        currency=settings.paystack_currency,
        run_in_background=run_in_background,
    )
