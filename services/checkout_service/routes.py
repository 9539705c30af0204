from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.concurrency import run_in_threadpool

from services.checkout_service.orchestrator import CheckoutOrchestrator
from services.checkout_service.rate_limiter import RateLimiter, client_ip
from services.checkout_service.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    VerifyResponse,
    WebhookAck,
)
from services.checkout_service.webhook_processor import WebhookProcessor
from services.dependencies import (
    provide_orchestrator,
    provide_rate_limiter,
    provide_webhook_processor,
)
from shared.auth import get_current_user_id

router = APIRouter(prefix="/checkout", tags=["checkout"])


@router.post("", response_model=CheckoutResponse)
def checkout(
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: CheckoutOrchestrator = Depends(provide_orchestrator),
) -> CheckoutResponse:
    """Hold the cart's stock and return the Paystack authorization URL."""
    result = orchestrator.checkout(user_id, body.cart_items)
    return CheckoutResponse(authorization_url=result.authorization_url, reference=result.reference)


@router.post("/webhook", response_model=WebhookAck)
async def webhook(
    request: Request,
    x_paystack_signature: Optional[str] = Header(default=None),
    processor: WebhookProcessor = Depends(provide_webhook_processor),
) -> WebhookAck:
    """Paystack webhook endpoint (no auth; verified by x-paystack-signature)."""
    raw = await request.body()
    # The raw body is needed for the signature; processing blocks, so off the event loop
    result = await run_in_threadpool(processor.handle, raw, x_paystack_signature)
    return WebhookAck(outcome=result.outcome.value, order_id=result.order_id)


@router.get("/verify", response_model=VerifyResponse)
def verify(
    request: Request,
    reference: Optional[str] = None,
    limiter: RateLimiter = Depends(provide_rate_limiter),
    orchestrator: CheckoutOrchestrator = Depends(provide_orchestrator),
) -> VerifyResponse:
    limiter.hit(client_ip(request))
    return VerifyResponse(**orchestrator.verify(reference))
