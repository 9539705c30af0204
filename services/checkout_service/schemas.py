from typing import List, Optional

from pydantic import BaseModel, Field

from services.cart_service.schemas import CamelModel


class CheckoutItem(CamelModel):
    """One line of the cart snapshot the storefront checks out."""

    product_id: str
    quantity: int = Field(..., gt=0)
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None
    reserved: bool = False
    reservation_id: Optional[str] = None


class CheckoutRequest(CamelModel):
    cart_items: List[CheckoutItem]


class CheckoutResponse(BaseModel):
    authorization_url: str
    reference: str


class VerifyResponse(BaseModel):
    status: str
    message: str


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
    order_id: Optional[str] = None
