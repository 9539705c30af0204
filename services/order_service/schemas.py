from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    quantity: int
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None
    product_price: float
    product_name: str
    product_image: Optional[str] = None


class OrderResponse(BaseModel):
    """Order details."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    payment_id: str
    status: str
    status_history: List[str]
    total_price: float
    shipping_street: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_postal_code: Optional[str] = None
    shipping_country: Optional[str] = None
    phone: Optional[str] = None
    date_ordered: datetime
    items: List[OrderItemResponse]


class OrderSummary(BaseModel):
    """Order as listed on the customer's order page."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: str
    total_price: float
    date_ordered: datetime
    items: List[OrderItemResponse]


class UserOrdersResponse(BaseModel):
    user_id: str
    total: int
    active: List[OrderSummary]
    completed: List[OrderSummary]
    cancelled: List[OrderSummary]


class UpdateStatusRequest(BaseModel):
    status: str


class OrderCountResponse(BaseModel):
    count: int
