from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies use the storefront's camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItemRequest(CamelModel):
    """Request model for adding item to cart."""

    product_id: str
    quantity: int = Field(1, gt=0)
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None


class UpdateQuantityRequest(CamelModel):
    """Request model for updating item quantity. Zero removes the line."""

    quantity: int = Field(..., ge=0)


class CartLineResponse(BaseModel):
    """A cart line joined with the live product it points at."""

    id: str
    product_id: str
    quantity: int
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None
    held_quantity: int
    reserved: bool
    reservation_expiry: Optional[datetime] = None
    processed: bool
    state: str
    product_name: Optional[str] = None
    product_image: Optional[str] = None
    product_price: Optional[float] = None
    product_exists: bool
    product_out_of_stock: bool


class CartResponse(BaseModel):
    """Response model for cart."""

    user_id: str
    items: List[CartLineResponse]
    total_amount: float
    item_count: int


class CartCountResponse(BaseModel):
    user_id: str
    count: int
