from fastapi import APIRouter, Depends, Response, status

from services.cart_service.cart_manager import CartReservationManager
from services.cart_service.schemas import (
    CartCountResponse,
    CartItemRequest,
    CartLineResponse,
    CartResponse,
    UpdateQuantityRequest,
)
from services.dependencies import provide_cart_manager
from shared.auth import authorize_user

router = APIRouter(prefix="/users/{user_id}/cart", tags=["cart"], dependencies=[Depends(authorize_user)])


@router.get("", response_model=CartResponse)
def get_cart(user_id: str, manager: CartReservationManager = Depends(provide_cart_manager)) -> CartResponse:
    """Get user's cart with live product details."""
    return manager.get_cart(user_id)


@router.get("/count", response_model=CartCountResponse)
def get_cart_count(user_id: str, manager: CartReservationManager = Depends(provide_cart_manager)) -> CartCountResponse:
    return CartCountResponse(user_id=user_id, count=manager.cart_count(user_id))


@router.get("/{reservation_id}", response_model=CartLineResponse)
def get_cart_line(
    user_id: str,
    reservation_id: str,
    manager: CartReservationManager = Depends(provide_cart_manager),
) -> CartLineResponse:
    return manager.get_line(user_id, reservation_id)


@router.post("", response_model=CartLineResponse, status_code=status.HTTP_201_CREATED)
def add_to_cart(
    user_id: str,
    item: CartItemRequest,
    manager: CartReservationManager = Depends(provide_cart_manager),
) -> CartLineResponse:
    """Add item to cart, taking the stock immediately."""
    return manager.add_to_cart(
        user_id,
        item.product_id,
        item.quantity,
        selected_size=item.selected_size,
        selected_color=item.selected_color,
    )


@router.put("/{reservation_id}", response_model=CartLineResponse)
def modify_quantity(
    user_id: str,
    reservation_id: str,
    body: UpdateQuantityRequest,
    manager: CartReservationManager = Depends(provide_cart_manager),
):
    """Set a line's quantity. Quantity 0 removes the line (204)."""
    line = manager.modify_quantity(user_id, reservation_id, body.quantity)
    if line is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return line


@router.delete("/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_from_cart(
    user_id: str,
    reservation_id: str,
    manager: CartReservationManager = Depends(provide_cart_manager),
) -> Response:
    """Remove item from cart and release its stock."""
    manager.remove_from_cart(user_id, reservation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
