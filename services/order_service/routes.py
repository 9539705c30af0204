import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import sessionmaker

from services.dependencies import provide_session_factory
from services.order_service.models import CANCELLED_STATUSES, COMPLETED_STATUSES, OrderStatus
from services.order_service.repository import OrderRepository
from services.order_service.schemas import (
    OrderCountResponse,
    OrderResponse,
    OrderSummary,
    UpdateStatusRequest,
    UserOrdersResponse,
)
from shared.auth import Principal, authorize_user, get_current_principal, require_admin
from shared.database import transaction
from shared.errors import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/count", response_model=OrderCountResponse, dependencies=[Depends(require_admin)])
def count_orders(session_factory: sessionmaker = Depends(provide_session_factory)) -> OrderCountResponse:
    with transaction(session_factory, label="count orders") as db:
        return OrderCountResponse(count=OrderRepository(db).count_orders())


@router.get("/user/{user_id}", response_model=UserOrdersResponse, dependencies=[Depends(authorize_user)])
def get_user_orders(user_id: str, session_factory: sessionmaker = Depends(provide_session_factory)) -> UserOrdersResponse:
    """Get all orders for a user, grouped by lifecycle."""
    active, completed, cancelled = [], [], []
    with transaction(session_factory, label="list user orders") as db:
        orders = OrderRepository(db).get_orders_by_user(user_id)
        for order in orders:
            summary = OrderSummary.model_validate(order)
            status = OrderStatus(order.status)
            if status in COMPLETED_STATUSES:
                completed.append(summary)
            elif status in CANCELLED_STATUSES:
                cancelled.append(summary)
            else:
                active.append(summary)

    return UserOrdersResponse(
        user_id=user_id,
        total=len(orders),
        active=active,
        completed=completed,
        cancelled=cancelled,
    )


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: str,
    principal: Principal = Depends(get_current_principal),
    session_factory: sessionmaker = Depends(provide_session_factory),
) -> OrderResponse:
    """Get order details. Other users' orders are reported as missing."""
    with transaction(session_factory, label="get order") as db:
        order = OrderRepository(db).require_order(order_id)
        if order.user_id != principal.user_id and not principal.is_admin:
            logger.warning(f"User {principal.user_id} asked for order {order_id} of another user")
            raise NotFoundError("Order not found")
        return OrderResponse.model_validate(order)


@router.put("/{order_id}/status", response_model=OrderResponse, dependencies=[Depends(require_admin)])
def update_order_status(
    order_id: str,
    body: UpdateStatusRequest,
    session_factory: sessionmaker = Depends(provide_session_factory),
) -> OrderResponse:
    with transaction(session_factory, label="update order status") as db:
        order = OrderRepository(db).update_order_status(order_id, body.status)
        return OrderResponse.model_validate(order)
