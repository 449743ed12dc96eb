from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, orders
from ..auth import get_current_user, require_permission
from ..database import get_db
from ..errors import LazStoreError, to_http_exception
from ..notifications import NotificationDispatcher, get_dispatcher
from ..permissions import Action, can_view_order
from ..schemas import (
    CheckoutRequest,
    OrderListResponse,
    OrderOut,
    OrderStats,
    OrderStatus,
    OrderStatusUpdate,
    UserOut,
)

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("/checkout", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
def checkout_my_cart(
    body: CheckoutRequest,
    background_tasks: BackgroundTasks,
    current_user: UserOut = Depends(require_permission(Action.CHECKOUT)),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Place an order for everything in the caller's cart.

    - Stock is taken at this point; the cart is emptied.
    - Admins and employees are notified about the new order once the
      response has been sent.
    """
    try:
        order, intents = orders.checkout_cart(
            db,
            current_user,
            payment_method=body.payment_method,
            shipping_address=body.shipping_address,
            notes=body.notes,
        )
    except LazStoreError as e:
        raise to_http_exception(e)

    background_tasks.add_task(orders.apply_side_effects_detached, intents, dispatcher)
    return order


@router.get("/", response_model=OrderListResponse)
def list_orders(
    skip: int = 0,
    limit: int = 100,
    order_status: Optional[OrderStatus] = None,
    current_user: UserOut = Depends(require_permission(Action.VIEW_ALL_ORDERS)),
    db: Session = Depends(get_db),
):
    return {
        "orders": crud.get_orders(db, skip=skip, limit=limit, status=order_status),
        "total": crud.get_order_count(db, status=order_status),
        "skip": skip,
        "limit": limit,
    }


@router.get("/me", response_model=OrderListResponse)
def my_orders(
    skip: int = 0,
    limit: int = 100,
    current_user: UserOut = Depends(require_permission(Action.VIEW_OWN_ORDERS)),
    db: Session = Depends(get_db),
):
    return {
        "orders": crud.get_orders_by_customer(db, current_user.id, skip=skip, limit=limit),
        "total": crud.get_customer_order_count(db, current_user.id),
        "skip": skip,
        "limit": limit,
    }


@router.get("/stats", response_model=OrderStats)
def completed_order_stats(
    current_user: UserOut = Depends(require_permission(Action.VIEW_ANALYTICS)),
    db: Session = Depends(get_db),
):
    """Count and revenue of shipped and delivered orders."""
    return orders.order_stats(db)


@router.get("/queue", response_model=OrderListResponse)
def work_queue(
    skip: int = 0,
    limit: int = 100,
    current_user: UserOut = Depends(require_permission(Action.MANAGE_ORDERS)),
    db: Session = Depends(get_db),
):
    """Orders still moving through the lifecycle, oldest first."""
    open_orders = crud.get_open_orders(db, skip=skip, limit=limit)
    return {
        "orders": open_orders,
        "total": crud.get_open_order_count(db),
        "skip": skip,
        "limit": limit,
    }


@router.get("/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    db_order = crud.get_order(db, order_id)
    if not db_order or not can_view_order(current_user.role, current_user.id, db_order.customer_id):
        # Same answer either way so customers can't discover other people's order ids
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found",
        )
    return db_order


@router.patch("/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: int,
    status_update: OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: UserOut = Depends(get_current_user),
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Move an order along its lifecycle.

    Cancelling or returning puts the ordered quantities back in stock, and the
    customer is notified of every change. Repeating a change that already
    happened returns the order untouched.
    """
    try:
        outcome = orders.change_order_status(
            db,
            order_id,
            status_update.status,
            current_user,
            tracking_number=status_update.tracking_number,
        )
    except LazStoreError as e:
        raise to_http_exception(e)

    if outcome.changed:
        background_tasks.add_task(orders.apply_side_effects_detached, outcome.side_effects, dispatcher)
    return outcome.order
