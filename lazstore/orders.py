"""Order workflows: checkout, status changes and applying their side effects."""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from . import crud, lifecycle
from .cart_holds import CartHoldManager, Clock
from .config import LOW_STOCK_THRESHOLD
from .database import SessionLocal
from .errors import EmptyCart, IllegalTransition, InsufficientStock, NotFound, PermissionDenied
from .events import OrderFeed, order_feed
from .lifecycle import NotificationIntent, SideEffect, StockRestoration, TransitionOutcome
from .permissions import Action, is_allowed
from .schemas import OrderOut, OrderStatus, OrderStats, UserOut

logger = logging.getLogger(__name__)


def checkout_cart(
    db: Session,
    actor: UserOut,
    *,
    payment_method: str,
    shipping_address: str,
    notes: Optional[str] = None,
    feed: OrderFeed = order_feed,
    clock: Optional[Clock] = None,
) -> Tuple[OrderOut, Tuple[NotificationIntent, ...]]:
    """Turn the actor's cart into a PENDING order.

    Stock is taken with conditional decrements inside one transaction, so
    this is the point where competing carts are serialized: if any line
    cannot be covered nothing is written. Each product row is locked and
    units held by other customers' active cart items are not for sale, even
    when the buyer's own hold has lapsed.
    """
    if not is_allowed(actor.role, Action.CREATE_ORDERS):
        raise PermissionDenied("Only customers can check out")

    customer = crud.get_user(db, actor.id)
    if customer is None:
        raise NotFound(f"User with id {actor.id} not found")

    cart_items = crud.get_cart_items_by_user(db, actor.id)
    if not cart_items:
        raise EmptyCart("Your cart is empty")

    holds = CartHoldManager(db, clock=clock)
    now = crud.as_utc((clock or crud.utcnow)())
    items_data = []
    touched = []
    try:
        for item in cart_items:
            product = item.product
            if product is None:
                raise NotFound(f"Product with id {item.product_id} not found")
            holds.ensure_available(product.id, item.quantity, now=now, exclude_user_id=actor.id)
            if not crud.try_decrease_stock(db, product.id, item.quantity):
                raise InsufficientStock(
                    f"Insufficient stock for product '{product.name}' (ID: {product.id}). "
                    f"Requested: {item.quantity}"
                )
            touched.append(product.id)
            items_data.append({
                "product_id": product.id,
                "product_name": product.name,
                "quantity": item.quantity,
                "unit_price": product.price,
            })

        db_order = crud.add_order(
            db,
            customer=customer,
            items_data=items_data,
            payment_method=payment_method,
            shipping_address=shipping_address,
            notes=notes,
        )
        crud.clear_cart(db, actor.id, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_order)
    order = OrderOut.model_validate(db_order)
    logger.info("Order %s placed by %s, total %s", order.id, order.customer_username, order.total_amount)

    remaining = [crud.get_product(db, pid) for pid in touched]
    intents = lifecycle.new_order_notifications(order) + lifecycle.low_stock_notification(
        ((p.name, p.quantity) for p in remaining if p is not None),
        threshold=LOW_STOCK_THRESHOLD,
    )
    feed.publish(order)
    return order, intents


def change_order_status(
    db: Session,
    order_id: int,
    requested: OrderStatus,
    actor: UserOut,
    *,
    tracking_number: Optional[str] = None,
    feed: OrderFeed = order_feed,
) -> TransitionOutcome:
    """Validate and persist a status change.

    The write is a compare-and-set on the previous status. When another
    actor got there first the order is re-read and the transition decided
    again, which turns a duplicate request into a no-op and a stale one into
    IllegalTransition.
    """
    if not is_allowed(actor.role, Action.UPDATE_ORDER_STATUS):
        raise PermissionDenied("Not enough permissions to update order status")

    for _attempt in range(2):
        db_order = crud.get_order(db, order_id)
        if db_order is None:
            raise NotFound(f"Order with id {order_id} not found")
        db.refresh(db_order)
        current = OrderOut.model_validate(db_order)

        outcome = lifecycle.transition(
            current, requested, actor.role, tracking_number=tracking_number,
        )
        if not outcome.changed:
            return outcome

        if crud.update_order_status_if(
            db,
            order_id,
            expected_status=current.status,
            new_status=outcome.order.status,
            updated_at=outcome.order.updated_at,
            tracking_number=tracking_number,
        ):
            logger.info("Order %s: %s -> %s by %s",
                        order_id, current.status.value, outcome.order.status.value, actor.username)
            feed.publish(outcome.order)
            return outcome

        logger.info("Order %s changed concurrently, re-evaluating", order_id)

    raise IllegalTransition(f"Order {order_id} keeps changing concurrently, try again")


def apply_side_effects(db: Session, side_effects: Iterable[SideEffect], dispatcher) -> int:
    """Carry out intents one by one; returns how many succeeded.

    Failures are logged and skipped. The status change that produced them
    is already committed and is not rolled back.
    """
    applied = 0
    for effect in side_effects:
        try:
            if isinstance(effect, StockRestoration):
                product = crud.adjust_product_quantity(db, effect.product_id, effect.delta)
                if product is None:
                    logger.warning("Cannot restore %s units: product %s no longer exists",
                                   effect.delta, effect.product_id)
                    continue
                logger.info("Restored %s units of product %s (now %s)",
                            effect.delta, effect.product_id, product.quantity)
                applied += 1
            elif isinstance(effect, NotificationIntent):
                if dispatcher.dispatch(db, effect):
                    applied += 1
            else:
                logger.error("Unknown side effect %r", effect)
        except Exception:
            logger.exception("Side effect %r failed", effect)
            db.rollback()
    return applied


def order_stats(db: Session) -> OrderStats:
    count, revenue = crud.get_completed_order_stats(db)
    return OrderStats(completed_orders=count, completed_revenue=revenue)


def apply_side_effects_detached(
    side_effects: Iterable[SideEffect],
    dispatcher,
    session_factory: Callable[[], Session] = SessionLocal,
) -> int:
    """apply_side_effects on a session of its own, for use after the response is sent."""
    db = session_factory()
    try:
        return apply_side_effects(db, side_effects, dispatcher)
    finally:
        db.close()
