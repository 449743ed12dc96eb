"""Order status lifecycle.

Decides whether a status change is allowed and describes what has to happen
as a result. Nothing in this module touches the database or the network: side
effects come back as intents and the caller applies them.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Optional, Tuple, Union

from .config import LOW_STOCK_THRESHOLD
from .errors import IllegalTransition, PermissionDenied
from .permissions import Action, is_allowed
from .schemas import OrderOut, OrderStatus, Role

S = OrderStatus

TERMINAL_STATUSES = frozenset({S.DELIVERED, S.CANCELLED, S.RETURNED})
STOCK_RESTORING_STATUSES = frozenset({S.CANCELLED, S.RETURNED})

_FORWARD = {
    S.PENDING: S.CONFIRMED,
    S.CONFIRMED: S.PROCESSING,
    S.PROCESSING: S.SHIPPED,
    S.SHIPPED: S.DELIVERED,
}


def _build_graph() -> Dict[OrderStatus, frozenset]:
    graph = {}
    for status in OrderStatus:
        if status in TERMINAL_STATUSES:
            graph[status] = frozenset()
        else:
            graph[status] = frozenset({_FORWARD[status], S.CANCELLED, S.RETURNED})
    graph[S.DELIVERED] = frozenset({S.RETURNED})
    return graph


ALLOWED_TRANSITIONS = MappingProxyType(_build_graph())

_CUSTOMER_MESSAGES = {
    S.PENDING: "Your order is awaiting payment",
    S.CONFIRMED: "Your order has been confirmed and is being prepared",
    S.PROCESSING: "Your order is being processed",
    S.SHIPPED: "Your order has been shipped",
    S.DELIVERED: "Your order has been delivered successfully",
    S.CANCELLED: "Your order has been cancelled",
    S.RETURNED: "Your return has been processed",
}


@dataclass(frozen=True)
class StockRestoration:
    """Put `delta` units of a product back on the shelf."""

    product_id: int
    delta: int


@dataclass(frozen=True)
class NotificationIntent:
    """A push notification for either one user or every user with a role."""

    title: str
    body: str
    target_user_id: Optional[int] = None
    target_role: Optional[Role] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def target(self) -> str:
        if self.target_user_id is not None:
            return f"user:{self.target_user_id}"
        return self.target_role.value if self.target_role else "nobody"


SideEffect = Union[StockRestoration, NotificationIntent]


@dataclass(frozen=True)
class TransitionOutcome:
    order: OrderOut
    side_effects: Tuple[SideEffect, ...] = ()
    changed: bool = True

    @property
    def stock_restorations(self) -> Tuple[StockRestoration, ...]:
        return tuple(e for e in self.side_effects if isinstance(e, StockRestoration))

    @property
    def notifications(self) -> Tuple[NotificationIntent, ...]:
        return tuple(e for e in self.side_effects if isinstance(e, NotificationIntent))


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return OrderStatus(requested) in ALLOWED_TRANSITIONS[OrderStatus(current)]


def status_notification(order: OrderOut, status: OrderStatus) -> NotificationIntent:
    body = _CUSTOMER_MESSAGES[status]
    if status is S.SHIPPED and order.tracking_number:
        body = f"{body} - Tracking: {order.tracking_number}"
    return NotificationIntent(
        title="Order Update",
        body=body,
        target_user_id=order.customer_id,
        metadata={
            "type": "ORDER_STATUS_UPDATE",
            "order_id": str(order.id),
            "status": status.value,
            "status_label": status.display_name,
            "tracking_number": order.tracking_number or "",
        },
    )


def transition(
    order: OrderOut,
    requested_status: OrderStatus,
    actor_role,
    *,
    now: Optional[dt.datetime] = None,
    tracking_number: Optional[str] = None,
) -> TransitionOutcome:
    """Move `order` to `requested_status` on behalf of a user with `actor_role`.

    Raises PermissionDenied when the role may not update order statuses and
    IllegalTransition when the lifecycle has no such edge. Asking for the
    status the order already has is a no-op, so duplicate deliveries of the
    same change event are harmless.
    """
    if not is_allowed(actor_role, Action.UPDATE_ORDER_STATUS):
        raise PermissionDenied("Not enough permissions to update order status")

    requested = OrderStatus(requested_status)
    current = OrderStatus(order.status)

    if current is requested:
        return TransitionOutcome(order=order, side_effects=(), changed=False)

    if not can_transition(current, requested):
        raise IllegalTransition(
            f"Order {order.id} cannot move from {current.value} to {requested.value}"
        )

    update = {
        "status": requested,
        "updated_at": now or dt.datetime.now(dt.timezone.utc),
    }
    if tracking_number is not None:
        update["tracking_number"] = tracking_number
    updated = order.model_copy(update=update)

    effects = []
    if requested in STOCK_RESTORING_STATUSES:
        effects.extend(
            StockRestoration(product_id=item.product_id, delta=item.quantity)
            for item in order.items
        )
    effects.append(status_notification(updated, requested))

    return TransitionOutcome(order=updated, side_effects=tuple(effects), changed=True)


def new_order_notifications(order: OrderOut) -> Tuple[NotificationIntent, ...]:
    metadata = {
        "type": "NEW_ORDER",
        "order_id": str(order.id),
        "customer_name": order.customer_username,
        "total_amount": str(order.total_amount),
    }
    return (
        NotificationIntent(
            title="New Order Received",
            body=f"Order #{order.id} from {order.customer_username} - Total: {order.total_amount}",
            target_role=Role.ADMIN,
            metadata=metadata,
        ),
        NotificationIntent(
            title="New Order to Process",
            body=f"Order #{order.id} needs processing - Customer: {order.customer_username}",
            target_role=Role.EMPLOYEE,
            metadata=metadata,
        ),
    )


def low_stock_notification(
    products: Iterable[Tuple[str, int]],
    threshold: int = LOW_STOCK_THRESHOLD,
) -> Tuple[NotificationIntent, ...]:
    """`products` is an iterable of (name, quantity) pairs."""
    low = [f"{name} ({quantity} left)" for name, quantity in products if quantity <= threshold]
    if not low:
        return ()
    if len(low) == 1:
        body = f"Product running low: {low[0]}"
    else:
        more = "..." if len(low) > 3 else ""
        body = f"{len(low)} products running low: {', '.join(low[:3])}{more}"
    return (
        NotificationIntent(
            title="Low Stock Alert",
            body=body,
            target_role=Role.ADMIN,
            metadata={"type": "LOW_STOCK", "low_stock_count": str(len(low))},
        ),
    )
