"""In-process order change feed.

Subscribers register a callback (optionally filtered by customer or status)
and get back a Subscription that must be unsubscribed when its owner goes
away, otherwise the callback keeps firing forever.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Dict, Iterable, Optional

from .schemas import OrderOut, OrderStatus

logger = logging.getLogger(__name__)

OrderCallback = Callable[[OrderOut], None]


class Subscription:
    def __init__(self, feed: "OrderFeed", key: int):
        self._feed = feed
        self._key = key

    @property
    def active(self) -> bool:
        return self._feed.is_subscribed(self._key)

    def unsubscribe(self) -> None:
        self._feed._remove(self._key)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.unsubscribe()


class _Listener:
    __slots__ = ("callback", "customer_id", "statuses")

    def __init__(self, callback: OrderCallback, customer_id: Optional[int],
                 statuses: Optional[frozenset]):
        self.callback = callback
        self.customer_id = customer_id
        self.statuses = statuses

    def matches(self, order: OrderOut) -> bool:
        if self.customer_id is not None and order.customer_id != self.customer_id:
            return False
        if self.statuses is not None and OrderStatus(order.status) not in self.statuses:
            return False
        return True


class OrderFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: Dict[int, _Listener] = {}
        self._keys = itertools.count(1)

    def subscribe(
        self,
        callback: OrderCallback,
        *,
        customer_id: Optional[int] = None,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> Subscription:
        listener = _Listener(
            callback,
            customer_id,
            frozenset(OrderStatus(s) for s in statuses) if statuses is not None else None,
        )
        with self._lock:
            key = next(self._keys)
            self._listeners[key] = listener
        return Subscription(self, key)

    def is_subscribed(self, key: int) -> bool:
        with self._lock:
            return key in self._listeners

    def _remove(self, key: int) -> None:
        with self._lock:
            self._listeners.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def publish(self, order: OrderOut) -> int:
        """Deliver `order` to every matching subscriber; returns how many got it."""
        with self._lock:
            listeners = list(self._listeners.values())
        delivered = 0
        for listener in listeners:
            if not listener.matches(order):
                continue
            try:
                listener.callback(order)
                delivered += 1
            except Exception:
                logger.exception("Order feed subscriber failed for order %s", order.id)
        return delivered


order_feed = OrderFeed()
