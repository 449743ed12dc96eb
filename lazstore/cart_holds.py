"""Cart items as time-boxed stock holds.

A cart item is a soft reservation: for CART_HOLD_MINUTES after it was added
(or last extended) its quantity counts against the product's available stock
for everybody else. Holds never share a counter; the real stock decrement
happens at checkout.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from . import crud
from .config import CART_HOLD_MINUTES
from .errors import InsufficientStock, NotFound
from .models import CartItem

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]


class CartHoldManager:
    def __init__(self, db: Session, clock: Optional[Clock] = None,
                 hold_minutes: int = CART_HOLD_MINUTES):
        self.db = db
        self.clock = clock or crud.utcnow
        self.hold_length = dt.timedelta(minutes=hold_minutes)

    def _now(self) -> dt.datetime:
        return crud.as_utc(self.clock())

    def _get(self, cart_item_id: int) -> CartItem:
        item = crud.get_cart_item(self.db, cart_item_id)
        if item is None:
            raise NotFound(f"Cart item {cart_item_id} not found")
        return item

    def available_stock(self, product_id: int, *, now: dt.datetime,
                        exclude_item_id: Optional[int] = None,
                        exclude_user_id: Optional[int] = None) -> int:
        """Product quantity minus every other active hold on it.

        The product row stays locked until the caller commits or rolls back,
        so two carts cannot both claim the last units.
        """
        product = crud.get_product_for_update(self.db, product_id)
        if product is None:
            raise NotFound(f"Product with id {product_id} not found")
        held = crud.get_held_quantity(
            self.db, product_id, now=now,
            exclude_item_id=exclude_item_id, exclude_user_id=exclude_user_id,
        )
        return int(product.quantity) - held

    def ensure_available(self, product_id: int, quantity: int, *, now: dt.datetime,
                         exclude_item_id: Optional[int] = None,
                         exclude_user_id: Optional[int] = None) -> None:
        available = self.available_stock(
            product_id, now=now, exclude_item_id=exclude_item_id, exclude_user_id=exclude_user_id,
        )
        if quantity > available:
            self.db.rollback()
            raise InsufficientStock(
                f"Insufficient stock for product {product_id}. "
                f"Available: {max(available, 0)}, Requested: {quantity}"
            )

    def add_hold(self, user_id: int, product_id: int, quantity: int) -> CartItem:
        """Put `quantity` units in the user's cart and hold them for a few minutes.

        Adding a product that is already in the cart merges the quantities and
        restarts the hold.
        """
        if quantity <= 0:
            raise ValueError("quantity must be > 0")

        now = self._now()
        existing = crud.get_cart_item_for(self.db, user_id, product_id)
        total = quantity + (existing.quantity if existing else 0)
        self.ensure_available(
            product_id, total, now=now,
            exclude_item_id=existing.id if existing else None,
        )

        if existing is None:
            item = CartItem(
                user_id=user_id,
                product_id=product_id,
                quantity=total,
                added_at=now,
                stock_hold_expiry=now + self.hold_length,
            )
            self.db.add(item)
        else:
            item = existing
            item.quantity = total
            item.stock_hold_expiry = now + self.hold_length
        self.db.commit()
        self.db.refresh(item)
        logger.info("Cart hold user=%s product=%s qty=%s until %s",
                    user_id, product_id, total, item.stock_hold_expiry)
        return item

    def extend_hold(self, cart_item_id: int) -> CartItem:
        item = self._get(cart_item_id)
        now = self._now()
        if crud.as_utc(item.stock_hold_expiry) <= now:
            # The hold lapsed, so someone else may have taken the stock meanwhile
            self.ensure_available(item.product_id, item.quantity, now=now, exclude_item_id=item.id)
        item.stock_hold_expiry = now + self.hold_length
        self.db.commit()
        self.db.refresh(item)
        return item

    def set_quantity(self, cart_item_id: int, new_qty: int) -> Optional[CartItem]:
        """Change the quantity of a cart item; zero or less removes it.

        The hold expiry is left as it is.
        """
        item = self._get(cart_item_id)
        if new_qty <= 0:
            self.db.delete(item)
            self.db.commit()
            return None

        if new_qty > item.quantity:
            self.ensure_available(item.product_id, new_qty, now=self._now(), exclude_item_id=item.id)
        item.quantity = new_qty
        self.db.commit()
        self.db.refresh(item)
        return item

    def remove(self, cart_item_id: int) -> None:
        item = self._get(cart_item_id)
        self.db.delete(item)
        self.db.commit()

    def list_for_user(self, user_id: int) -> List[CartItem]:
        return crud.get_cart_items_by_user(self.db, user_id)

    def clear(self, user_id: int) -> int:
        return crud.clear_cart(self.db, user_id)

    def sweep_expired(self, now: Optional[dt.datetime] = None) -> List[int]:
        """Delete every cart item whose hold ran out by `now`.

        Each candidate is re-read right before deletion so a hold extended in
        the meantime survives. One failing item does not stop the sweep.
        """
        now = crud.as_utc(now) if now is not None else self._now()
        removed = []
        for item_id in crud.get_expired_cart_item_ids(self.db, now):
            try:
                item = (
                    self.db.query(CartItem)
                    .filter(CartItem.id == item_id)
                    .populate_existing()
                    .first()
                )
                if item is None or crud.as_utc(item.stock_hold_expiry) > now:
                    continue
                self.db.delete(item)
                self.db.commit()
                removed.append(item_id)
            except Exception:
                logger.exception("Failed to release expired cart hold %s", item_id)
                self.db.rollback()
        if removed:
            logger.info("Released %d expired cart holds", len(removed))
        return removed
