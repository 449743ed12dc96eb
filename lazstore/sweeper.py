from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .cart_holds import CartHoldManager
from .config import CART_SWEEP_INTERVAL_SECONDS
from .database import SessionLocal

logger = logging.getLogger(__name__)


def sweep_once(session_factory: Callable[[], Session] = SessionLocal) -> list:
    db = session_factory()
    try:
        return CartHoldManager(db).sweep_expired()
    finally:
        db.close()


def start_cart_hold_sweeper(
    *,
    interval_seconds: int = CART_SWEEP_INTERVAL_SECONDS,
    session_factory: Callable[[], Session] = SessionLocal,
    stop_event: Optional[threading.Event] = None,
    daemon: bool = True,
) -> threading.Event:
    """Release expired cart holds every `interval_seconds` on a background thread.

    Set the returned event to stop the loop.
    """
    stop = stop_event or threading.Event()

    def _run() -> None:
        while not stop.wait(interval_seconds):
            try:
                sweep_once(session_factory)
            except Exception:
                # db down etc.; try again next round
                logger.exception("Cart hold sweep failed")

    t = threading.Thread(target=_run, name="cart-hold-sweeper", daemon=daemon)
    t.start()
    return stop
