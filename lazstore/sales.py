"""In-store sales and returns processed by staff."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import crud
from .cart_holds import CartHoldManager, Clock
from .errors import IllegalTransition, InsufficientStock, NotFound, PermissionDenied
from .models import Sale, SaleReturn
from .permissions import Action, is_allowed
from .schemas import SaleOut, SalesReport, UserOut

logger = logging.getLogger(__name__)

PENDING = "PENDING"


def _now(clock: Optional[Clock]) -> dt.datetime:
    return crud.as_utc((clock or crud.utcnow)())


def _require(actor: UserOut, action: Action, message: str) -> None:
    if not is_allowed(actor.role, action):
        raise PermissionDenied(message)


def record_sale(db: Session, actor: UserOut, *, product_id: int, quantity: int,
                clock: Optional[Clock] = None) -> Sale:
    """Ring up `quantity` units of a product at the counter.

    Units held by customers' active cart items are not available here either.
    """
    _require(actor, Action.PROCESS_SALES, "Not enough permissions to process sales")
    if quantity <= 0:
        raise ValueError("quantity must be > 0")
    cashier = crud.get_user(db, actor.id)
    if cashier is None:
        raise NotFound(f"User with id {actor.id} not found")

    now = _now(clock)
    try:
        CartHoldManager(db, clock=clock).ensure_available(product_id, quantity, now=now)
        if not crud.try_decrease_stock(db, product_id, quantity):
            raise InsufficientStock(f"Insufficient stock for product {product_id}. Requested: {quantity}")
        product = crud.get_product(db, product_id)
        sale = crud.add_sale(db, product=product, quantity=quantity, cashier=cashier, created_at=now)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(sale)
    logger.info("Sale %s: %s x %s by %s", sale.id, sale.quantity, sale.product_name, cashier.username)
    return sale


def void_sale(db: Session, actor: UserOut, sale_id: int) -> SaleOut:
    """Delete a sale entered by mistake and put its units back on the shelf."""
    _require(actor, Action.MODIFY_SALES, "Not enough permissions to modify sales")
    sale = crud.get_sale(db, sale_id)
    if sale is None:
        raise NotFound(f"Sale with id {sale_id} not found")
    if sale.is_returned:
        raise IllegalTransition(f"Sale {sale_id} was returned and cannot be voided")

    # Serialize before the row is gone
    voided = SaleOut.model_validate(sale)
    try:
        if not crud.increase_stock(db, sale.product_id, sale.quantity):
            logger.warning("Voiding sale %s: product %s no longer exists", sale_id, sale.product_id)
        crud.delete_sale(db, sale)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Sale %s voided by %s", sale_id, actor.username)
    return voided


def process_return(db: Session, actor: UserOut, *, sale_id: int, reason: str,
                   clock: Optional[Clock] = None) -> SaleReturn:
    """Take back a sale. Its units are restocked and a refund awaits approval."""
    _require(actor, Action.PROCESS_RETURNS, "Not enough permissions to process returns")
    reason = (reason or "").strip()
    if not reason:
        raise ValueError("reason_required")
    processor = crud.get_user(db, actor.id)
    if processor is None:
        raise NotFound(f"User with id {actor.id} not found")
    sale = crud.get_sale(db, sale_id)
    if sale is None:
        raise NotFound(f"Sale with id {sale_id} not found")

    try:
        # Compare-and-set, so two clerks cannot return the same sale twice
        if not crud.mark_sale_returned(db, sale_id):
            raise IllegalTransition(f"Sale {sale_id} was already returned")
        if not crud.increase_stock(db, sale.product_id, sale.quantity):
            logger.warning("Return of sale %s: product %s no longer exists", sale_id, sale.product_id)
        entry = crud.add_sale_return(
            db, sale=sale, reason=reason, processed_by=processor, created_at=_now(clock),
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(entry)
    logger.info("Return %s for sale %s processed by %s", entry.id, sale_id, processor.username)
    return entry


def approve_refund(db: Session, actor: UserOut, return_id: int,
                   clock: Optional[Clock] = None) -> SaleReturn:
    """Approve the refund of a return. Approving twice is a no-op."""
    _require(actor, Action.APPROVE_REFUNDS, "Not enough permissions to approve refunds")
    entry = crud.get_sale_return(db, return_id)
    if entry is None:
        raise NotFound(f"Return with id {return_id} not found")

    if entry.status == PENDING:
        if crud.approve_sale_return_if_pending(
            db, return_id, approved_by_id=actor.id, approved_at=_now(clock),
        ):
            logger.info("Refund for return %s approved by %s", return_id, actor.username)
    db.refresh(entry)
    return entry


def sales_report(db: Session, *, start: Optional[dt.datetime] = None,
                 end: Optional[dt.datetime] = None) -> SalesReport:
    """Totals over [start, end). Returned sales are left out of the sales figures."""
    sales_count, sales_amount = crud.get_sales_totals(db, start=start, end=end)
    returns_count, refund_amount = crud.get_returns_totals(db, start=start, end=end)
    return SalesReport(
        start=start,
        end=end,
        sales_count=sales_count,
        sales_amount=sales_amount,
        returns_count=returns_count,
        refund_amount=refund_amount,
    )
