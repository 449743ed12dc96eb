import datetime as dt
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from .models import (
    CartItem,
    NotificationLog,
    Order,
    OrderItem,
    Product,
    Sale,
    SaleReturn,
    User,
    as_utc,
    utcnow,
)
from .schemas import OrderStatus, Role


# -----------------------------
# Users
# -----------------------------

def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_username(db: Session, username: str) -> Optional[User]:
    return db.query(User).filter(User.username == username).first()


def get_users(db: Session, skip: int = 0, limit: int = 100, role: Optional[Role] = None) -> List[User]:
    query = db.query(User)
    if role is not None:
        query = query.filter(User.role == Role(role).value)
    return query.order_by(User.id).offset(skip).limit(limit).all()


def create_user(db: Session, user_data: dict) -> User:
    username = (user_data.get("username") or "").strip()
    if get_user_by_username(db, username):
        raise ValueError("duplicate_username")
    role = Role(user_data.get("role") or Role.CUSTOMER)
    db_user = User(**{**user_data, "username": username, "role": role.value})
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def set_user_role(db: Session, user_id: int, role: Role) -> Optional[User]:
    db_user = get_user(db, user_id)
    if not db_user:
        return None
    db_user.role = Role(role).value
    db.commit()
    db.refresh(db_user)
    return db_user


def deactivate_user(db: Session, user_id: int) -> Optional[User]:
    db_user = get_user(db, user_id)
    if not db_user:
        return None
    db_user.is_active = False
    db_user.device_token = None
    db.commit()
    db.refresh(db_user)
    return db_user


def set_device_token(db: Session, user_id: int, token: Optional[str]) -> Optional[User]:
    db_user = get_user(db, user_id)
    if not db_user:
        return None
    db_user.device_token = token
    db.commit()
    db.refresh(db_user)
    return db_user


def get_device_tokens(db: Session, *, user_id: Optional[int] = None, role: Optional[Role] = None) -> List[str]:
    query = db.query(User.device_token).filter(
        User.is_active.is_(True),
        User.device_token.isnot(None),
    )
    if user_id is not None:
        query = query.filter(User.id == user_id)
    elif role is not None:
        query = query.filter(User.role == Role(role).value)
    else:
        return []
    return [token for (token,) in query.all() if token]


# -----------------------------
# Products
# -----------------------------

def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def get_product_for_update(db: Session, product_id: int) -> Optional[Product]:
    """Load a product and lock its row until the transaction ends."""
    return (
        db.query(Product)
        .filter(Product.id == product_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def get_product_by_name(db: Session, name: str) -> Optional[Product]:
    normalized = (name or "").strip()
    if not normalized:
        return None
    return (
        db.query(Product)
        .filter(func.lower(Product.name) == normalized.lower())
        .first()
    )


def get_products(db: Session, skip: int = 0, limit: int = 100, search: Optional[str] = None) -> List[Product]:
    query = db.query(Product)
    if search:
        search_pattern = f"%{search}%"
        query = query.filter(
            or_(
                Product.name.ilike(search_pattern),
                Product.shelf_location.ilike(search_pattern),
            )
        )
    return query.order_by(Product.id).offset(skip).limit(limit).all()


def get_low_stock_products(db: Session, threshold: int) -> List[Product]:
    return (
        db.query(Product)
        .filter(Product.quantity <= threshold)
        .order_by(Product.quantity, Product.id)
        .all()
    )


def create_product(db: Session, product_data: dict) -> Product:
    # Enforce unique product name (case-insensitive)
    name = (product_data.get("name") or "").strip()
    if not name:
        raise ValueError("name_required")
    if get_product_by_name(db, name):
        raise ValueError("duplicate_product_name")

    db_product = Product(**{**product_data, "name": name})
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


def update_product(db: Session, product_id: int, update_data: dict) -> Optional[Product]:
    db_product = get_product(db, product_id)
    if not db_product:
        return None

    if update_data.get("name") is not None:
        new_name = str(update_data["name"]).strip()
        if not new_name:
            raise ValueError("name_required")
        existing = get_product_by_name(db, new_name)
        if existing and existing.id != product_id:
            raise ValueError("duplicate_product_name")
        update_data["name"] = new_name

    if update_data.get("quantity") is not None and int(update_data["quantity"]) < 0:
        raise ValueError("negative_quantity")

    for key, value in update_data.items():
        if value is not None:
            setattr(db_product, key, value)
    db.commit()
    db.refresh(db_product)
    return db_product


def delete_product(db: Session, product_id: int) -> Optional[Product]:
    db_product = get_product(db, product_id)
    if db_product:
        # Drop the holds on it as well; not every backend enforces the FK cascade
        db.query(CartItem).filter(CartItem.product_id == product_id).delete(synchronize_session=False)
        db.delete(db_product)
        db.commit()
    return db_product


def adjust_product_quantity(db: Session, product_id: int, delta: int) -> Optional[Product]:
    """Atomically add `delta` to a product's quantity.

    The update is a single conditional statement so concurrent adjustments
    never lose each other's writes. Returns None when the product does not
    exist; raises ValueError("insufficient_stock") when the result would be
    negative.
    """
    delta = int(delta)
    query = db.query(Product).filter(Product.id == product_id)
    if delta < 0:
        query = query.filter(Product.quantity >= -delta)
    updated = query.update(
        {Product.quantity: Product.quantity + delta},
        synchronize_session=False,
    )
    if not updated:
        db.rollback()
        if get_product(db, product_id) is None:
            return None
        raise ValueError("insufficient_stock")
    db.commit()
    product = get_product(db, product_id)
    db.refresh(product)
    return product


def try_decrease_stock(db: Session, product_id: int, quantity: int) -> bool:
    """Conditional decrement inside the caller's transaction (no commit)."""
    updated = (
        db.query(Product)
        .filter(Product.id == product_id, Product.quantity >= quantity)
        .update({Product.quantity: Product.quantity - quantity}, synchronize_session=False)
    )
    return bool(updated)


def increase_stock(db: Session, product_id: int, quantity: int) -> bool:
    """Add units inside the caller's transaction (no commit). False if the product is gone."""
    updated = (
        db.query(Product)
        .filter(Product.id == product_id)
        .update({Product.quantity: Product.quantity + quantity}, synchronize_session=False)
    )
    return bool(updated)


# -----------------------------
# Orders
# -----------------------------

def get_order(db: Session, order_id: int) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def get_orders(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    status: Optional[OrderStatus] = None,
) -> List[Order]:
    query = db.query(Order)
    if status is not None:
        query = query.filter(Order.status == OrderStatus(status).value)
    return query.order_by(Order.id.desc()).offset(skip).limit(limit).all()


def get_order_count(db: Session, status: Optional[OrderStatus] = None) -> int:
    query = db.query(Order)
    if status is not None:
        query = query.filter(Order.status == OrderStatus(status).value)
    return query.count()


def get_orders_by_customer(db: Session, customer_id: int, skip: int = 0, limit: int = 100) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.customer_id == customer_id)
        .order_by(Order.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_customer_order_count(db: Session, customer_id: int) -> int:
    return db.query(Order).filter(Order.customer_id == customer_id).count()


def add_order(db: Session, *, customer: User, items_data: List[dict], payment_method: str,
              shipping_address: str, notes: Optional[str] = None) -> Order:
    """Stage a PENDING order with its item snapshots. The caller commits.

    items_data: [{"product_id", "product_name", "quantity", "unit_price"}, ...]
    """
    now = utcnow()
    lines = []
    for item in items_data:
        unit_price = Decimal(str(item["unit_price"]))
        quantity = int(item["quantity"])
        lines.append(
            OrderItem(
                product_id=int(item["product_id"]),
                product_name=item["product_name"],
                quantity=quantity,
                unit_price=unit_price,
                line_total=unit_price * quantity,
            )
        )

    db_order = Order(
        customer_id=customer.id,
        customer_username=customer.username,
        total_amount=sum((line.line_total for line in lines), Decimal("0")),
        status=OrderStatus.PENDING.value,
        payment_method=payment_method,
        shipping_address=shipping_address,
        notes=notes,
        created_at=now,
        updated_at=now,
        items=lines,
    )
    db.add(db_order)
    db.flush()
    return db_order


def update_order_status_if(
    db: Session,
    order_id: int,
    *,
    expected_status: OrderStatus,
    new_status: OrderStatus,
    updated_at: dt.datetime,
    tracking_number: Optional[str] = None,
) -> bool:
    """Compare-and-set the status. False when someone else changed it first."""
    values = {
        Order.status: OrderStatus(new_status).value,
        Order.updated_at: updated_at,
    }
    if tracking_number is not None:
        values[Order.tracking_number] = tracking_number
    updated = (
        db.query(Order)
        .filter(Order.id == order_id, Order.status == OrderStatus(expected_status).value)
        .update(values, synchronize_session=False)
    )
    db.commit()
    return bool(updated)


OPEN_ORDER_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.CONFIRMED.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
)


def get_open_orders(db: Session, skip: int = 0, limit: int = 100) -> List[Order]:
    """Orders still moving through the lifecycle, oldest first."""
    return (
        db.query(Order)
        .filter(Order.status.in_(OPEN_ORDER_STATUSES))
        .order_by(Order.id)
        .offset(skip)
        .limit(limit)
        .all()
    )


def get_open_order_count(db: Session) -> int:
    return db.query(func.count(Order.id)).filter(Order.status.in_(OPEN_ORDER_STATUSES)).scalar()


def get_completed_order_stats(db: Session) -> tuple:
    completed = [OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value]
    count, revenue = (
        db.query(func.count(Order.id), func.coalesce(func.sum(Order.total_amount), 0))
        .filter(Order.status.in_(completed))
        .one()
    )
    return int(count or 0), Decimal(str(revenue or 0))


# -----------------------------
# Cart items
# -----------------------------

def get_cart_item(db: Session, cart_item_id: int) -> Optional[CartItem]:
    return db.query(CartItem).filter(CartItem.id == cart_item_id).first()


def get_cart_item_for(db: Session, user_id: int, product_id: int) -> Optional[CartItem]:
    return (
        db.query(CartItem)
        .filter(CartItem.user_id == user_id, CartItem.product_id == product_id)
        .first()
    )


def get_cart_items_by_user(db: Session, user_id: int) -> List[CartItem]:
    return db.query(CartItem).filter(CartItem.user_id == user_id).order_by(CartItem.id).all()


def get_expired_cart_item_ids(db: Session, now: dt.datetime) -> List[int]:
    rows = (
        db.query(CartItem.id)
        .filter(CartItem.stock_hold_expiry <= as_utc(now))
        .order_by(CartItem.id)
        .all()
    )
    return [item_id for (item_id,) in rows]


def get_held_quantity(db: Session, product_id: int, *, now: dt.datetime,
                      exclude_item_id: Optional[int] = None, exclude_user_id: Optional[int] = None) -> int:
    """Units of a product held by carts whose hold is still active at `now`."""
    query = db.query(func.coalesce(func.sum(CartItem.quantity), 0)).filter(
        CartItem.product_id == product_id,
        CartItem.stock_hold_expiry > as_utc(now),
    )
    if exclude_item_id is not None:
        query = query.filter(CartItem.id != exclude_item_id)
    if exclude_user_id is not None:
        query = query.filter(CartItem.user_id != exclude_user_id)
    return int(query.scalar() or 0)


def clear_cart(db: Session, user_id: int, *, commit: bool = True) -> int:
    deleted = db.query(CartItem).filter(CartItem.user_id == user_id).delete(synchronize_session=False)
    if commit:
        db.commit()
    return int(deleted or 0)


# -----------------------------
# Notification log
# -----------------------------

def add_notification_log(db: Session, *, target: str, title: str, body: str,
                         status: str, token_count: int = 0) -> NotificationLog:
    entry = NotificationLog(
        target=target,
        title=title,
        body=body,
        status=status,
        token_count=token_count,
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def get_notification_logs(db: Session, skip: int = 0, limit: int = 100) -> List[NotificationLog]:
    return db.query(NotificationLog).order_by(NotificationLog.id.desc()).offset(skip).limit(limit).all()


# -----------------------------
# Sales and returns
# -----------------------------

def add_sale(db: Session, *, product: Product, quantity: int, cashier: User,
             created_at: dt.datetime) -> Sale:
    """Stage a sale record. The caller commits."""
    unit_price = Decimal(str(product.price))
    sale = Sale(
        product_id=product.id,
        product_name=product.name,
        unit_price=unit_price,
        quantity=int(quantity),
        total_amount=unit_price * int(quantity),
        cashier_id=cashier.id,
        cashier_username=cashier.username,
        is_returned=False,
        created_at=created_at,
    )
    db.add(sale)
    db.flush()
    return sale


def get_sale(db: Session, sale_id: int) -> Optional[Sale]:
    return db.query(Sale).filter(Sale.id == sale_id).first()


def _in_range(query, column, start: Optional[dt.datetime], end: Optional[dt.datetime]):
    if start is not None:
        query = query.filter(column >= as_utc(start))
    if end is not None:
        query = query.filter(column < as_utc(end))
    return query


def get_sales(db: Session, *, start: Optional[dt.datetime] = None, end: Optional[dt.datetime] = None,
              cashier_id: Optional[int] = None, skip: int = 0, limit: int = 100) -> List[Sale]:
    query = _in_range(db.query(Sale), Sale.created_at, start, end)
    if cashier_id is not None:
        query = query.filter(Sale.cashier_id == cashier_id)
    return query.order_by(Sale.id.desc()).offset(skip).limit(limit).all()


def get_sales_totals(db: Session, *, start: Optional[dt.datetime] = None,
                     end: Optional[dt.datetime] = None) -> tuple:
    """(count, amount) of sales in the window that were not returned."""
    query = db.query(func.count(Sale.id), func.coalesce(func.sum(Sale.total_amount), 0)).filter(
        Sale.is_returned.is_(False),
    )
    count, amount = _in_range(query, Sale.created_at, start, end).one()
    return int(count or 0), Decimal(str(amount or 0))


def mark_sale_returned(db: Session, sale_id: int) -> bool:
    """Flag a sale as returned unless it already is. Does not commit."""
    updated = (
        db.query(Sale)
        .filter(Sale.id == sale_id, Sale.is_returned.is_(False))
        .update({Sale.is_returned: True}, synchronize_session=False)
    )
    return bool(updated)


def add_sale_return(db: Session, *, sale: Sale, reason: str, processed_by: User,
                    created_at: dt.datetime) -> SaleReturn:
    """Stage a return for `sale`. The caller commits."""
    entry = SaleReturn(
        sale_id=sale.id,
        reason=reason,
        refund_amount=sale.total_amount,
        status="PENDING",
        processed_by_id=processed_by.id,
        created_at=created_at,
    )
    db.add(entry)
    db.flush()
    return entry


def get_sale_return(db: Session, return_id: int) -> Optional[SaleReturn]:
    return db.query(SaleReturn).filter(SaleReturn.id == return_id).first()


def get_sale_returns(db: Session, *, start: Optional[dt.datetime] = None, end: Optional[dt.datetime] = None,
                     status: Optional[str] = None, skip: int = 0, limit: int = 100) -> List[SaleReturn]:
    query = _in_range(db.query(SaleReturn), SaleReturn.created_at, start, end)
    if status is not None:
        query = query.filter(SaleReturn.status == status)
    return query.order_by(SaleReturn.id.desc()).offset(skip).limit(limit).all()


def get_returns_totals(db: Session, *, start: Optional[dt.datetime] = None,
                       end: Optional[dt.datetime] = None) -> tuple:
    """(count, refund amount) of returns in the window."""
    query = db.query(func.count(SaleReturn.id), func.coalesce(func.sum(SaleReturn.refund_amount), 0))
    count, amount = _in_range(query, SaleReturn.created_at, start, end).one()
    return int(count or 0), Decimal(str(amount or 0))


def approve_sale_return_if_pending(db: Session, return_id: int, *, approved_by_id: int,
                                   approved_at: dt.datetime) -> bool:
    """Compare-and-set PENDING -> APPROVED. False when it was not pending."""
    updated = (
        db.query(SaleReturn)
        .filter(SaleReturn.id == return_id, SaleReturn.status == "PENDING")
        .update(
            {
                SaleReturn.status: "APPROVED",
                SaleReturn.approved_by_id: approved_by_id,
                SaleReturn.approved_at: as_utc(approved_at),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(updated)


def delete_sale(db: Session, sale: Sale) -> None:
    """Stage removal of a sale. The caller commits."""
    db.delete(sale)
