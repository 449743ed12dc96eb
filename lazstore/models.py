import datetime as dt
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship, validates
from sqlalchemy.sql import func

Base = declarative_base()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Normalize a datetime to an aware UTC value.

    Some backends (SQLite) hand back naive datetimes even for timezone-aware
    columns; those are stored in UTC, so naive means UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=True)
    phone_number = Column(String(30), nullable=True)
    address = Column(Text, nullable=True)
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="CUSTOMER", index=True)
    # Users are never deleted, only deactivated
    is_active = Column(Boolean, nullable=False, default=True)
    device_token = Column(String(512), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True, unique=True)
    quantity = Column(Integer, nullable=False, default=0)
    cost = Column(Numeric(10, 2), nullable=False, default=0)
    price = Column(Numeric(10, 2), nullable=False)
    shelf_location = Column(String(50), nullable=True)
    image_url = Column(String(512), nullable=True)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    customer_username = Column(String(50), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    payment_method = Column(String(50), nullable=False)
    shipping_address = Column(Text, nullable=False)
    tracking_number = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    """A line of an order. Copied from the product at checkout time and never edited."""

    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    # No FK: the line must survive deletion of the product
    product_id = Column(Integer, nullable=False, index=True)
    product_name = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class CartItem(Base):
    """A cart line. Its existence is a soft hold on the product's stock until stock_hold_expiry."""

    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    added_at = Column(DateTime(timezone=True), nullable=False)
    stock_hold_expiry = Column(DateTime(timezone=True), nullable=False, index=True)

    product = relationship("Product")

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_item_user_product"),
    )

    @validates("added_at", "stock_hold_expiry")
    def _store_utc(self, key, value):
        # Expiry filters run in SQL, so every stored value must be UTC
        return as_utc(value)


class Sale(Base):
    """An in-store sale rung up by staff. Product data is copied at sale time."""

    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, index=True)
    # No FK, like order lines
    product_id = Column(Integer, nullable=False, index=True)
    product_name = Column(String(100), nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    cashier_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    cashier_username = Column(String(50), nullable=False)
    is_returned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    returns = relationship("SaleReturn", back_populates="sale")

    @validates("created_at")
    def _store_utc(self, key, value):
        return as_utc(value)


class SaleReturn(Base):
    __tablename__ = "sale_returns"

    id = Column(Integer, primary_key=True, index=True)
    sale_id = Column(Integer, ForeignKey("sales.id"), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    refund_amount = Column(Numeric(12, 2), nullable=False)
    # PENDING until an admin approves the refund
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    processed_by_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    approved_by_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)

    sale = relationship("Sale", back_populates="returns")

    @validates("created_at", "approved_at")
    def _store_utc(self, key, value):
        return as_utc(value)


class NotificationLog(Base):
    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)
    target = Column(String(50), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    status = Column(String(20), nullable=False)
    token_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
