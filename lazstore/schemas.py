from pydantic import BaseModel, ConfigDict, EmailStr, Field
from decimal import Decimal
from typing import Optional, List
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    CUSTOMER = "CUSTOMER"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"

    @property
    def display_name(self) -> str:
        return STATUS_DISPLAY_NAMES[self]


STATUS_DISPLAY_NAMES = {
    OrderStatus.PENDING: "Pending Payment",
    OrderStatus.CONFIRMED: "Order Confirmed",
    OrderStatus.PROCESSING: "Processing",
    OrderStatus.SHIPPED: "Shipped",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
    OrderStatus.RETURNED: "Returned",
}


# -----------------------------
# Users
# -----------------------------

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    phone_number: Optional[str] = Field(None, max_length=30)
    address: Optional[str] = None


class UserOut(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    role: Role
    is_active: bool = True

    model_config = ConfigDict(from_attributes=True)


class RoleUpdate(BaseModel):
    role: Role


class DeviceTokenUpdate(BaseModel):
    device_token: str = Field(..., min_length=1, max_length=512)


class Token(BaseModel):
    access_token: str
    token_type: str


# -----------------------------
# Products
# -----------------------------

class ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    quantity: int = Field(..., ge=0)
    cost: Decimal = Field(..., ge=0)
    price: Decimal = Field(..., gt=0)
    shelf_location: Optional[str] = None
    image_url: Optional[str] = None


class ProductOut(ProductBase):
    id: int

    model_config = {"from_attributes": True}


class StockAdjustment(BaseModel):
    delta: int = Field(..., description="Units to add (positive) or remove (negative)")


# -----------------------------
# Cart
# -----------------------------

class CartItemCreate(BaseModel):
    product_id: int = Field(..., gt=0, description="Product ID")
    quantity: int = Field(..., gt=0, description="Product quantity")


class CartQuantityUpdate(BaseModel):
    # 0 or less removes the item
    quantity: int


class CartItemOut(BaseModel):
    id: int
    user_id: int
    product_id: int
    quantity: int
    added_at: datetime
    stock_hold_expiry: datetime

    model_config = {"from_attributes": True}


# -----------------------------
# Orders
# -----------------------------

class OrderItemOut(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: int
    customer_id: int
    customer_username: str
    total_amount: Decimal
    status: OrderStatus
    payment_method: str
    shipping_address: str
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class CheckoutRequest(BaseModel):
    payment_method: str = Field(..., min_length=1, max_length=50)
    shipping_address: str = Field(..., min_length=1)
    notes: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = Field(None, max_length=100)


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    total: int
    skip: int
    limit: int


class OrderStats(BaseModel):
    completed_orders: int
    completed_revenue: Decimal


class NotificationLogOut(BaseModel):
    id: int
    target: str
    title: str
    body: str
    status: str
    token_count: int
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# -----------------------------
# Sales and returns
# -----------------------------

class SaleCreate(BaseModel):
    product_id: int = Field(..., gt=0, description="Product ID")
    quantity: int = Field(..., gt=0, description="Units sold")


class SaleOut(BaseModel):
    id: int
    product_id: int
    product_name: str
    unit_price: Decimal
    quantity: int
    total_amount: Decimal
    cashier_id: int
    cashier_username: str
    is_returned: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ReturnCreate(BaseModel):
    sale_id: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)


class SaleReturnOut(BaseModel):
    id: int
    sale_id: int
    reason: str
    refund_amount: Decimal
    status: str
    processed_by_id: int
    approved_by_id: Optional[int] = None
    created_at: datetime
    approved_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SalesReport(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    sales_count: int
    sales_amount: Decimal
    returns_count: int
    refund_amount: Decimal


# -----------------------------
# Admin
# -----------------------------

class SystemSettings(BaseModel):
    cart_hold_minutes: int
    cart_sweep_interval_seconds: int
    cart_sweeper_enabled: bool
    low_stock_threshold: int
    access_token_expire_minutes: int
    publish_order_events: bool
    events_exchange: str


class DataBackup(BaseModel):
    generated_at: datetime
    users: List[UserOut]
    products: List[ProductOut]
    orders: List[OrderOut]
    sales: List[SaleOut]
    returns: List[SaleReturnOut]
