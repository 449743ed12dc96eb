"""Pytest fixtures for lazstore tests."""

import datetime as dt
import os
from decimal import Decimal

# Must be set before lazstore.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["PUBLISH_ORDER_EVENTS"] = "false"
os.environ["CART_SWEEPER_ENABLED"] = "false"
os.environ["LOW_STOCK_THRESHOLD"] = "5"
os.environ["CART_HOLD_MINUTES"] = "5"

import pytest
from fastapi.testclient import TestClient

from lazstore import crud
from lazstore.auth import create_access_token
from lazstore.database import SessionLocal, engine
from lazstore.events import OrderFeed
from lazstore.models import Base, CartItem, Product
from lazstore.schemas import OrderItemOut, OrderOut, OrderStatus, Role, UserOut

T0 = dt.datetime(2026, 10, 18, 12, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    def __init__(self, result=True):
        self.sent = []
        self.result = result

    def dispatch(self, db, intent):
        self.sent.append(intent)
        return self.result


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def feed():
    return OrderFeed()


def make_user(db, username, role=Role.CUSTOMER, device_token=None):
    user = crud.create_user(
        db,
        {
            "username": username,
            "email": f"{username}@example.com",
            "hashed_password": "not-a-real-hash",
            "role": role,
        },
    )
    if device_token:
        user = crud.set_device_token(db, user.id, device_token)
    return UserOut.model_validate(user)


def make_product(db, name="Brake Pad", quantity=10, price="25.00", cost="10.00"):
    return crud.create_product(
        db,
        {"name": name, "quantity": quantity, "price": Decimal(price), "cost": Decimal(cost)},
    )


def put_in_cart(db, user_id, product_id, quantity, expiry=None):
    now = T0
    item = CartItem(
        user_id=user_id,
        product_id=product_id,
        quantity=quantity,
        added_at=now,
        stock_hold_expiry=expiry or now + dt.timedelta(minutes=5),
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    return item


def product_quantity(db, product_id):
    db.expire_all()
    return db.query(Product).filter(Product.id == product_id).one().quantity


def make_order(status=OrderStatus.PENDING, items=((1, 2), (2, 3)), customer_id=7, tracking_number=None):
    """An OrderOut built in memory; items are (product_id, quantity) pairs."""
    lines = [
        OrderItemOut(
            product_id=pid,
            product_name=f"Product {pid}",
            quantity=qty,
            unit_price=Decimal("10.00"),
            line_total=Decimal("10.00") * qty,
        )
        for pid, qty in items
    ]
    return OrderOut(
        id=42,
        customer_id=customer_id,
        customer_username="jane",
        total_amount=sum((line.line_total for line in lines), Decimal("0")),
        status=status,
        payment_method="card",
        shipping_address="1 Main St",
        tracking_number=tracking_number,
        created_at=T0,
        updated_at=T0,
        items=lines,
    )


def auth_header(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.username})}"}


@pytest.fixture
def client(db, dispatcher):
    from lazstore.main import app
    from lazstore.notifications import get_dispatcher

    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
