"""Tests for cart items as time-boxed stock holds."""

import datetime as dt

import pytest

from conftest import FakeClock, T0, make_product, make_user, put_in_cart
from lazstore import crud
from lazstore.cart_holds import CartHoldManager
from lazstore.errors import InsufficientStock, NotFound
from lazstore.models import CartItem

FIVE_MINUTES = dt.timedelta(minutes=5)


@pytest.fixture
def customer(db):
    return make_user(db, "jane")


@pytest.fixture
def product(db):
    return make_product(db, quantity=10)


@pytest.fixture
def manager(db, clock):
    return CartHoldManager(db, clock=clock)


def expiry_of(item):
    return crud.as_utc(item.stock_hold_expiry)


def test_add_hold_sets_expiry(manager, customer, product, clock):
    item = manager.add_hold(customer.id, product.id, 2)

    assert item.quantity == 2
    assert item.user_id == customer.id
    assert expiry_of(item) == clock.now + FIVE_MINUTES
    assert crud.as_utc(item.added_at) == clock.now


def test_add_hold_rejects_non_positive_quantity(manager, customer, product):
    with pytest.raises(ValueError):
        manager.add_hold(customer.id, product.id, 0)


def test_add_hold_for_missing_product(manager, customer):
    with pytest.raises(NotFound):
        manager.add_hold(customer.id, 999, 1)


def test_adding_same_product_merges_and_restarts_hold(manager, customer, product, clock):
    first = manager.add_hold(customer.id, product.id, 2)
    clock.advance(minutes=3)
    second = manager.add_hold(customer.id, product.id, 3)

    assert second.id == first.id
    assert second.quantity == 5
    assert expiry_of(second) == clock.now + FIVE_MINUTES
    assert len(manager.list_for_user(customer.id)) == 1


def test_holds_of_other_customers_reduce_availability(db, manager, customer, product):
    other = make_user(db, "bob")
    manager.add_hold(other.id, product.id, 8)

    with pytest.raises(InsufficientStock):
        manager.add_hold(customer.id, product.id, 3)
    assert manager.add_hold(customer.id, product.id, 2).quantity == 2


def test_expired_holds_do_not_count(db, manager, customer, product, clock):
    other = make_user(db, "bob")
    manager.add_hold(other.id, product.id, 10)
    clock.advance(minutes=5)

    item = manager.add_hold(customer.id, product.id, 4)
    assert item.quantity == 4


def test_sweep_before_expiry_keeps_hold(manager, customer, product, clock):
    item = manager.add_hold(customer.id, product.id, 1)
    assert manager.sweep_expired(clock.now + dt.timedelta(minutes=4, seconds=59)) == []
    assert [i.id for i in manager.list_for_user(customer.id)] == [item.id]


def test_sweep_at_or_after_expiry_removes_exactly_that_hold(db, manager, customer, product, clock):
    old = manager.add_hold(customer.id, product.id, 1)
    clock.advance(minutes=2)
    other_product = make_product(db, name="Wiper", quantity=3)
    fresh = manager.add_hold(customer.id, other_product.id, 1)

    removed = manager.sweep_expired(expiry_of(old))

    assert removed == [old.id]
    assert [i.id for i in manager.list_for_user(customer.id)] == [fresh.id]


def test_sweep_defaults_to_clock(manager, customer, product, clock):
    item = manager.add_hold(customer.id, product.id, 1)
    clock.advance(minutes=6)
    assert manager.sweep_expired() == [item.id]


def test_extend_hold_resets_expiry(manager, customer, product, clock):
    item = manager.add_hold(customer.id, product.id, 1)
    clock.advance(minutes=4)

    extended = manager.extend_hold(item.id)

    assert expiry_of(extended) == clock.now + FIVE_MINUTES
    assert manager.sweep_expired(clock.now + dt.timedelta(minutes=2)) == []


def test_extend_lapsed_hold_rechecks_stock(db, manager, customer, product, clock):
    item = manager.add_hold(customer.id, product.id, 6)
    clock.advance(minutes=6)
    other = make_user(db, "bob")
    manager.add_hold(other.id, product.id, 7)

    with pytest.raises(InsufficientStock):
        manager.extend_hold(item.id)


def test_extend_missing_item(manager):
    with pytest.raises(NotFound):
        manager.extend_hold(12345)


def test_set_quantity_zero_removes_item(manager, customer, product):
    item = manager.add_hold(customer.id, product.id, 2)
    assert manager.set_quantity(item.id, 0) is None
    assert manager.list_for_user(customer.id) == []


def test_set_negative_quantity_removes_item(manager, customer, product):
    item = manager.add_hold(customer.id, product.id, 2)
    assert manager.set_quantity(item.id, -1) is None
    assert manager.list_for_user(customer.id) == []


def test_set_quantity_keeps_expiry(manager, customer, product, clock):
    item = manager.add_hold(customer.id, product.id, 1)
    expiry = expiry_of(item)
    clock.advance(minutes=2)

    updated = manager.set_quantity(item.id, 3)

    assert updated.quantity == 3
    assert expiry_of(updated) == expiry


def test_set_quantity_beyond_stock(manager, customer, product):
    item = manager.add_hold(customer.id, product.id, 1)
    with pytest.raises(InsufficientStock):
        manager.set_quantity(item.id, 11)


def test_sweep_isolates_failures(db, manager, customer, product, clock, monkeypatch):
    first = manager.add_hold(customer.id, product.id, 1)
    second_product = make_product(db, name="Filter", quantity=5)
    second = manager.add_hold(customer.id, second_product.id, 1)
    clock.advance(minutes=10)

    real_delete = db.delete

    def flaky_delete(obj):
        if isinstance(obj, CartItem) and obj.id == first.id:
            raise RuntimeError("disk on fire")
        return real_delete(obj)

    monkeypatch.setattr(db, "delete", flaky_delete)

    assert manager.sweep_expired() == [second.id]
    assert [i.id for i in manager.list_for_user(customer.id)] == [first.id]


def test_clear(manager, customer, product, db):
    manager.add_hold(customer.id, product.id, 1)
    manager.add_hold(customer.id, make_product(db, name="Horn", quantity=2).id, 1)
    assert manager.clear(customer.id) == 2
    assert manager.list_for_user(customer.id) == []


def test_stock_checks_lock_the_product_row(db, manager, customer, product, clock, monkeypatch):
    locked = []
    get_for_update = crud.get_product_for_update

    def recording(session, product_id):
        locked.append(product_id)
        return get_for_update(session, product_id)

    monkeypatch.setattr(crud, "get_product_for_update", recording)

    item = manager.add_hold(customer.id, product.id, 1)
    manager.set_quantity(item.id, 2)
    clock.advance(minutes=6)
    manager.extend_hold(item.id)

    assert locked == [product.id, product.id, product.id]


def test_held_quantity_counts_active_holds_only(db, customer, product):
    bob = make_user(db, "bob")
    mine = put_in_cart(db, customer.id, product.id, 2)
    put_in_cart(db, bob.id, product.id, 3)
    put_in_cart(db, bob.id, make_product(db, name="Horn").id, 4)
    put_in_cart(db, bob.id, product.id, 1, expiry=T0)

    assert crud.get_held_quantity(db, product.id, now=T0) == 5
    assert crud.get_held_quantity(db, product.id, now=T0, exclude_item_id=mine.id) == 3
    assert crud.get_held_quantity(db, product.id, now=T0, exclude_user_id=bob.id) == 2
    assert crud.get_held_quantity(db, product.id, now=T0 + FIVE_MINUTES) == 0


def test_expiry_is_stored_in_utc(db, customer, product):
    berlin = dt.timezone(dt.timedelta(hours=2))
    manager = CartHoldManager(db, clock=FakeClock(T0.astimezone(berlin)))

    item = manager.add_hold(customer.id, product.id, 1)

    assert expiry_of(item) == T0 + FIVE_MINUTES
    assert crud.get_expired_cart_item_ids(db, T0 + dt.timedelta(minutes=4)) == []
    assert crud.get_expired_cart_item_ids(db, (T0 + FIVE_MINUTES).astimezone(berlin)) == [item.id]
