"""End-to-end tests through the HTTP API."""

import pytest

from conftest import auth_header, make_product, make_user, product_quantity
from lazstore import crud
from lazstore.schemas import Role


@pytest.fixture
def admin(db):
    return make_user(db, "root", Role.ADMIN)


@pytest.fixture
def employee(db):
    return make_user(db, "eve", Role.EMPLOYEE)


@pytest.fixture
def customer(db):
    return make_user(db, "jane")


def test_health(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get("/").json()["status"] == "running"


def test_signup_and_login(client, db):
    response = client.post("/users/signup", json={
        "username": "newbie",
        "email": "newbie@example.com",
        "password": "s3cret-pass",
    })
    assert response.status_code == 201
    assert response.json()["role"] == "CUSTOMER"

    duplicate = client.post("/users/signup", json={
        "username": "newbie",
        "email": "other@example.com",
        "password": "s3cret-pass",
    })
    assert duplicate.status_code == 409

    bad = client.post("/users/login", data={"username": "newbie", "password": "wrong-pass"})
    assert bad.status_code == 401

    token = client.post("/users/login", data={"username": "newbie", "password": "s3cret-pass"}).json()
    me = client.get("/users/me", headers={"Authorization": f"Bearer {token['access_token']}"})
    assert me.json()["username"] == "newbie"


def test_requests_without_token_are_rejected(client, db):
    assert client.get("/products/").status_code in (401, 403)


def test_my_permissions(client, employee):
    body = client.get("/users/me/permissions", headers=auth_header(employee)).json()
    assert body["role"] == "EMPLOYEE"
    assert body["level"] == "Operations & Sales Access"
    assert "update_order_status" in body["allowed"]
    assert "delete_products" not in body["allowed"]


def test_product_permissions(client, customer, employee, admin):
    form = {"name": "Headlight", "quantity": "4", "price": "80.00", "cost": "40.00"}

    assert client.post("/products/", data=form, headers=auth_header(customer)).status_code == 403
    created = client.post("/products/", data=form, headers=auth_header(employee))
    assert created.status_code == 201
    product_id = created.json()["id"]

    assert client.post("/products/", data=form, headers=auth_header(employee)).status_code == 409
    assert client.get("/products/", headers=auth_header(customer)).json()[0]["name"] == "Headlight"

    assert client.delete(f"/products/{product_id}", headers=auth_header(employee)).status_code == 403
    assert client.delete(f"/products/{product_id}", headers=auth_header(admin)).status_code == 200
    assert client.get(f"/products/{product_id}", headers=auth_header(admin)).status_code == 404


def test_stock_adjustment(client, db, employee):
    product = make_product(db, quantity=3)
    headers = auth_header(employee)

    assert client.post(f"/products/{product.id}/stock", json={"delta": 2}, headers=headers).json()["quantity"] == 5
    assert client.post(f"/products/{product.id}/stock", json={"delta": -9}, headers=headers).status_code == 400
    assert product_quantity(db, product.id) == 5


def test_staff_have_no_cart(client, db, employee, admin, customer):
    product = make_product(db)
    body = {"product_id": product.id, "quantity": 1}

    assert client.post("/cart/items", json=body, headers=auth_header(employee)).status_code == 403
    assert client.get(f"/cart/users/{customer.id}", headers=auth_header(employee)).status_code == 403
    assert client.get(f"/cart/users/{customer.id}", headers=auth_header(admin)).status_code == 200


def test_cart_item_belongs_to_its_owner(client, db, customer):
    other = make_user(db, "bob")
    product = make_product(db)
    item = client.post("/cart/items", json={"product_id": product.id, "quantity": 1},
                       headers=auth_header(customer)).json()

    assert client.delete(f"/cart/items/{item['id']}", headers=auth_header(other)).status_code == 404
    assert client.get(f"/cart/users/{customer.id}", headers=auth_header(other)).status_code == 403


def test_cart_quantity_updates(client, db, customer):
    product = make_product(db, quantity=5)
    headers = auth_header(customer)
    item = client.post("/cart/items", json={"product_id": product.id, "quantity": 1}, headers=headers).json()

    assert client.put(f"/cart/items/{item['id']}", json={"quantity": 6}, headers=headers).status_code == 400
    assert client.put(f"/cart/items/{item['id']}", json={"quantity": 3}, headers=headers).json()["quantity"] == 3
    assert client.put(f"/cart/items/{item['id']}", json={"quantity": 0}, headers=headers).json() == {
        "removed": True, "id": item["id"],
    }
    assert client.get("/cart/", headers=headers).json() == []


def test_order_flow(client, db, customer, employee, admin, dispatcher):
    product = make_product(db, quantity=10, price="25.00")
    headers = auth_header(customer)

    added = client.post("/cart/items", json={"product_id": product.id, "quantity": 3}, headers=headers)
    assert added.status_code == 201

    placed = client.post("/orders/checkout", json={
        "payment_method": "card",
        "shipping_address": "1 Main St",
    }, headers=headers)
    assert placed.status_code == 201
    order = placed.json()
    assert order["status"] == "PENDING"
    assert order["total_amount"] in ("75.00", 75.0, "75.0")
    assert product_quantity(db, product.id) == 7
    assert [n.target_role for n in dispatcher.sent] == [Role.ADMIN, Role.EMPLOYEE]

    assert client.post("/orders/checkout", json={
        "payment_method": "card", "shipping_address": "1 Main St",
    }, headers=headers).status_code == 400

    staff = auth_header(employee)
    url = f"/orders/{order['id']}/status"
    for step in ("CONFIRMED", "PROCESSING"):
        assert client.patch(url, json={"status": step}, headers=staff).json()["status"] == step
    shipped = client.patch(url, json={"status": "SHIPPED", "tracking_number": "TRK-7"}, headers=staff).json()
    assert shipped["tracking_number"] == "TRK-7"

    assert client.patch(url, json={"status": "PENDING"}, headers=staff).status_code == 409
    assert client.patch(url, json={"status": "DELIVERED"}, headers=headers).status_code == 403

    before = len(dispatcher.sent)
    assert client.patch(url, json={"status": "SHIPPED"}, headers=staff).status_code == 200
    assert len(dispatcher.sent) == before

    assert client.patch(url, json={"status": "CANCELLED"}, headers=auth_header(admin)).json()["status"] == "CANCELLED"
    assert product_quantity(db, product.id) == 10

    mine = client.get("/orders/me", headers=headers).json()
    assert mine["total"] == 1
    assert mine["orders"][0]["status"] == "CANCELLED"


def test_customers_only_see_their_own_orders(client, db, customer, employee):
    product = make_product(db)
    headers = auth_header(customer)
    client.post("/cart/items", json={"product_id": product.id, "quantity": 1}, headers=headers)
    order = client.post("/orders/checkout", json={
        "payment_method": "card", "shipping_address": "1 Main St",
    }, headers=headers).json()

    other = make_user(db, "bob")
    assert client.get(f"/orders/{order['id']}", headers=auth_header(other)).status_code == 404
    assert client.get(f"/orders/{order['id']}", headers=headers).status_code == 200
    assert client.get(f"/orders/{order['id']}", headers=auth_header(employee)).status_code == 200
    assert client.get("/orders/", headers=headers).status_code == 403
    assert client.get("/orders/", headers=auth_header(employee)).json()["total"] == 1


def test_missing_order_status_update(client, employee):
    response = client.patch("/orders/999/status", json={"status": "CONFIRMED"}, headers=auth_header(employee))
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "not_found"


def test_admin_manages_staff(client, db, admin, customer):
    headers = auth_header(admin)
    created = client.post("/users/employees", json={
        "username": "worker",
        "email": "worker@example.com",
        "password": "s3cret-pass",
    }, headers=headers)
    assert created.status_code == 201
    assert created.json()["role"] == "EMPLOYEE"

    assert client.post("/users/employees", json={
        "username": "sneaky",
        "email": "sneaky@example.com",
        "password": "s3cret-pass",
    }, headers=auth_header(customer)).status_code == 403

    promoted = client.patch(f"/users/{customer.id}/role", json={"role": "EMPLOYEE"}, headers=headers)
    assert promoted.json()["role"] == "EMPLOYEE"

    assert client.patch(f"/users/{admin.id}/role", json={"role": "CUSTOMER"}, headers=headers).status_code == 400
    assert client.delete(f"/users/{admin.id}", headers=headers).status_code == 400

    roles = {u["username"]: u["role"] for u in client.get("/users/", headers=headers).json()}
    assert roles == {"root": "ADMIN", "jane": "EMPLOYEE", "worker": "EMPLOYEE"}


def test_deactivated_user_loses_access(client, db, admin, customer):
    customer_headers = auth_header(customer)
    assert client.get("/users/me", headers=customer_headers).status_code == 200

    deactivated = client.delete(f"/users/{customer.id}", headers=auth_header(admin))
    assert deactivated.json()["is_active"] is False

    assert client.get("/users/me", headers=customer_headers).status_code == 401
    assert crud.get_user(db, customer.id) is not None


def test_user_details_visibility(client, db, admin, customer):
    other = make_user(db, "bob")
    assert client.get(f"/users/{customer.id}", headers=auth_header(customer)).status_code == 200
    assert client.get(f"/users/{other.id}", headers=auth_header(customer)).status_code == 403
    assert client.get(f"/users/{other.id}", headers=auth_header(admin)).status_code == 200


def test_device_token_registration(client, db, customer):
    response = client.put("/users/me/device-token", json={"device_token": "tok-1"}, headers=auth_header(customer))
    assert response.status_code == 200
    assert crud.get_device_tokens(db, user_id=customer.id) == ["tok-1"]


def test_notification_logs_are_admin_only(client, db, admin, employee):
    crud.add_notification_log(db, target="ADMIN", title="t", body="b", status="sent", token_count=1)

    assert client.get("/notifications/logs", headers=auth_header(employee)).status_code == 403
    (entry,) = client.get("/notifications/logs", headers=auth_header(admin)).json()
    assert entry["status"] == "sent"


def test_counter_sales_and_returns(client, db, customer, employee, admin):
    product = make_product(db, quantity=6, price="20.00")
    staff = auth_header(employee)

    assert client.post("/sales/", json={"product_id": product.id, "quantity": 1},
                       headers=auth_header(customer)).status_code == 403
    sale = client.post("/sales/", json={"product_id": product.id, "quantity": 2}, headers=staff)
    assert sale.status_code == 201
    sale_id = sale.json()["id"]
    assert product_quantity(db, product.id) == 4
    assert client.post("/sales/", json={"product_id": product.id, "quantity": 9},
                       headers=staff).status_code == 400

    assert client.get("/sales/", headers=staff).status_code == 403
    (listed,) = client.get("/sales/", headers=auth_header(admin)).json()
    assert listed["cashier_username"] == "eve"

    assert client.post("/returns/", json={"sale_id": sale_id, "reason": "Scratched"},
                       headers=auth_header(customer)).status_code == 403
    returned = client.post("/returns/", json={"sale_id": sale_id, "reason": "Scratched"}, headers=staff)
    assert returned.status_code == 201
    assert product_quantity(db, product.id) == 6
    assert client.post("/returns/", json={"sale_id": sale_id, "reason": "Again"},
                       headers=staff).status_code == 409

    return_id = returned.json()["id"]
    assert client.post(f"/returns/{return_id}/approve", headers=staff).status_code == 403
    assert client.post(f"/returns/{return_id}/approve",
                       headers=auth_header(admin)).json()["status"] == "APPROVED"

    history = client.get("/returns/", params={"refund_status": "APPROVED"}, headers=staff).json()
    assert [r["reason"] for r in history] == ["Scratched"]
    assert client.get("/returns/", headers=auth_header(customer)).status_code == 403

    report = client.get("/sales/report", headers=auth_header(admin)).json()
    assert report["sales_count"] == 0
    assert report["returns_count"] == 1
    assert client.delete(f"/sales/{sale_id}", headers=auth_header(admin)).status_code == 409


def test_void_sale(client, db, employee, admin):
    product = make_product(db, quantity=3)
    sale_id = client.post("/sales/", json={"product_id": product.id, "quantity": 3},
                          headers=auth_header(employee)).json()["id"]

    assert client.delete(f"/sales/{sale_id}", headers=auth_header(employee)).status_code == 403
    assert client.delete(f"/sales/{sale_id}", headers=auth_header(admin)).status_code == 200
    assert client.get(f"/sales/{sale_id}", headers=auth_header(admin)).status_code == 404
    assert product_quantity(db, product.id) == 3


def test_order_queue_is_for_staff(client, db, customer, employee):
    product = make_product(db)
    headers = auth_header(customer)
    client.post("/cart/items", json={"product_id": product.id, "quantity": 1}, headers=headers)
    order = client.post("/orders/checkout", json={
        "payment_method": "card", "shipping_address": "1 Main St",
    }, headers=headers).json()

    assert client.get("/orders/queue", headers=headers).status_code == 403
    queue = client.get("/orders/queue", headers=auth_header(employee)).json()
    assert queue["total"] == 1
    assert queue["orders"][0]["id"] == order["id"]

    client.patch(f"/orders/{order['id']}/status", json={"status": "CANCELLED"}, headers=auth_header(employee))
    assert client.get("/orders/queue", headers=auth_header(employee)).json()["total"] == 0


def test_system_settings_are_admin_only(client, employee, admin):
    assert client.get("/admin/settings", headers=auth_header(employee)).status_code == 403
    settings = client.get("/admin/settings", headers=auth_header(admin)).json()
    assert settings["cart_hold_minutes"] == 5
    assert settings["low_stock_threshold"] == 5
    assert settings["cart_sweeper_enabled"] is False
    assert "secret_key" not in settings


def test_backup_export(client, db, customer, employee, admin):
    product = make_product(db)
    client.post("/sales/", json={"product_id": product.id, "quantity": 1}, headers=auth_header(employee))

    assert client.get("/admin/backup", headers=auth_header(employee)).status_code == 403
    backup = client.get("/admin/backup", headers=auth_header(admin)).json()

    assert {u["username"] for u in backup["users"]} == {"jane", "eve", "root"}
    assert all("hashed_password" not in u for u in backup["users"])
    assert [p["name"] for p in backup["products"]] == ["Brake Pad"]
    assert len(backup["sales"]) == 1
    assert backup["orders"] == []
    assert backup["returns"] == []
