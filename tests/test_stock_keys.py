"""Tests for stock keys, restocking and stock levels."""

from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import make_product
from keyshop import inventory, models
from keyshop.errors import KeyNotAvailable, ProductNotFound, StockRaceLost


def make_order(db, user, order_number, *product_ids):
    order = models.Order(
        user_id=user.id,
        order_number=order_number,
        status="completed",
        subtotal=Decimal("10.00"),
        total=Decimal("10.80"),
        tax=Decimal("0.80"),
        payment_status="paid",
        billing_email=user.email,
        billing_name="Test User",
    )
    for product_id in product_ids:
        order.items.append(
            models.OrderItem(product_id=product_id, quantity=1, price=Decimal("10.00"), subtotal=Decimal("10.00"))
        )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def make_key(db, product_id, game_key, status="available"):
    key = models.StockKey(product_id=product_id, game_key=game_key, status=status)
    db.add(key)
    db.commit()
    db.refresh(key)
    return key


@pytest.fixture
def order(db, customer, product):
    return make_order(db, customer, "GK-1000-AAAAAA", product.id)


class TestAdminAccess:
    def test_requires_token(self, client):
        assert client.get("/admin/stock-keys").status_code == 401

    def test_rejects_customers(self, client, customer_headers):
        response = client.get("/admin/stock-keys", headers=customer_headers)
        assert response.status_code == 403

    def test_rejects_invalid_token(self, client):
        response = client.get("/admin/stock-keys", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401


class TestCreateStockKey:
    def test_create(self, client, admin_headers, product):
        response = client.post(
            "/admin/stock-keys",
            json={"product_id": product.id, "game_key": "  AAAA-BBBB-CCCC  ", "notes": "Steam"},
            headers=admin_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["game_key"] == "AAAA-BBBB-CCCC"
        assert data["status"] == "available"
        assert data["order_id"] is None
        assert data["notes"] == "Steam"

    def test_duplicate_key(self, client, db, admin_headers, product):
        make_key(db, product.id, "AAAA-BBBB-CCCC")

        response = client.post(
            "/admin/stock-keys",
            json={"product_id": product.id, "game_key": "AAAA-BBBB-CCCC"},
            headers=admin_headers,
        )

        assert response.status_code == 409
        assert response.json()["error"] == "This game key already exists"

    def test_unknown_product(self, client, admin_headers):
        response = client.post(
            "/admin/stock-keys", json={"product_id": 404, "game_key": "ZZZZ"}, headers=admin_headers
        )
        assert response.status_code == 404

    def test_blank_key(self, client, admin_headers, product):
        response = client.post(
            "/admin/stock-keys", json={"product_id": product.id, "game_key": "   "}, headers=admin_headers
        )
        assert response.status_code == 400


class TestBulkCreateStockKeys:
    def test_skips_duplicates(self, client, db, admin_headers, product):
        make_key(db, product.id, "KEY-1")

        response = client.post(
            "/admin/stock-keys/bulk",
            json={"product_id": product.id, "game_keys": ["KEY-1", "KEY-2", "KEY-2", " ", " KEY-3 "]},
            headers=admin_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["message"] == "2 keys added successfully"
        assert sorted(k["game_key"] for k in data["created"]) == ["KEY-2", "KEY-3"]

    def test_all_duplicates(self, client, db, admin_headers, product):
        make_key(db, product.id, "KEY-1")

        response = client.post(
            "/admin/stock-keys/bulk", json={"product_id": product.id, "game_keys": ["KEY-1"]}, headers=admin_headers
        )

        assert response.status_code == 201
        assert response.json()["created"] == []

    def test_unknown_product(self, client, admin_headers):
        response = client.post(
            "/admin/stock-keys/bulk", json={"product_id": 404, "game_keys": ["KEY-1"]}, headers=admin_headers
        )
        assert response.status_code == 404


class TestListStockKeys:
    def test_filters_and_paginates(self, client, db, admin_headers, product):
        other = make_product(db, "Other Game", "5.00", 10)
        for i in range(3):
            make_key(db, product.id, f"P1-{i}")
        make_key(db, product.id, "P1-RESERVED", status="reserved")
        make_key(db, other.id, "P2-0")

        response = client.get(
            "/admin/stock-keys",
            params={"product_id": product.id, "status": "available", "limit": 2},
            headers=admin_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert len(data["items"]) == 2
        assert all(k["product_id"] == product.id for k in data["items"])

    def test_rejects_unknown_status(self, client, admin_headers):
        response = client.get("/admin/stock-keys", params={"status": "lost"}, headers=admin_headers)
        assert response.status_code == 400

    def test_availability(self, client, db, admin_headers, product):
        make_key(db, product.id, "A-1")
        make_key(db, product.id, "A-2")
        make_key(db, product.id, "S-1", status="sold")

        response = client.get(
            "/admin/stock-keys/availability", params={"product_id": product.id}, headers=admin_headers
        )

        assert response.json() == {"available": 2}


class TestAssignStockKey:
    def test_assign_by_order_id(self, client, db, admin_headers, product, order):
        key = make_key(db, product.id, "SELL-ME")

        response = client.put(
            f"/admin/stock-keys/{key.id}/assign", json={"order_id": order.id}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "sold"
        assert data["order_id"] == order.id
        assert data["order_number"] == order.order_number
        assert data["assigned_at"] is not None

    def test_assign_by_order_number(self, client, db, admin_headers, product, order):
        key = make_key(db, product.id, "SELL-ME")

        response = client.put(
            f"/admin/stock-keys/{key.id}/assign",
            json={"order_number": order.order_number},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["order_id"] == order.id

    def test_unknown_order_id_falls_back_to_number(self, client, db, admin_headers, product, order):
        key = make_key(db, product.id, "SELL-ME")

        response = client.put(
            f"/admin/stock-keys/{key.id}/assign",
            json={"order_id": 9999, "order_number": order.order_number},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["order_id"] == order.id

    def test_second_assignment_conflicts(self, client, db, admin_headers, customer, product, order):
        key = make_key(db, product.id, "SELL-ME")
        other_order = make_order(db, customer, "GK-2000-BBBBBB", product.id)

        first = client.put(f"/admin/stock-keys/{key.id}/assign", json={"order_id": order.id}, headers=admin_headers)
        second = client.put(
            f"/admin/stock-keys/{key.id}/assign", json={"order_id": other_order.id}, headers=admin_headers
        )

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.json()["error"] == "Cannot assign key with status: sold"
        db.expire_all()
        assert db.get(models.StockKey, key.id).order_id == order.id

    def test_reserved_key_conflicts(self, client, db, admin_headers, product, order):
        key = make_key(db, product.id, "HELD", status="reserved")

        response = client.put(f"/admin/stock-keys/{key.id}/assign", json={"order_id": order.id}, headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["status"] == "reserved"

    def test_product_mismatch(self, client, db, admin_headers, customer):
        game = make_product(db, "Game Five", "20.00", 10)
        other = make_product(db, "Game Seven", "20.00", 10)
        key = make_key(db, game.id, "WRONG-GAME")
        order = make_order(db, customer, "GK-3000-CCCCCC", other.id)

        response = client.put(f"/admin/stock-keys/{key.id}/assign", json={"order_id": order.id}, headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["productId"] == game.id
        db.expire_all()
        key = db.get(models.StockKey, key.id)
        assert key.status == "available"
        assert key.order_id is None

    def test_order_not_found(self, client, db, admin_headers, product):
        key = make_key(db, product.id, "SELL-ME")

        response = client.put(f"/admin/stock-keys/{key.id}/assign", json={"order_id": 9999}, headers=admin_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "Order not found"

    def test_order_reference_required(self, client, db, admin_headers, product):
        key = make_key(db, product.id, "SELL-ME")

        response = client.put(f"/admin/stock-keys/{key.id}/assign", json={}, headers=admin_headers)

        assert response.status_code == 400

    def test_key_not_found(self, client, admin_headers, order):
        response = client.put("/admin/stock-keys/9999/assign", json={"order_id": order.id}, headers=admin_headers)
        assert response.status_code == 404

    def test_key_sold_between_check_and_update(self, db, session_factory, customer, product, order, monkeypatch):
        key_id = make_key(db, product.id, "CONTESTED").id
        rival = make_order(db, customer, "GK-4000-DDDDDD", product.id)
        rival_id, rival_number = rival.id, rival.order_number
        order_id = order.id
        resolve_order = inventory.resolve_order

        def resolve_then_sell_elsewhere(session, target_id, target_number):
            target = resolve_order(session, target_id, target_number)
            other = session_factory()
            try:
                other.execute(
                    update(models.StockKey)
                    .where(models.StockKey.id == key_id)
                    .values(status="sold", order_id=rival_id, order_number=rival_number)
                )
                other.commit()
            finally:
                other.close()
            return target

        monkeypatch.setattr(inventory, "resolve_order", resolve_then_sell_elsewhere)

        with pytest.raises(KeyNotAvailable) as exc_info:
            inventory.assign_key(db, key_id, order_id=order_id)

        assert exc_info.value.status == "sold"
        db.expire_all()
        key = db.get(models.StockKey, key_id)
        assert key.order_id == rival_id
        assert key.order_number == rival_number


class TestUpdateStockKey:
    def test_reserve_and_release(self, client, db, admin_headers, product):
        key = make_key(db, product.id, "HOLD-ME")

        reserved = client.put(f"/admin/stock-keys/{key.id}", json={"status": "reserved"}, headers=admin_headers)
        released = client.put(f"/admin/stock-keys/{key.id}", json={"status": "available"}, headers=admin_headers)

        assert reserved.json()["status"] == "reserved"
        assert released.json()["status"] == "available"

    def test_cannot_mark_sold_by_hand(self, client, db, admin_headers, product):
        key = make_key(db, product.id, "HOLD-ME")

        response = client.put(f"/admin/stock-keys/{key.id}", json={"status": "sold"}, headers=admin_headers)

        assert response.status_code == 400
        db.expire_all()
        assert db.get(models.StockKey, key.id).status == "available"

    def test_sold_key_keeps_status(self, client, db, admin_headers, product):
        key = make_key(db, product.id, "GONE", status="sold")

        response = client.put(f"/admin/stock-keys/{key.id}", json={"status": "available"}, headers=admin_headers)

        assert response.status_code == 400

    def test_edit_key_and_notes(self, client, db, admin_headers, product):
        key = make_key(db, product.id, "TYPO-KEY")

        response = client.put(
            f"/admin/stock-keys/{key.id}", json={"game_key": "FIXED-KEY", "notes": "re-typed"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["game_key"] == "FIXED-KEY"
        assert response.json()["notes"] == "re-typed"

    def test_duplicate_key_value(self, client, db, admin_headers, product):
        make_key(db, product.id, "TAKEN")
        key = make_key(db, product.id, "MINE")

        response = client.put(f"/admin/stock-keys/{key.id}", json={"game_key": "TAKEN"}, headers=admin_headers)

        assert response.status_code == 409

    def test_not_found(self, client, admin_headers):
        response = client.put("/admin/stock-keys/9999", json={"notes": "x"}, headers=admin_headers)
        assert response.status_code == 404


class TestDeleteStockKey:
    def test_delete(self, client, db, admin_headers, product):
        key_id = make_key(db, product.id, "DROP-ME").id

        response = client.delete(f"/admin/stock-keys/{key_id}", headers=admin_headers)

        assert response.status_code == 200
        assert response.json() == {"message": "Stock key deleted successfully"}
        db.expunge_all()
        assert db.get(models.StockKey, key_id) is None

    def test_cannot_delete_sold_key(self, client, db, admin_headers, product):
        key = make_key(db, product.id, "SOLD-KEY", status="sold")

        response = client.delete(f"/admin/stock-keys/{key.id}", headers=admin_headers)

        assert response.status_code == 400
        assert response.json()["error"] == "Cannot delete a sold key"

    def test_not_found(self, client, admin_headers):
        assert client.delete("/admin/stock-keys/9999", headers=admin_headers).status_code == 404


class TestRestock:
    def test_restock(self, client, admin_headers, product):
        response = client.post(
            f"/admin/products/{product.id}/restock", json={"quantity": 25}, headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json() == {"id": product.id, "stock": 125}

    def test_quantity_must_be_positive(self, client, admin_headers, product):
        response = client.post(f"/admin/products/{product.id}/restock", json={"quantity": 0}, headers=admin_headers)
        assert response.status_code == 400

    def test_unknown_product(self, client, admin_headers):
        response = client.post("/admin/products/9999/restock", json={"quantity": 1}, headers=admin_headers)
        assert response.status_code == 404

    def test_customers_cannot_restock(self, client, customer_headers, product):
        response = client.post(
            f"/admin/products/{product.id}/restock", json={"quantity": 1}, headers=customer_headers
        )
        assert response.status_code == 403


class TestStockLevels:
    def test_get_stock(self, db, product):
        assert inventory.get_stock(db, product.id) == 100

    def test_get_stock_unknown_product(self, db):
        with pytest.raises(ProductNotFound):
            inventory.get_stock(db, 9999)

    def test_decrement_refuses_to_go_negative(self, db):
        product = make_product(db, "Two Left", "5.00", 2)

        with pytest.raises(StockRaceLost) as exc_info:
            inventory.decrement_stock(db, product.id, 3)
        db.rollback()

        assert exc_info.value.available == 2
        assert inventory.get_stock(db, product.id) == 2
