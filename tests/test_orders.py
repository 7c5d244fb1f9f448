from datetime import timedelta

import pytest
from bson import ObjectId
from fastapi import HTTPException

from database import utcnow
from orders import can_transition


@pytest.fixture
def shop(services, make_user, make_product):
    admin_id, admin_headers = make_user("admin")
    seller_id, seller_headers = make_user("seller")
    buyer_id, buyer_headers = make_user()
    product = make_product(seller_id, price=25.0, stock=10)
    return {
        "admin": (admin_id, admin_headers),
        "seller": (seller_id, seller_headers),
        "buyer": (buyer_id, buyer_headers),
        "product": product,
    }


def _place(client, headers, product, shipping_address, quantity=2, **extra):
    body = {
        "items": [{"product_id": str(product["_id"]), "quantity": quantity}],
        "shipping_address": shipping_address,
        "shipping_cost": 5,
        "tax": 2,
        **extra,
    }
    return client.post("/api/orders", json=body, headers=headers)


def _messages(services, user_id):
    return [n["message"] for n in services.notifications.find_all(user_id)]


def test_can_transition_table():
    assert can_transition("pending", "delivered")
    assert can_transition("pending", "pending")
    assert can_transition("processing", "cancelled")
    assert not can_transition("shipped", "cancelled")
    assert not can_transition("shipped", "processing")
    assert not can_transition("delivered", "delivered")
    assert not can_transition("cancelled", "pending")


def test_create_order_prices_from_catalogue(client, services, shop, shipping_address):
    buyer_id, headers = shop["buyer"]
    r = _place(client, headers, shop["product"], shipping_address)
    assert r.status_code == 201
    order = r.json()
    assert order["subtotal"] == 50
    assert order["total_amount"] == 57
    assert order["order_status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["user_id"] == buyer_id
    assert order["items"][0]["product_name"] == "Wireless Mouse"
    assert order["items"][0]["price"] == 25
    assert order["status_history"][0]["note"] == "Order placed"

    product = services.db["product"].find_one({"_id": shop["product"]["_id"]})
    assert product["stock"] == 8
    assert product["sold_count"] == 2


def test_create_order_uses_discount_price(client, make_product, shop, shipping_address):
    product = make_product(shop["seller"][0], price=40.0, discount_price=30.0)
    r = _place(client, shop["buyer"][1], product, shipping_address, quantity=1)
    assert r.json()["subtotal"] == 30


def test_create_order_fans_out(client, services, shop, shipping_address):
    buyer_id, headers = shop["buyer"]
    order_id = _place(client, headers, shop["product"], shipping_address).json()["id"]

    assert f"Order #{order_id} created successfully" in _messages(services, buyer_id)
    assert f"New order received! Order #{order_id} contains your products." in _messages(services, shop["seller"][0])
    assert f"New order #{order_id} placed by user." in _messages(services, shop["admin"][0])

    confirmations = [m for m in services.mail.outbox if m["subject"] == f"Order Confirmation - #{order_id}"]
    assert len(confirmations) == 1
    assert confirmations[0]["to"] == ["user3@example.com"]


def test_create_order_emits_event(client, services, shop, shipping_address):
    seen = []
    services.events.on("order.created", seen.append)
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    assert [p["order_id"] for p in seen] == [order_id]


def test_create_order_rejects_bad_items(client, services, shop, shipping_address):
    headers = shop["buyer"][1]
    r = _place(client, headers, shop["product"], shipping_address, quantity=11)
    assert r.status_code == 400
    assert r.json()["detail"] == "Insufficient stock for Wireless Mouse"

    missing = str(ObjectId())
    r = client.post("/api/orders", json={
        "items": [{"product_id": missing, "quantity": 1}],
        "shipping_address": shipping_address,
    }, headers=headers)
    assert r.status_code == 404
    assert r.json()["detail"] == f"Product not found: {missing}"

    r = client.post("/api/orders", json={"items": [], "shipping_address": shipping_address}, headers=headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Order must contain at least one item"
    assert services.db["order"].count_documents({}) == 0


def test_repeated_lines_are_checked_against_combined_quantity(client, services, make_product, shop, shipping_address):
    product = make_product(shop["seller"][0], title="Keyboard", stock=5)
    line = {"product_id": str(product["_id"]), "quantity": 3}
    r = client.post("/api/orders", json={"items": [line, line], "shipping_address": shipping_address}, headers=shop["buyer"][1])
    assert r.status_code == 400
    assert r.json()["detail"] == "Insufficient stock for Keyboard"

    stored = services.db["product"].find_one({"_id": product["_id"]})
    assert stored["stock"] == 5
    assert services.db["order"].count_documents({}) == 0

    line["quantity"] = 2
    r = client.post("/api/orders", json={"items": [line, line], "shipping_address": shipping_address}, headers=shop["buyer"][1])
    assert r.status_code == 201
    assert [i["quantity"] for i in r.json()["items"]] == [2, 2]
    stored = services.db["product"].find_one({"_id": product["_id"]})
    assert stored["stock"] == 1
    assert stored["sold_count"] == 4


def test_stock_reservation_is_all_or_nothing(services, make_product, shop):
    keyboard = make_product(shop["seller"][0], title="Keyboard", stock=5)
    mouse = shop["product"]
    # another order took the mice after the catalogue was read
    services.db["product"].update_one({"_id": mouse["_id"]}, {"$set": {"stock": 1}})
    catalogue = {keyboard["_id"]: keyboard, mouse["_id"]: mouse}

    with pytest.raises(HTTPException) as exc:
        services.orders._reserve_stock({keyboard["_id"]: 2, mouse["_id"]: 2}, catalogue)
    assert exc.value.status_code == 400
    assert exc.value.detail == "Insufficient stock for Wireless Mouse"

    stored = services.db["product"].find_one({"_id": keyboard["_id"]})
    assert stored["stock"] == 5
    assert stored["sold_count"] == 0
    assert services.db["product"].find_one({"_id": mouse["_id"]})["stock"] == 1


def test_create_order_applies_coupon(client, services, shop, shipping_address):
    now = utcnow()
    coupon = services.coupons.create({
        "code": "save10",
        "description": "10% off",
        "discount_type": "percentage",
        "discount_value": 10,
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=1),
    }, shop["admin"][0])

    order = _place(client, shop["buyer"][1], shop["product"], shipping_address, coupon_code="SAVE10").json()
    assert order["discount"] == 5
    assert order["total_amount"] == 52
    assert order["coupon_code"] == "SAVE10"
    assert order["applied_coupon"] == str(coupon["_id"])

    stored = services.db["coupon"].find_one({"_id": coupon["_id"]})
    assert stored["used_count"] == 1
    assert stored["used_by"] == [ObjectId(shop["buyer"][0])]

    # per-user limit reached: the order goes ahead at full price
    again = _place(client, shop["buyer"][1], shop["product"], shipping_address, coupon_code="SAVE10").json()
    assert again["discount"] == 0
    assert again["coupon_code"] is None


def test_free_shipping_coupon_zeroes_shipping(client, services, shop, shipping_address):
    now = utcnow()
    coupon = services.coupons.create({
        "code": "SHIPFREE",
        "description": "Free shipping",
        "discount_type": "free_shipping",
        "discount_value": 0,
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=1),
    }, shop["admin"][0])
    order = _place(
        client, shop["buyer"][1], shop["product"], shipping_address, applied_coupon=str(coupon["_id"])
    ).json()
    assert order["shipping_cost"] == 0
    assert order["total_amount"] == 52


def test_unknown_coupon_is_ignored(client, shop, shipping_address):
    r = _place(client, shop["buyer"][1], shop["product"], shipping_address, coupon_code="NOPE")
    assert r.status_code == 201
    assert r.json()["discount"] == 0


def test_my_orders_are_cached_until_invalidated(client, services, shop, shipping_address):
    buyer_id, headers = shop["buyer"]
    _place(client, headers, shop["product"], shipping_address)
    assert len(client.get("/api/orders/my", headers=headers).json()) == 1

    services.db["order"].insert_one({
        "user_id": ObjectId(buyer_id),
        "items": [],
        "order_status": "pending",
        "total_amount": 0,
        "created_at": utcnow(),
    })
    assert len(client.get("/api/orders/my", headers=headers).json()) == 1

    services.orders.invalidate_cache(buyer_id)
    assert len(client.get("/api/orders/my", headers=headers).json()) == 2


def test_new_order_invalidates_cached_listing(client, shop, shipping_address):
    headers = shop["buyer"][1]
    assert client.get("/api/orders/my", headers=headers).json() == []
    _place(client, headers, shop["product"], shipping_address)
    mine = client.get("/api/orders/my", headers=headers).json()
    assert len(mine) == 1
    assert mine[0]["items"][0]["product"]["title"] == "Wireless Mouse"


def _listed_statuses(client, shop):
    mine = client.get("/api/orders/my", headers=shop["buyer"][1]).json()
    everyone = client.get("/api/orders", headers=shop["admin"][1]).json()
    return sorted(o["order_status"] for o in mine), sorted(o["order_status"] for o in everyone)


def test_status_changes_refresh_cached_listings(client, services, shop, shipping_address):
    buyer_id = shop["buyer"][0]
    first = _place(client, shop["buyer"][1], shop["product"], shipping_address, quantity=1).json()["id"]
    assert _listed_statuses(client, shop) == (["pending"], ["pending"])
    assert f"user_orders:{buyer_id}" in services.cache
    assert "all_orders" in services.cache

    client.patch(f"/api/orders/{first}/status", json={"order_status": "confirmed"}, headers=shop["admin"][1])
    assert _listed_statuses(client, shop) == (["confirmed"], ["confirmed"])

    client.patch(f"/api/orders/{first}/accept", headers=shop["seller"][1])
    assert _listed_statuses(client, shop) == (["processing"], ["processing"])

    second = _place(client, shop["buyer"][1], shop["product"], shipping_address, quantity=1).json()["id"]
    assert _listed_statuses(client, shop)[0] == ["pending", "processing"]
    client.patch(f"/api/orders/{second}/cancel", headers=shop["buyer"][1])
    assert _listed_statuses(client, shop) == (["cancelled", "processing"], ["cancelled", "processing"])


def test_order_visibility(client, make_user, shop, shipping_address):
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    _, stranger = make_user()
    _, other_seller = make_user("seller")

    assert client.get(f"/api/orders/{order_id}", headers=shop["buyer"][1]).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=shop["seller"][1]).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=shop["admin"][1]).json()["user"]["email"] == "user3@example.com"

    r = client.get(f"/api/orders/{order_id}", headers=stranger)
    assert r.status_code == 403
    assert r.json()["detail"] == "You do not have permission to view this order"
    assert client.get(f"/api/orders/{order_id}", headers=other_seller).status_code == 403
    assert client.get(f"/api/orders/{ObjectId()}", headers=shop["admin"][1]).status_code == 404


def test_seller_and_product_listings(client, make_user, make_product, shop, shipping_address):
    _place(client, shop["buyer"][1], shop["product"], shipping_address)
    other_seller_id, other_headers = make_user("seller")
    make_product(other_seller_id, title="Desk Lamp")

    assert len(client.get("/api/orders/seller", headers=shop["seller"][1]).json()) == 1
    assert client.get("/api/orders/seller", headers=other_headers).json() == []

    path = f"/api/orders/product/{shop['product']['_id']}"
    assert len(client.get(path, headers=shop["seller"][1]).json()) == 1
    assert client.get(path, headers=other_headers).json() == []
    assert len(client.get(path, headers=shop["admin"][1]).json()) == 1
    assert client.get("/api/orders", headers=shop["buyer"][1]).status_code == 403


def test_seller_accepts_order(client, services, make_user, shop, shipping_address):
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    _, other_seller = make_user("seller")

    r = client.patch(f"/api/orders/{order_id}/accept", headers=other_seller)
    assert r.status_code == 403
    assert r.json()["detail"] == "You do not have permission to accept this order"

    r = client.patch(f"/api/orders/{order_id}/accept", headers=shop["seller"][1])
    assert r.status_code == 200
    assert r.json()["order_status"] == "processing"
    assert r.json()["status_history"][-1]["note"] == "Accepted by seller"
    assert f"Your Order #{order_id} has been accepted by seller" in _messages(services, shop["buyer"][0])

    r = client.patch(f"/api/orders/{order_id}/accept", headers=shop["seller"][1])
    assert r.status_code == 400


def test_cancel_restocks(client, services, make_user, shop, shipping_address):
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    _, stranger = make_user()

    r = client.patch(f"/api/orders/{order_id}/cancel", headers=stranger)
    assert r.status_code == 403
    assert r.json()["detail"] == "You can only cancel your own orders"

    r = client.patch(f"/api/orders/{order_id}/cancel", headers=shop["buyer"][1])
    assert r.status_code == 200
    assert r.json()["order_status"] == "cancelled"
    assert r.json()["status_history"][-1]["note"] == "Cancelled by user"

    product = services.db["product"].find_one({"_id": shop["product"]["_id"]})
    assert product["stock"] == 10
    assert product["sold_count"] == 0
    assert f"Order #{order_id} has been cancelled successfully" in _messages(services, shop["buyer"][0])
    assert f"Order #{order_id} has been cancelled by the buyer." in _messages(services, shop["seller"][0])

    r = client.patch(f"/api/orders/{order_id}/cancel", headers=shop["buyer"][1])
    assert r.status_code == 400
    assert r.json()["detail"] == "Only pending orders can be cancelled"


def test_buyer_cannot_cancel_after_confirmation(client, shop, shipping_address):
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    client.patch(f"/api/orders/{order_id}/status", json={"order_status": "confirmed"}, headers=shop["admin"][1])
    r = client.patch(f"/api/orders/{order_id}/cancel", headers=shop["buyer"][1])
    assert r.status_code == 400


def test_status_updates_move_forward_only(client, services, shop, shipping_address):
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    admin = shop["admin"][1]

    r = client.patch(f"/api/orders/{order_id}/status", json={"order_status": "lost"}, headers=admin)
    assert r.status_code == 400
    assert r.json()["detail"].startswith("Invalid order status. Must be one of: pending, confirmed")

    r = client.patch(f"/api/orders/{order_id}/status", json={
        "order_status": "shipped", "tracking_number": "TRK123", "courier_service": "UPS",
    }, headers=admin)
    assert r.status_code == 200
    shipped = r.json()
    assert shipped["tracking_number"] == "TRK123"
    assert shipped["courier_service"] == "UPS"
    assert shipped["status_history"][-1]["note"] == "Status updated by admin"
    assert shipped["status_history"][-1]["updated_by"] == shop["admin"][0]

    r = client.patch(f"/api/orders/{order_id}/status", json={"order_status": "processing"}, headers=admin)
    assert r.status_code == 400
    assert r.json()["detail"] == "Cannot change order status from shipped to processing"
    r = client.patch(f"/api/orders/{order_id}/status", json={"order_status": "cancelled"}, headers=admin)
    assert r.status_code == 400

    assert f"Order #{order_id} status updated to shipped" in _messages(services, shop["buyer"][0])
    assert f"Order #{order_id} status updated to shipped by Admin" in _messages(services, shop["seller"][0])
    status_mail = [m for m in services.mail.outbox if m["subject"] == f"Order #{order_id} shipped"]
    assert "Tracking number: TRK123" in status_mail[0]["text"]


def test_admin_cancel_restocks(client, services, shop, shipping_address):
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    r = client.patch(
        f"/api/orders/{order_id}/status", json={"order_status": "cancelled", "note": "Out of stock"}, headers=shop["admin"][1]
    )
    assert r.json()["status_history"][-1]["note"] == "Out of stock"
    assert services.db["product"].find_one({"_id": shop["product"]["_id"]})["stock"] == 10


def test_delivery_awards_loyalty_points(client, services, shop, shipping_address):
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    client.patch(f"/api/orders/{order_id}/status", json={"order_status": "delivered"}, headers=shop["admin"][1])

    status = services.loyalty.status(shop["buyer"][0])
    assert status["points"] == 57
    assert status["total_earned"] == 57

    r = client.patch(f"/api/orders/{order_id}/status", json={"order_status": "delivered"}, headers=shop["admin"][1])
    assert r.status_code == 400
    assert services.loyalty.status(shop["buyer"][0])["points"] == 57


def test_stale_status_update_conflicts(services, shop, shipping_address):
    order = services.orders.create({
        "items": [{"product_id": str(shop["product"]["_id"]), "quantity": 1}],
        "shipping_address": shipping_address,
    }, shop["buyer"][0])
    stale = dict(order)
    services.orders.update_status(str(order["_id"]), {"order_status": "shipped"}, shop["admin"][0])

    with pytest.raises(HTTPException) as exc:
        services.orders._transition(stale, "cancelled", {"status": "cancelled", "note": "late"})
    assert exc.value.status_code == 409
    assert services.db["order"].find_one({"_id": order["_id"]})["order_status"] == "shipped"


def test_mark_paid_notifies_admins(client, services, monkeypatch, shop, shipping_address):
    sent = []
    monkeypatch.setattr(services.gateway, "send_notification_to_user", lambda user_id, message: sent.append((user_id, message)))
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    sent.clear()

    r = client.patch(f"/api/orders/{order_id}/pay", json={"payment_id": "pi_123"}, headers=shop["buyer"][1])
    assert r.status_code == 403
    assert sent == []

    r = client.patch(f"/api/orders/{order_id}/pay", json={"payment_id": "pi_123"}, headers=shop["admin"][1])
    assert r.status_code == 200
    assert r.json()["payment_status"] == "paid"
    assert r.json()["payment_transaction_id"] == "pi_123"
    assert sent == [(shop["admin"][0], {
        "type": "ORDER_PAID",
        "payload": {"order_id": order_id, "payment_id": "pi_123", "user_id": shop["buyer"][0]},
    })]

    r = client.patch(f"/api/orders/{order_id}/pay", json={}, headers=shop["admin"][1])
    assert r.status_code == 400
    assert r.json()["detail"] == "Order is already paid"


def test_cannot_pay_cancelled_order(client, shop, shipping_address):
    order_id = _place(client, shop["buyer"][1], shop["product"], shipping_address).json()["id"]
    client.patch(f"/api/orders/{order_id}/cancel", headers=shop["buyer"][1])
    r = client.patch(f"/api/orders/{order_id}/pay", json={}, headers=shop["admin"][1])
    assert r.status_code == 400
    assert r.json()["detail"] == "Cannot pay for a cancelled order"


def test_stats(client, shop, shipping_address):
    headers = shop["buyer"][1]
    first = _place(client, headers, shop["product"], shipping_address).json()["id"]
    _place(client, headers, shop["product"], shipping_address, quantity=1)
    client.patch(f"/api/orders/{first}/cancel", headers=headers)

    stats = client.get("/api/orders/stats", headers=shop["admin"][1]).json()
    assert stats["total_orders"] == 2
    assert stats["total_revenue"] == 32
    assert stats["by_status"]["cancelled"]["count"] == 1
    assert stats["by_status"]["pending"] == {"count": 1, "revenue": 32}
    assert stats["by_status"]["delivered"]["count"] == 0
