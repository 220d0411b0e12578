from datetime import timedelta

import pytest

import database
from database import utcnow
from main import app


def test_root(client):
    assert client.get("/").json() == {"message": "Marketplace API running"}


def test_requires_bearer_token(client):
    assert client.get("/orders/buyer").status_code in (401, 403)
    response = client.get("/orders/buyer", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"


def test_unconfigured_database_is_unavailable(client):
    if database.db is not None:
        pytest.skip("a real database is configured")
    app.dependency_overrides.clear()
    response = client.get("/shops/5f1d7f3e9b1e8b3a4c2d1e0f")
    assert response.status_code == 503
    assert response.json() == {"detail": "Database not configured", "code": "UNAVAILABLE"}


def test_unknown_order_is_404(client, factory):
    buyer = factory.user()
    response = client.get("/orders/nope", headers=factory.headers(buyer))
    assert response.status_code == 404
    assert response.json() == {"detail": "Order not found", "code": "NOT_FOUND"}


def test_unverified_seller_gets_hint(client, factory):
    seller, _ = factory.seller(verified=False)
    response = client.post("/products", headers=factory.headers(seller), json={
        "title": "Mug", "description": "Blue mug", "category": "home", "price": 12, "stock": 3,
    })
    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "NOT_VERIFIED"
    assert body["verification_status"] == "unverified"
    assert body["hint"]


def test_coupon_flow_over_http(client, factory):
    seller, shop = factory.seller()
    product = factory.product(seller, "Teapot", price=100)
    buyer = factory.user("alice")
    now = utcnow()

    response = client.post("/coupons", headers=factory.headers(seller), json={
        "code": "welcome10",
        "discount_type": "percentage",
        "discount_value": 10,
        "start_date": (now - timedelta(days=1)).isoformat(),
        "end_date": (now + timedelta(days=7)).isoformat(),
        "usage_limit": 1,
    })
    assert response.status_code == 201
    assert response.json()["coupon"]["code"] == "WELCOME10"

    response = client.post("/coupons/validate", headers=factory.headers(buyer), json={
        "code": "WELCOME10", "shop_id": shop["id"], "product_ids": [product["id"]], "total_price": 100,
    })
    assert response.status_code == 200
    assert response.json()["discount"] == 10
    assert response.json()["final_price"] == 90

    response = client.post("/coupons/validate", headers=factory.headers(buyer), json={
        "code": "MISSING", "shop_id": shop["id"], "product_ids": [product["id"]], "total_price": 100,
    })
    assert response.status_code == 404
    assert response.json()["code"] == "COUPON_NOT_FOUND"

    order_body = {
        "shop_id": shop["id"],
        "items": [{"product_id": product["id"], "quantity": 1}],
        "coupon_code": "WELCOME10",
        "shipping_address": {"street": "1 Main St", "city": "Springfield"},
    }
    response = client.post("/orders", headers=factory.headers(buyer), json=order_body)
    assert response.status_code == 201
    order = response.json()["order"]
    assert (order["original_price"], order["discount"], order["total_price"]) == (100, 10, 90)
    assert "coupon_rejection" not in response.json()

    response = client.post("/orders", headers=factory.headers(buyer), json=order_body)
    assert response.status_code == 201
    assert response.json()["order"]["total_price"] == 100
    assert response.json()["coupon_rejection"]["code"] == "USAGE_LIMIT_REACHED"


def test_invalid_transition_over_http(client, factory):
    seller, shop = factory.seller()
    product = factory.product(seller)
    order, _ = factory.order(factory.user("alice"), shop, [product])

    response = client.patch(f"/orders/{order['id']}/status", headers=factory.headers(seller),
                            json={"status": "delivered"})
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_TRANSITION"
    assert response.json()["current_status"] == "pending"

    response = client.patch(f"/orders/{order['id']}/status", headers=factory.headers(seller),
                            json={"status": "confirmed"})
    assert response.status_code == 200
    assert response.json()["order"]["status"] == "confirmed"


def test_complaint_list_over_http(client, factory):
    seller, shop = factory.seller()
    product = factory.product(seller)
    buyer = factory.user("alice")
    order, _ = factory.order(buyer, shop, [product])

    response = client.post("/complaints", headers=factory.headers(buyer), json={
        "order_id": order["id"], "type": "late_delivery", "title": "Still waiting",
    })
    assert response.status_code == 201
    complaint_id = response.json()["complaint"]["id"]

    response = client.post("/complaints", headers=factory.headers(buyer), json={
        "order_id": order["id"], "type": "other", "title": "Again",
    })
    assert response.status_code == 409
    assert response.json()["code"] == "COMPLAINT_EXISTS"

    response = client.get("/complaints", headers=factory.headers(seller), params={"status": "processed"})
    assert response.json()["pagination"]["total"] == 0

    response = client.patch(f"/complaints/{complaint_id}/action", headers=factory.headers(seller),
                            json={"action": "reject", "seller_evidence_urls": ["https://cdn.example.com/t.mp4"]})
    assert response.status_code == 200
    assert response.json()["complaint"]["status"] == "disputed"

    response = client.get("/complaints", headers=factory.headers(seller),
                          params={"status": "processed", "type": "late_delivery"})
    body = response.json()
    assert body["pagination"]["total"] == 1
    assert body["data"][0]["seller_evidence_media"] == [{"url": "https://cdn.example.com/t.mp4", "kind": "video"}]


def test_verification_over_http(client, factory):
    seller, _ = factory.seller(verified=False)
    admin = factory.admin()

    response = client.post("/verification/submit", headers=factory.headers(seller), json={
        "business_name": "Acme",
        "business_type": "individual",
        "owner_name": "Sam Lee",
        "owner_email": "sam@example.com",
        "owner_phone": "555-0101",
        "identity_document": {"type": "national_id", "number": "A1", "front_image": "https://cdn.example.com/f.jpg"},
    })
    assert response.status_code == 201
    verification_id = response.json()["verification"]["id"]

    response = client.put(f"/verification/{verification_id}/approve", headers=factory.headers(seller))
    assert response.status_code == 403

    response = client.put(f"/verification/{verification_id}/approve", headers=factory.headers(admin))
    assert response.status_code == 200
    assert response.json()["verification"]["verification_level"] == "standard"

    response = client.post("/products", headers=factory.headers(seller), json={
        "title": "Mug", "description": "Blue mug", "category": "home", "price": 12, "stock": 3,
    })
    assert response.status_code == 201


def test_seller_routes_over_http(client, factory):
    seller, shop = factory.seller()
    product = factory.product(seller, "Teapot", price=100)
    factory.product(seller, "Sold out", stock=0)
    buyer = factory.user("alice")
    order, _ = factory.order(buyer, shop, [product])

    response = client.get("/shops/mine", headers=factory.headers(seller))
    assert response.json()["shop"]["id"] == shop["id"]
    assert client.get("/shops/mine", headers=factory.headers(buyer)).status_code == 404

    response = client.put("/shops/mine", headers=factory.headers(seller), json={"location": "12 Harbour Rd"})
    assert response.json()["shop"]["location"] == "12 Harbour Rd"

    assert client.get("/products/mine", headers=factory.headers(seller)).json()["count"] == 2

    response = client.get(f"/orders/{order['id']}/shipping-label", headers=factory.headers(seller))
    assert response.status_code == 200
    label = response.json()["label"]
    assert label["from"]["address"] == "12 Harbour Rd"
    assert label["total_price"] == 100

    response = client.get(f"/orders/{order['id']}/shipping-label", headers=factory.headers(buyer))
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"
