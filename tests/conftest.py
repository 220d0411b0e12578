from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import catalog
import orders
from auth import AuthorizationContext, create_token
from database import create_document, ensure_indexes, get_db, utcnow
from schemas import Address, Coupon, OrderCreateRequest, OrderItemIn, ProductIn, ShopIn


class Factory:
    """Builds users, shops, products, coupons and orders in an in-memory store."""

    def __init__(self, db):
        self.db = db

    def user(self, name="buyer", role="user"):
        doc = {
            "name": name,
            "email": f"{name}@example.com",
            "role": role,
            "store_id": None,
            "is_verified": False,
            "verification_status": "unverified",
        }
        doc["_id"] = self.db["user"].insert_one(doc).inserted_id
        return doc

    def admin(self, name="admin"):
        return self.user(name, role="admin")

    def reload(self, user):
        return self.db["user"].find_one({"_id": user["_id"]})

    def ctx(self, user):
        return AuthorizationContext.from_user(self.reload(user))

    def token(self, user):
        return create_token(user)

    def headers(self, user):
        return {"Authorization": f"Bearer {self.token(user)}"}

    def seller(self, name="seller", verified=True):
        user = self.user(name)
        shop = catalog.create_shop(self.db, self.ctx(user), ShopIn(shop_name=f"{name}-shop"))
        if verified:
            self.db["user"].update_one(
                {"_id": user["_id"]}, {"$set": {"is_verified": True, "verification_status": "verified"}}
            )
        return self.reload(user), shop

    def product(self, seller, title="Mug", price=100.0, stock=10):
        payload = ProductIn(title=title, description=f"{title} description", category="home",
                            price=price, stock=stock)
        return catalog.create_product(self.db, self.ctx(seller), payload)

    def coupon(self, shop, code="WELCOME10", **fields):
        now = utcnow()
        data = {
            "shop_id": shop["id"],
            "code": code,
            "discount_type": "percentage",
            "discount_value": 10,
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
        }
        data.update(fields)
        return create_document(self.db, "coupon", Coupon(**data))

    def order(self, buyer, shop, products, coupon_code=None, quantity=1):
        payload = OrderCreateRequest(
            shop_id=shop["id"],
            items=[OrderItemIn(product_id=p["id"], quantity=quantity) for p in products],
            coupon_code=coupon_code,
            shipping_address=Address(street="1 Main St", city="Springfield", country="US"),
        )
        return orders.create_order(self.db, self.ctx(buyer), payload)

    def set_order_status(self, order, status):
        self.db["order"].update_one({"order_code": order["order_code"]}, {"$set": {"status": status}})


@pytest.fixture
def db():
    database = mongomock.MongoClient()["marketplace_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def client(db):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
