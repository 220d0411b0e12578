"""
Order creation, pricing snapshot and status lifecycle.

Prices are frozen on the order at creation: item title/price come from the
live product at that moment, the coupon is embedded as a snapshot and
``coupon_used`` is kept only for reporting.
"""
import logging
import secrets
import time
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

import promotions
from auth import AuthorizationContext
from database import create_document, find_by_id, get_documents, parse_oid, to_dict, utcnow
from errors import ForbiddenError, InvalidTransitionError, ValidationError
from schemas import Order, OrderCreateRequest, OrderItem

log = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "cancelled")
TERMINAL_STATUSES = frozenset(["delivered", "cancelled"])
TRANSITIONS = {
    "pending": frozenset(["confirmed", "cancelled"]),
    "confirmed": frozenset(["shipped", "cancelled"]),
    "shipped": frozenset(["delivered", "cancelled"]),
    "delivered": frozenset(),
    "cancelled": frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, ())


def make_order_code(order_id: ObjectId) -> str:
    return f"ORD-{str(order_id)[-10:].upper()}"


def _line_items(db, shop_id: str, items) -> List[OrderItem]:
    if not items:
        raise ValidationError("Order must contain at least one item")
    ids = [parse_oid(it.product_id, "Product") for it in items]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})}
    # a product listed on several lines is checked against its summed quantity
    wanted = Counter()
    for oid, it in zip(ids, items):
        wanted[oid] += it.quantity
    lines = []
    for oid, it in zip(ids, items):
        product = products.get(oid)
        if not product or product["shop_id"] != shop_id:
            raise ValidationError(f"Product {it.product_id} is not sold by this shop")
        if not product.get("is_active") or wanted[oid] > product.get("stock", 0):
            raise ValidationError(f"Product '{product['title']}' does not have enough stock")
        lines.append(OrderItem(
            product_id=str(oid), title=product["title"], price=float(product["price"]), quantity=it.quantity
        ))
    return lines


def create_order(db, ctx: AuthorizationContext,
                 payload: OrderCreateRequest) -> Tuple[Dict[str, Any], Optional[promotions.CouponEvaluation]]:
    """Returns the stored order and, when a coupon code was given but not applied, why."""
    shop = find_by_id(db, "shop", payload.shop_id, "Shop")
    shop_id = str(shop["_id"])
    items = _line_items(db, shop_id, payload.items)
    subtotal = round(sum(i.price * i.quantity for i in items), 2)

    discount = 0.0
    coupon_doc = None
    rejection = None
    if payload.coupon_code:
        coupon_doc = promotions.find_coupon(db, payload.coupon_code, shop_id)
        result = promotions.check_coupon(coupon_doc, [i.product_id for i in items], subtotal, utcnow())
        if result.valid and promotions.claim_usage(db, coupon_doc):
            discount = result.discount
        else:
            if result.valid:
                result = promotions.CouponEvaluation.rejected(
                    subtotal, promotions.USAGE_LIMIT_REACHED, "Coupon usage limit reached", result.coupon
                )
            log.info("Coupon %s ignored for order in shop %s: %s", payload.coupon_code, shop_id, result.reason)
            rejection = result
            coupon_doc = None

    order_id = ObjectId()
    order = Order(
        buyer_id=ctx.user_id,
        shop_id=shop_id,
        order_code=make_order_code(order_id),
        items=items,
        original_price=subtotal,
        discount=discount,
        total_price=round(subtotal - discount, 2),
        coupon_used=str(coupon_doc["_id"]) if coupon_doc else None,
        coupon=promotions.snapshot(coupon_doc) if coupon_doc else None,
        shipping_address=payload.shipping_address,
        notes=payload.notes,
    )
    doc = order.model_dump()
    doc["_id"] = order_id
    try:
        doc = create_document(db, "order", doc)
    except PyMongoError:
        if coupon_doc:
            promotions.release_usage(db, coupon_doc["_id"])
        raise

    log.info("Order %s created: buyer=%s shop=%s original=%.2f discount=%.2f total=%.2f",
             doc["order_code"], ctx.user_id, shop_id, subtotal, discount, doc["total_price"])
    return to_dict(doc), rejection


def get_order(db, ctx: AuthorizationContext, order_id) -> Dict[str, Any]:
    order = find_by_id(db, "order", order_id, "Order")
    if order["buyer_id"] != ctx.user_id and not ctx.is_owner_of(order["shop_id"]):
        raise ForbiddenError("Not authorized to view this order")
    return to_dict(order)


def list_buyer_orders(db, ctx: AuthorizationContext):
    return get_documents(db, "order", {"buyer_id": ctx.user_id}, sort=[("created_at", -1)])


def list_shop_orders(db, ctx: AuthorizationContext):
    shop_id = ctx.require_shop()
    return get_documents(db, "order", {"shop_id": shop_id}, sort=[("created_at", -1)])


def _transition(db, order: Dict[str, Any], new_status: str) -> Dict[str, Any]:
    current = order["status"]
    if not can_transition(current, new_status):
        raise InvalidTransitionError(current, new_status)
    doc = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": {"status": new_status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        latest = db["order"].find_one({"_id": order["_id"]}) or order
        raise InvalidTransitionError(latest["status"], new_status)
    log.info("Order %s moved %s -> %s", order.get("order_code"), current, new_status)
    return doc


def update_status(db, ctx: AuthorizationContext, order_id, new_status: str) -> Dict[str, Any]:
    if new_status not in ORDER_STATUSES:
        raise ValidationError("Invalid status")
    order = find_by_id(db, "order", order_id, "Order")
    ctx.require_owner(order["shop_id"], "Not authorized to update this order")
    return to_dict(_transition(db, order, new_status))


def cancel_order(db, ctx: AuthorizationContext, order_id) -> Dict[str, Any]:
    order = find_by_id(db, "order", order_id, "Order")
    if order["buyer_id"] != ctx.user_id and not ctx.is_owner_of(order["shop_id"]):
        raise ForbiddenError("Not authorized to cancel this order")
    return to_dict(_transition(db, order, "cancelled"))


def make_tracking_number() -> str:
    stamp = format(int(time.time() * 1000), "x").upper()
    return f"TRK-{stamp}-{secrets.token_hex(3).upper()}"


def format_address(address: Optional[Dict[str, Any]]) -> str:
    address = address or {}
    parts = [address.get("street"), address.get("city"),
             " ".join(p for p in (address.get("state"), address.get("zip_code")) if p),
             address.get("country")]
    return ", ".join(p for p in parts if p) or "Address Not Provided"


def shipping_label(db, ctx: AuthorizationContext, order_id) -> Dict[str, Any]:
    """Label data for the seller; the tracking number is assigned on first request and then kept."""
    order = find_by_id(db, "order", order_id, "Order")
    if not ctx.is_owner_of(order["shop_id"]):
        log.warning("Shipping label denied: order=%s user=%s", order.get("order_code"), ctx.user_id)
        raise ForbiddenError("Not authorized to generate label for this order")

    if not order.get("tracking_number"):
        db["order"].update_one(
            {"_id": order["_id"], "tracking_number": None},
            {"$set": {"tracking_number": make_tracking_number(), "updated_at": utcnow()}},
        )
        order = db["order"].find_one({"_id": order["_id"]})
        log.info("Tracking number %s assigned to order %s", order["tracking_number"], order["order_code"])

    shop = db["shop"].find_one({"_id": parse_oid(order["shop_id"], "Shop")}) or {}
    buyer = db["user"].find_one({"_id": parse_oid(order["buyer_id"], "User")}) or {}
    return {
        "tracking_number": order["tracking_number"],
        "order_code": order["order_code"],
        "order_date": order.get("created_at"),
        "from": {
            "shop_name": shop.get("shop_name"),
            "address": shop.get("location") or "Shop Address Not Provided",
        },
        "to": {
            "name": buyer.get("name"),
            "email": buyer.get("email"),
            "phone": buyer.get("phone") or "N/A",
            "address": format_address(order.get("shipping_address")),
        },
        "items": [{"title": i["title"], "quantity": i["quantity"], "price": i["price"]} for i in order["items"]],
        "original_price": order["original_price"],
        "discount": order.get("discount", 0),
        "total_price": order["total_price"],
        "status": order["status"],
        "barcode_data": order["tracking_number"],
    }
