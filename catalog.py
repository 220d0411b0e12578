"""
Shops and products.

``is_active`` on a product is only ever written by ``stock_fields`` so that
it equals ``stock > 0`` after every stock write.
"""
import logging
from typing import Any, Callable, Dict

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import AuthorizationContext
from database import create_document, find_by_id, get_documents, to_dict, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import Product, ProductIn, ProductUpdate, Shop, ShopIn, ShopUpdate

log = logging.getLogger(__name__)

STOCK_RETRIES = 5


def stock_fields(stock: int) -> Dict[str, Any]:
    return {"stock": stock, "is_active": stock > 0}


# Shops

def create_shop(db, ctx: AuthorizationContext, payload: ShopIn) -> Dict[str, Any]:
    if ctx.shop_id:
        raise ConflictError("You already have a shop", code="SHOP_EXISTS")
    shop = Shop(owner_id=ctx.user_id, **payload.model_dump())
    try:
        doc = create_document(db, "shop", shop)
    except DuplicateKeyError:
        raise ConflictError("Shop name already exists", code="SHOP_NAME_TAKEN")

    res = db["user"].update_one(
        {"_id": ObjectId(ctx.user_id), "store_id": None},
        {"$set": {"store_id": str(doc["_id"]), "updated_at": utcnow()}},
    )
    if res.modified_count == 0:
        db["shop"].delete_one({"_id": doc["_id"]})
        raise ConflictError("You already have a shop", code="SHOP_EXISTS")
    log.info("Shop %s created by user %s", doc["shop_name"], ctx.user_id)
    return to_dict(doc)


def get_shop(db, shop_id) -> Dict[str, Any]:
    shop = to_dict(find_by_id(db, "shop", shop_id, "Shop"))
    shop["product_count"] = db["product"].count_documents({"shop_id": shop["id"], "is_active": True})
    return shop


def _my_shop_id(ctx: AuthorizationContext) -> str:
    if ctx.shop_id is None:
        raise NotFoundError("You do not have a shop")
    return ctx.shop_id


def get_my_shop(db, ctx: AuthorizationContext) -> Dict[str, Any]:
    return get_shop(db, _my_shop_id(ctx))


def update_shop(db, ctx: AuthorizationContext, payload: ShopUpdate) -> Dict[str, Any]:
    shop_id = _my_shop_id(ctx)
    updates = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    updates["updated_at"] = utcnow()
    try:
        doc = db["shop"].find_one_and_update(
            {"_id": ObjectId(shop_id)}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise ConflictError("Shop name already exists", code="SHOP_NAME_TAKEN")
    if doc is None:
        raise NotFoundError("Shop not found")
    log.info("Shop %s updated by user %s", shop_id, ctx.user_id)
    return to_dict(doc)


# Products

def create_product(db, ctx: AuthorizationContext, payload: ProductIn) -> Dict[str, Any]:
    shop_id = ctx.require_verified_seller()
    data = payload.model_dump()
    if data["original_price"] is None:
        data["original_price"] = data["price"]
    data.update(stock_fields(data["stock"]))
    doc = create_document(db, "product", Product(shop_id=shop_id, **data))
    db["shop"].update_one({"_id": ObjectId(shop_id)}, {"$inc": {"total_products": 1}})
    log.info("Product %s created in shop %s", doc["_id"], shop_id)
    return to_dict(doc)


def get_product(db, product_id) -> Dict[str, Any]:
    return to_dict(find_by_id(db, "product", product_id, "Product"))


def list_shop_products(db, shop_id):
    return get_documents(db, "product", {"shop_id": str(shop_id), "is_active": True},
                         sort=[("created_at", -1)])


def list_my_products(db, ctx: AuthorizationContext):
    """All of the caller's products, out-of-stock ones included."""
    return get_documents(db, "product", {"shop_id": _my_shop_id(ctx)}, sort=[("created_at", -1)])


def _write_stock(db, product_id, compute: Callable[[Dict[str, Any]], int], extra=None) -> Dict[str, Any]:
    """Compare-and-swap on the stock value the new one was computed from."""
    for _ in range(STOCK_RETRIES):
        product = find_by_id(db, "product", product_id, "Product")
        new_stock = compute(product)
        if new_stock < 0:
            raise ValidationError("Stock cannot go below zero")
        changes = {**(extra or {}), **stock_fields(new_stock), "updated_at": utcnow()}
        doc = db["product"].find_one_and_update(
            {"_id": product["_id"], "stock": product["stock"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if doc:
            return doc
    raise ConflictError("Stock changed concurrently, please retry", code="STOCK_CONFLICT")


def _owned_product(db, ctx: AuthorizationContext, product_id) -> Dict[str, Any]:
    product = find_by_id(db, "product", product_id, "Product")
    ctx.require_owner(product["shop_id"], "Not authorized to modify this product")
    return product


def update_product(db, ctx: AuthorizationContext, product_id, payload: ProductUpdate) -> Dict[str, Any]:
    product = _owned_product(db, ctx, product_id)
    updates = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    stock = updates.pop("stock", None)
    if stock is None:
        updates["updated_at"] = utcnow()
        doc = db["product"].find_one_and_update(
            {"_id": product["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
    else:
        doc = _write_stock(db, product["_id"], lambda _: stock, extra=updates)
    return to_dict(doc)


def adjust_stock(db, ctx: AuthorizationContext, product_id, delta: int) -> Dict[str, Any]:
    product = _owned_product(db, ctx, product_id)
    doc = _write_stock(db, product["_id"], lambda current: current["stock"] + delta)
    log.info("Stock of product %s adjusted by %+d to %d", product_id, delta, doc["stock"])
    return to_dict(doc)


def delete_product(db, ctx: AuthorizationContext, product_id) -> None:
    product = _owned_product(db, ctx, product_id)
    res = db["product"].delete_one({"_id": product["_id"]})
    if res.deleted_count:
        db["shop"].update_one(
            {"_id": ObjectId(product["shop_id"]), "total_products": {"$gt": 0}},
            {"$inc": {"total_products": -1}},
        )
