"""
Coupon evaluation and coupon management.

``evaluate`` never raises for a coupon that does not apply: it returns a
``CouponEvaluation`` with ``valid=False`` and a rejection reason. The usage
counter only moves through ``claim_usage``/``release_usage``.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import AuthorizationContext
from database import as_utc, create_document, find_by_id, get_documents, to_dict, utcnow
from errors import ConflictError, CouponRejectedError, ValidationError
from schemas import Coupon, CouponIn, CouponSnapshot, CouponUpdate, CouponValidateRequest

log = logging.getLogger(__name__)

COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
COUPON_INACTIVE = "COUPON_INACTIVE"
COUPON_NOT_STARTED = "COUPON_NOT_STARTED"
COUPON_EXPIRED = "COUPON_EXPIRED"
USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
MIN_PURCHASE_NOT_MET = "MIN_PURCHASE_NOT_MET"
PRODUCT_NOT_APPLICABLE = "PRODUCT_NOT_APPLICABLE"


class CouponEvaluation(BaseModel):
    valid: bool
    discount: float = 0
    final_price: float
    coupon: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    message: str = ""

    @classmethod
    def rejected(cls, total: float, reason: str, message: str, coupon=None) -> "CouponEvaluation":
        return cls(valid=False, final_price=round(total, 2), reason=reason, message=message, coupon=coupon)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def compute_discount(coupon: Dict[str, Any], total: float) -> float:
    value = float(coupon.get("discount_value") or 0)
    if coupon.get("discount_type") == "percentage":
        discount = total * value / 100
        if coupon.get("max_discount") is not None:
            discount = min(discount, float(coupon["max_discount"]))
    else:
        discount = value
    return round(max(0.0, min(discount, total)), 2)


def check_coupon(coupon: Optional[Dict[str, Any]], product_ids: Iterable[str], total: float,
                 now: datetime) -> CouponEvaluation:
    """Pure part of the engine: validation order matters, first failure wins."""
    if not coupon:
        return CouponEvaluation.rejected(total, COUPON_NOT_FOUND, "Invalid coupon code")
    summary = coupon_summary(coupon)
    if not coupon.get("is_active", True):
        return CouponEvaluation.rejected(total, COUPON_INACTIVE, "Coupon is not active", summary)
    now = as_utc(now)
    if now < as_utc(coupon["start_date"]):
        return CouponEvaluation.rejected(total, COUPON_NOT_STARTED, "Coupon is not yet active", summary)
    if now > as_utc(coupon["end_date"]):
        return CouponEvaluation.rejected(total, COUPON_EXPIRED, "Coupon has expired", summary)
    limit = coupon.get("usage_limit")
    if limit is not None and coupon.get("used_count", 0) >= limit:
        return CouponEvaluation.rejected(total, USAGE_LIMIT_REACHED, "Coupon usage limit reached", summary)
    min_purchase = float(coupon.get("min_purchase") or 0)
    if total < min_purchase:
        return CouponEvaluation.rejected(
            total, MIN_PURCHASE_NOT_MET, f"Minimum purchase of ${min_purchase:.2f} required", summary
        )
    applicable = {str(p) for p in coupon.get("applicable_products") or []}
    if applicable and not applicable.intersection(str(p) for p in product_ids):
        return CouponEvaluation.rejected(
            total, PRODUCT_NOT_APPLICABLE,
            "This coupon is not applicable to the selected product(s)", summary
        )

    discount = compute_discount(coupon, total)
    return CouponEvaluation(
        valid=True,
        discount=discount,
        final_price=round(total - discount, 2),
        coupon=summary,
    )


def coupon_summary(coupon: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(coupon["_id"]),
        "code": coupon["code"],
        "discount_type": coupon["discount_type"],
        "discount_value": coupon["discount_value"],
        "max_discount": coupon.get("max_discount"),
    }


def snapshot(coupon: Dict[str, Any]) -> CouponSnapshot:
    return CouponSnapshot(
        code=coupon["code"],
        discount_type=coupon["discount_type"],
        discount_value=coupon["discount_value"],
    )


def find_coupon(db, code: str, shop_id: str) -> Optional[Dict[str, Any]]:
    return db["coupon"].find_one({"code": normalize_code(code), "shop_id": str(shop_id)})


def evaluate(db, code: str, shop_id: str, product_ids: Iterable[str], total: float,
             now: Optional[datetime] = None) -> CouponEvaluation:
    coupon = find_coupon(db, code, shop_id)
    return check_coupon(coupon, list(product_ids), total, now or utcnow())


def validate_coupon(db, payload: CouponValidateRequest) -> CouponEvaluation:
    if not payload.code or not payload.shop_id or payload.total_price <= 0:
        raise ValidationError("Missing required fields")
    if not payload.product_ids:
        raise ValidationError("Product IDs are required")
    result = evaluate(db, payload.code, payload.shop_id, payload.product_ids, payload.total_price)
    if not result.valid:
        raise CouponRejectedError(result.reason, result.message)
    return result


def claim_usage(db, coupon: Dict[str, Any]) -> bool:
    """Atomically take one use of ``coupon``; False if it was used up meanwhile.

    The guard repeats the evaluated snapshot's limit so a concurrent edit of
    ``usage_limit`` or deactivation also makes the claim fail.
    """
    limit = coupon.get("usage_limit")
    guard = {"_id": coupon["_id"], "is_active": True, "usage_limit": limit}
    if limit is not None:
        guard["used_count"] = {"$lt": limit}
    res = db["coupon"].update_one(guard, {"$inc": {"used_count": 1}, "$set": {"updated_at": utcnow()}})
    return res.modified_count == 1


def release_usage(db, coupon_id) -> None:
    db["coupon"].update_one(
        {"_id": coupon_id, "used_count": {"$gt": 0}},
        {"$inc": {"used_count": -1}, "$set": {"updated_at": utcnow()}},
    )


# Coupon management

def _check_bounds(discount_type: str, discount_value: float, start: datetime, end: datetime) -> None:
    if discount_type == "percentage" and not 0 <= discount_value <= 100:
        raise ValidationError("Percentage discount must be between 0 and 100")
    if end < start:
        raise ValidationError("End date must be after start date")


def create_coupon(db, ctx: AuthorizationContext, payload: CouponIn) -> Dict[str, Any]:
    shop_id = ctx.require_verified_seller()
    start, end = as_utc(payload.start_date), as_utc(payload.end_date)
    _check_bounds(payload.discount_type, payload.discount_value, start, end)
    coupon = Coupon(
        shop_id=shop_id,
        code=normalize_code(payload.code),
        description=payload.description,
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        min_purchase=payload.min_purchase,
        max_discount=payload.max_discount if payload.discount_type == "percentage" else None,
        start_date=start,
        end_date=end,
        usage_limit=payload.usage_limit,
        applicable_products=payload.applicable_products,
    )
    try:
        doc = create_document(db, "coupon", coupon)
    except DuplicateKeyError:
        raise ConflictError("Coupon code already exists", code="COUPON_CODE_EXISTS")
    log.info("Coupon %s created for shop %s", doc["code"], shop_id)
    return to_dict(doc)


def _owned_coupon(db, ctx: AuthorizationContext, coupon_id) -> Dict[str, Any]:
    coupon = find_by_id(db, "coupon", coupon_id, "Coupon")
    ctx.require_owner(coupon["shop_id"])
    return coupon


def list_my_coupons(db, ctx: AuthorizationContext):
    shop_id = ctx.require_shop()
    return get_documents(db, "coupon", {"shop_id": shop_id}, sort=[("created_at", -1)])


def get_coupon(db, ctx: AuthorizationContext, coupon_id) -> Dict[str, Any]:
    return to_dict(_owned_coupon(db, ctx, coupon_id))


def update_coupon(db, ctx: AuthorizationContext, coupon_id, payload: CouponUpdate) -> Dict[str, Any]:
    ctx.require_verified_seller()
    coupon = _owned_coupon(db, ctx, coupon_id)
    updates = payload.model_dump(exclude_unset=True)
    # only max_discount and usage_limit may be cleared with an explicit null
    updates = {k: v for k, v in updates.items() if v is not None or k in ("max_discount", "usage_limit")}
    if "code" in updates:
        updates["code"] = normalize_code(updates["code"])
    for key in ("start_date", "end_date"):
        if key in updates:
            updates[key] = as_utc(updates[key])
    merged = {**coupon, **updates}
    _check_bounds(merged["discount_type"], merged["discount_value"], merged["start_date"], merged["end_date"])
    if merged["discount_type"] == "fixed":
        updates["max_discount"] = None
    updates["updated_at"] = utcnow()
    try:
        doc = db["coupon"].find_one_and_update(
            {"_id": coupon["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
    except DuplicateKeyError:
        raise ConflictError("Coupon code already exists", code="COUPON_CODE_EXISTS")
    return to_dict(doc)


def delete_coupon(db, ctx: AuthorizationContext, coupon_id) -> None:
    coupon = _owned_coupon(db, ctx, coupon_id)
    db["coupon"].delete_one({"_id": coupon["_id"]})
    log.info("Coupon %s deleted from shop %s", coupon["code"], coupon["shop_id"])
