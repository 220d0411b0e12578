"""
Reviews and the product/shop rating aggregates they feed.
"""
import logging
import math
from typing import Any, Dict

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import AuthorizationContext
from database import create_document, find_by_id, get_documents, to_dict, utcnow
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from schemas import Review, ReviewIn, ReviewUpdate, SellerResponse

log = logging.getLogger(__name__)

SORTS = {
    "recent": [("created_at", -1)],
    "helpful": [("helpful_votes", -1)],
    "rating-high": [("rating", -1)],
    "rating-low": [("rating", 1)],
}


def average_rating(ratings) -> float:
    ratings = list(ratings)
    if not ratings:
        return 0
    return round(sum(ratings) / len(ratings), 1)


def recompute(db, product_id: str, shop_id: str) -> None:
    product_rating = average_rating(r["rating"] for r in db["review"].find({"product_id": product_id}))
    shop_rating = average_rating(r["rating"] for r in db["review"].find({"shop_id": shop_id}))
    db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"rating": product_rating}})
    db["shop"].update_one({"_id": ObjectId(shop_id)}, {"$set": {"rating": shop_rating}})


def _check_rating(rating: int) -> None:
    if not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")


def create_review(db, ctx: AuthorizationContext, payload: ReviewIn) -> Dict[str, Any]:
    _check_rating(payload.rating)
    order = find_by_id(db, "order", payload.order_id, "Order")
    if order["buyer_id"] != ctx.user_id:
        raise ForbiddenError("Not authorized")
    if order["status"] != "delivered":
        raise ValidationError("Can only review delivered orders")
    if payload.product_id not in {i["product_id"] for i in order["items"]}:
        raise ValidationError("Product not in this order")

    review = Review(
        product_id=payload.product_id,
        order_id=str(order["_id"]),
        buyer_id=ctx.user_id,
        shop_id=order["shop_id"],
        rating=payload.rating,
        comment=payload.comment.strip(),
        images=payload.images,
    )
    try:
        doc = create_document(db, "review", review)
    except DuplicateKeyError:
        raise ConflictError("Already reviewed this product", code="REVIEW_EXISTS")
    recompute(db, doc["product_id"], doc["shop_id"])
    log.info("Review %s created for product %s", doc["_id"], doc["product_id"])
    return to_dict(doc)


def _own_review(db, ctx: AuthorizationContext, review_id) -> Dict[str, Any]:
    review = find_by_id(db, "review", review_id, "Review")
    if review["buyer_id"] != ctx.user_id:
        raise ForbiddenError("Not authorized")
    return review


def update_review(db, ctx: AuthorizationContext, review_id, payload: ReviewUpdate) -> Dict[str, Any]:
    review = _own_review(db, ctx, review_id)
    updates = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None}
    if "rating" in updates:
        _check_rating(updates["rating"])
    updates["updated_at"] = utcnow()
    doc = db["review"].find_one_and_update(
        {"_id": review["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    recompute(db, doc["product_id"], doc["shop_id"])
    return to_dict(doc)


def delete_review(db, ctx: AuthorizationContext, review_id) -> None:
    review = _own_review(db, ctx, review_id)
    db["review"].delete_one({"_id": review["_id"]})
    recompute(db, review["product_id"], review["shop_id"])


def respond(db, ctx: AuthorizationContext, review_id, comment: str) -> Dict[str, Any]:
    review = find_by_id(db, "review", review_id, "Review")
    ctx.require_owner(review["shop_id"], "Not authorized")
    response = SellerResponse(comment=comment.strip(), responded_at=utcnow())
    doc = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": {"seller_response": response.model_dump(), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return to_dict(doc)


def toggle_vote(db, ctx: AuthorizationContext, review_id) -> Dict[str, Any]:
    review = find_by_id(db, "review", review_id, "Review")
    doc = db["review"].find_one_and_update(
        {"_id": review["_id"], "voted_by": {"$ne": ctx.user_id}},
        {"$addToSet": {"voted_by": ctx.user_id}, "$inc": {"helpful_votes": 1}},
        return_document=ReturnDocument.AFTER,
    )
    has_voted = doc is not None
    if doc is None:
        doc = db["review"].find_one_and_update(
            {"_id": review["_id"], "voted_by": ctx.user_id},
            {"$pull": {"voted_by": ctx.user_id}, "$inc": {"helpful_votes": -1}},
            return_document=ReturnDocument.AFTER,
        ) or review
    return {"helpful_votes": doc["helpful_votes"], "has_voted": has_voted}


def shop_reviews(db, shop_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    page, limit = max(page, 1), min(max(limit, 1), 100)
    filt = {"shop_id": str(shop_id)}
    reviews = get_documents(db, "review", filt, sort=SORTS["recent"], skip=(page - 1) * limit, limit=limit)
    total = db["review"].count_documents(filt)
    return {"reviews": reviews, "pagination": {"total": total, "page": page, "pages": math.ceil(total / limit)}}


def buyer_reviews(db, ctx: AuthorizationContext):
    return get_documents(db, "review", {"buyer_id": ctx.user_id}, sort=SORTS["recent"])


def seller_reviews(db, ctx: AuthorizationContext):
    if ctx.shop_id is None:
        raise NotFoundError("Shop not found")
    return get_documents(db, "review", {"shop_id": ctx.shop_id}, sort=SORTS["recent"])


def product_reviews(db, product_id: str, page: int = 1, limit: int = 10, sort: str = "recent") -> Dict[str, Any]:
    page, limit = max(page, 1), min(max(limit, 1), 100)
    filt = {"product_id": product_id}
    reviews = get_documents(db, "review", filt, sort=SORTS.get(sort, SORTS["recent"]),
                            skip=(page - 1) * limit, limit=limit)
    all_ratings = [r["rating"] for r in db["review"].find(filt, {"rating": 1})]
    distribution = {str(star): 0 for star in range(1, 6)}
    for rating in all_ratings:
        distribution[str(rating)] += 1
    return {
        "reviews": reviews,
        "pagination": {"total": len(all_ratings), "page": page,
                       "pages": math.ceil(len(all_ratings) / limit)},
        "stats": {"avg_rating": average_rating(all_ratings), "total_reviews": len(all_ratings),
                  "distribution": distribution},
    }
