"""
Post-sale complaints.

One complaint per order (unique index on ``order_id``). A seller decision is
written once: ``reject`` leaves the complaint ``disputed``, ``refund`` and
``replace`` resolve it.
"""
import logging
import math
import os
import re
from datetime import datetime
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import AuthorizationContext
from database import create_document, find_by_id, parse_oid, to_dict, utcnow
from errors import ConflictError, ForbiddenError, ValidationError
from schemas import Complaint, ComplaintActionRequest, ComplaintIn, Resolution

log = logging.getLogger(__name__)

ACTION_STATUS = {"refund": "resolved", "replace": "resolved", "reject": "disputed"}
OPEN_STATUSES = ("new", "in_progress")
SORTABLE = ("created_at", "updated_at", "status", "type", "order_code")
VIDEO_EXTENSIONS = frozenset([".mp4", ".mov", ".webm", ".avi", ".mkv", ".m4v"])
MAX_LIMIT = 100


def media_kind(url: str) -> str:
    path = url.split("?", 1)[0]
    return "video" if os.path.splitext(path)[1].lower() in VIDEO_EXTENSIONS else "image"


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    data = to_dict(doc)
    data["seller_evidence_media"] = [{"url": u, "kind": media_kind(u)} for u in data.get("seller_evidence", [])]
    return data


def create_complaint(db, ctx: AuthorizationContext, payload: ComplaintIn) -> Dict[str, Any]:
    order = find_by_id(db, "order", payload.order_id, "Order")
    if order["buyer_id"] != ctx.user_id:
        raise ForbiddenError("Only the buyer of this order can file a complaint")
    if payload.product_id and payload.product_id not in {i["product_id"] for i in order["items"]}:
        raise ValidationError("Product not in this order")

    complaint = Complaint(
        shop_id=order["shop_id"],
        order_id=str(order["_id"]),
        order_code=order["order_code"],
        product_id=payload.product_id,
        buyer_id=ctx.user_id,
        type=payload.type,
        title=payload.title,
        description=payload.description,
        evidence_images=[u for u in payload.evidence_images if u],
    )
    try:
        doc = create_document(db, "complaint", complaint)
    except DuplicateKeyError:
        raise ConflictError("A complaint already exists for this order", code="COMPLAINT_EXISTS")
    log.info("Complaint %s filed on order %s (%s)", doc["_id"], doc["order_code"], doc["type"])
    return serialize(doc)


def _visible(ctx: AuthorizationContext, complaint: Dict[str, Any]) -> bool:
    return ctx.is_admin() or ctx.is_owner_of(complaint["shop_id"]) or complaint["buyer_id"] == ctx.user_id


def get_complaint(db, ctx: AuthorizationContext, complaint_id) -> Dict[str, Any]:
    complaint = find_by_id(db, "complaint", complaint_id, "Complaint")
    if not _visible(ctx, complaint):
        raise ForbiddenError("Not authorized to view this complaint")
    return serialize(complaint)


def _parse_day(value: str, field: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}")


def build_filter(ctx: AuthorizationContext, shop: Optional[str] = None, status: Optional[str] = None,
                 complaint_type: Optional[str] = None, order_code: Optional[str] = None,
                 start_date: Optional[str] = None, end_date: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if ctx.is_admin():
        if shop:
            filt["shop_id"] = shop
    elif ctx.shop_id:
        filt["shop_id"] = ctx.shop_id
    else:
        filt["buyer_id"] = ctx.user_id

    if status:
        filt["status"] = {"$ne": "new"} if status == "processed" else status
    if complaint_type:
        filt["type"] = complaint_type
    if order_code:
        filt["order_code"] = {"$regex": re.escape(order_code), "$options": "i"}
    if start_date or end_date:
        filt["created_at"] = {}
        if start_date:
            filt["created_at"]["$gte"] = _parse_day(start_date, "start_date")
        if end_date:
            # include the entire end day
            end = _parse_day(end_date, "end_date")
            filt["created_at"]["$lte"] = end.replace(hour=23, minute=59, second=59, microsecond=999000)
    return filt


def _parse_sort(sort: str):
    field = sort.lstrip("-")
    if field not in SORTABLE:
        raise ValidationError(f"Cannot sort by '{field}'")
    return [(field, DESCENDING if sort.startswith("-") else ASCENDING)]


def list_complaints(db, ctx: AuthorizationContext, page: int = 1, limit: int = 10,
                    sort: str = "-created_at", **filters) -> Dict[str, Any]:
    filt = build_filter(ctx, **filters)
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_LIMIT)
    cursor = db["complaint"].find(filt).sort(_parse_sort(sort)).skip((page - 1) * limit).limit(limit)
    total = db["complaint"].count_documents(filt)
    return {
        "data": [serialize(c) for c in cursor],
        "pagination": {"total": total, "page": page, "limit": limit, "pages": math.ceil(total / limit)},
        "applied_filter": filt,
    }


def _seller_complaint(db, ctx: AuthorizationContext, complaint_id) -> Dict[str, Any]:
    complaint = find_by_id(db, "complaint", complaint_id, "Complaint")
    ctx.require_owner(complaint["shop_id"], "Not authorized to act on this complaint")
    return complaint


def mark_in_progress(db, ctx: AuthorizationContext, complaint_id) -> Dict[str, Any]:
    complaint = _seller_complaint(db, ctx, complaint_id)
    doc = db["complaint"].find_one_and_update(
        {"_id": complaint["_id"], "status": "new"},
        {"$set": {"status": "in_progress", "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise ConflictError("Only new complaints can be taken in progress", code="COMPLAINT_NOT_NEW")
    return serialize(doc)


def _refund_terms(order: Dict[str, Any], payload: ComplaintActionRequest):
    if payload.action != "refund":
        return None, None
    total = float(order.get("total_price") or 0)
    amount, pct = payload.refund_amount, payload.refund_percentage
    if amount is None and pct is not None:
        amount = round(total * pct / 100, 2)
    if amount is not None and amount > total:
        raise ValidationError("Refund amount cannot exceed the order total")
    return amount, pct


def decide(db, ctx: AuthorizationContext, complaint_id, payload: ComplaintActionRequest) -> Dict[str, Any]:
    complaint = _seller_complaint(db, ctx, complaint_id)
    if complaint.get("resolution"):
        raise ConflictError("This complaint has already been decided", code="COMPLAINT_ALREADY_DECIDED")
    order = db["order"].find_one({"_id": parse_oid(complaint["order_id"], "Order")}) or {}
    amount, pct = _refund_terms(order, payload)

    resolution = Resolution(
        action=payload.action,
        refund_amount=amount,
        refund_percentage=pct,
        note=payload.note.strip(),
        decided_by=ctx.user_id,
        decided_at=utcnow(),
    )
    changes = {
        "resolution": resolution.model_dump(),
        "status": ACTION_STATUS[payload.action],
        "updated_at": utcnow(),
    }
    if payload.action == "reject" and payload.seller_evidence_urls is not None:
        changes["seller_evidence"] = [u for u in payload.seller_evidence_urls if u]

    doc = db["complaint"].find_one_and_update(
        {"_id": complaint["_id"], "resolution": None, "status": {"$in": list(OPEN_STATUSES)}},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise ConflictError("This complaint has already been decided", code="COMPLAINT_ALREADY_DECIDED")
    log.info("Complaint %s decided by %s: %s -> %s", complaint["_id"], ctx.user_id, payload.action, doc["status"])
    return serialize(doc)


def add_seller_evidence(db, ctx: AuthorizationContext, complaint_id, urls) -> Dict[str, Any]:
    complaint = _seller_complaint(db, ctx, complaint_id)
    urls = [u for u in urls if u]
    if not urls:
        raise ValidationError("No evidence provided")
    doc = db["complaint"].find_one_and_update(
        {"_id": complaint["_id"]},
        {"$push": {"seller_evidence": {"$each": urls}}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return serialize(doc)
