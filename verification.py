"""
Seller verification workflow.

The user's ``is_verified`` flag is what the gate reads; approve and reject
write it together with the verification document.
"""
import logging
import math
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import AuthorizationContext
from database import create_document, find_by_id, get_documents, to_dict, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import ApproveRequest, RejectRequest, SellerVerification, VerificationSubmitRequest

log = logging.getLogger(__name__)

RESUBMITTABLE = ("rejected", "resubmit_required")


def _sync_user(db, seller_id: str, **fields) -> None:
    fields["updated_at"] = utcnow()
    db["user"].update_one({"_id": ObjectId(seller_id)}, {"$set": fields})


def submit(db, ctx: AuthorizationContext, payload: VerificationSubmitRequest) -> Dict[str, Any]:
    shop_id = ctx.require_shop()
    if ctx.is_verified:
        raise ConflictError("Your account is already verified", code="ALREADY_VERIFIED")

    fields = payload.model_dump()
    existing = db["sellerverification"].find_one({"seller_id": ctx.user_id})
    if existing:
        if existing["status"] not in RESUBMITTABLE:
            raise ConflictError("You already have a pending verification request",
                                code="ALREADY_PENDING", status=existing["status"])
        fields.update(status="pending", rejection_reason=None, updated_at=utcnow())
        doc = db["sellerverification"].find_one_and_update(
            {"_id": existing["_id"], "status": existing["status"]},
            {"$set": fields, "$inc": {"resubmission_count": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise ConflictError("Verification request changed, please retry", code="ALREADY_PENDING")
        log.info("Verification resubmitted: user=%s verification=%s", ctx.user_id, doc["_id"])
    else:
        try:
            doc = create_document(db, "sellerverification",
                                  SellerVerification(seller_id=ctx.user_id, shop_id=shop_id, **fields))
        except DuplicateKeyError:
            raise ConflictError("You already have a pending verification request", code="ALREADY_PENDING")
        log.info("New verification submitted: user=%s verification=%s", ctx.user_id, doc["_id"])

    _sync_user(db, ctx.user_id, verification_status="pending", verification_submitted_at=utcnow())
    return to_dict(doc)


def get_mine(db, ctx: AuthorizationContext) -> Dict[str, Any]:
    ctx.require_shop()
    doc = db["sellerverification"].find_one({"seller_id": ctx.user_id})
    if not doc:
        raise NotFoundError("No verification request found")
    return to_dict(doc)


def list_all(db, ctx: AuthorizationContext, status: Optional[str] = None, page: int = 1, limit: int = 20):
    ctx.require_admin()
    filt = {"status": status} if status else {}
    page, limit = max(page, 1), min(max(limit, 1), 100)
    items = get_documents(db, "sellerverification", filt, sort=[("created_at", -1)],
                          skip=(page - 1) * limit, limit=limit)
    total = db["sellerverification"].count_documents(filt)
    return {"verifications": items, "total": total, "pages": math.ceil(total / limit), "current_page": page}


def get_by_id(db, ctx: AuthorizationContext, verification_id) -> Dict[str, Any]:
    ctx.require_admin()
    return to_dict(find_by_id(db, "sellerverification", verification_id, "Verification"))


def start_review(db, ctx: AuthorizationContext, verification_id) -> Dict[str, Any]:
    ctx.require_admin()
    verification = find_by_id(db, "sellerverification", verification_id, "Verification")
    doc = db["sellerverification"].find_one_and_update(
        {"_id": verification["_id"], "status": "pending"},
        {"$set": {"status": "under_review", "reviewed_by": ctx.user_id, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise ConflictError("Only pending requests can be taken under review", code="NOT_PENDING")
    return to_dict(doc)


def approve(db, ctx: AuthorizationContext, verification_id, payload: ApproveRequest) -> Dict[str, Any]:
    ctx.require_admin()
    verification = find_by_id(db, "sellerverification", verification_id, "Verification")
    now = utcnow()
    changes = {
        "status": "approved",
        "reviewed_by": ctx.user_id,
        "reviewed_at": now,
        "verification_level": payload.verification_level,
        "updated_at": now,
    }
    if payload.notes:
        changes["notes"] = payload.notes
    doc = db["sellerverification"].find_one_and_update(
        {"_id": verification["_id"], "status": {"$ne": "approved"}},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise ConflictError("Verification already approved", code="ALREADY_APPROVED")

    _sync_user(db, doc["seller_id"], is_verified=True, verification_status="verified", verified_at=now)
    log.info("Verification approved: verification=%s seller=%s by=%s", doc["_id"], doc["seller_id"], ctx.user_id)
    return to_dict(doc)


def reject(db, ctx: AuthorizationContext, verification_id, payload: RejectRequest) -> Dict[str, Any]:
    ctx.require_admin()
    reason = (payload.rejection_reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required")
    verification = find_by_id(db, "sellerverification", verification_id, "Verification")
    doc = db["sellerverification"].find_one_and_update(
        {"_id": verification["_id"]},
        {"$set": {
            "status": "resubmit_required" if payload.require_resubmit else "rejected",
            "reviewed_by": ctx.user_id,
            "reviewed_at": utcnow(),
            "rejection_reason": reason,
            "updated_at": utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    _sync_user(db, doc["seller_id"], is_verified=False, verification_status="rejected")
    log.info("Verification rejected: verification=%s seller=%s by=%s reason=%s",
             doc["_id"], doc["seller_id"], ctx.user_id, reason)
    return to_dict(doc)


def delete(db, ctx: AuthorizationContext, verification_id) -> None:
    ctx.require_admin()
    verification = find_by_id(db, "sellerverification", verification_id, "Verification")
    db["sellerverification"].delete_one({"_id": verification["_id"]})
    log.info("Verification deleted: verification=%s by=%s", verification["_id"], ctx.user_id)
