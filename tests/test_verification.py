import pytest

import verification
from database import utcnow
from errors import ConflictError, ForbiddenError, NotFoundError, NotVerifiedError, ValidationError
from schemas import ApproveRequest, RejectRequest, VerificationSubmitRequest


def submission(**fields):
    data = {
        "business_name": "Acme Ceramics",
        "business_type": "company",
        "owner_name": "Jordan Smith",
        "owner_email": "jordan@example.com",
        "owner_phone": "+1 555 0100",
        "identity_document": {"type": "passport", "number": "X1234567", "front_image": "https://cdn.example.com/id.jpg"},
    }
    data.update(fields)
    return VerificationSubmitRequest(**data)


@pytest.fixture
def pending_seller(db, factory):
    seller, shop = factory.seller(verified=False)
    doc = verification.submit(db, factory.ctx(seller), submission())
    return seller, shop, doc


def test_submit_marks_user_pending(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    assert doc["status"] == "pending"
    assert doc["shop_id"] == shop["id"]
    assert doc["resubmission_count"] == 0
    user = factory.reload(seller)
    assert user["verification_status"] == "pending"
    assert user["is_verified"] is False
    assert user["verification_submitted_at"] is not None


def test_submit_requires_shop(db, factory):
    with pytest.raises(ForbiddenError) as exc:
        verification.submit(db, factory.ctx(factory.user("nobody")), submission())
    assert exc.value.code == "NO_SHOP"


def test_cannot_submit_twice_while_pending(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    with pytest.raises(ConflictError) as exc:
        verification.submit(db, factory.ctx(seller), submission())
    assert exc.value.code == "ALREADY_PENDING"
    assert exc.value.extra["status"] == "pending"


def test_pending_seller_is_gated_until_approved(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    with pytest.raises(NotVerifiedError) as exc:
        factory.product(seller)
    assert exc.value.code == "NOT_VERIFIED"
    assert exc.value.extra["verification_status"] == "pending"
    assert "under review" in exc.value.extra["hint"]

    admin = factory.ctx(factory.admin())
    approved = verification.approve(db, admin, doc["id"], ApproveRequest(notes="Looks good"))
    assert approved["status"] == "approved"
    assert approved["verification_level"] == "standard"
    assert approved["reviewed_by"] == admin.user_id

    user = factory.reload(seller)
    assert user["is_verified"] is True
    assert user["verification_status"] == "verified"
    assert user["verified_at"] is not None
    assert factory.product(seller)["shop_id"] == shop["id"]


def test_unverified_hint(factory):
    seller, _ = factory.seller(verified=False)
    with pytest.raises(NotVerifiedError) as exc:
        factory.product(seller)
    assert exc.value.extra["verification_status"] == "unverified"
    assert exc.value.status_code == 403


def test_approve_only_once(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    admin = factory.ctx(factory.admin())
    verification.approve(db, admin, doc["id"], ApproveRequest())
    with pytest.raises(ConflictError) as exc:
        verification.approve(db, admin, doc["id"], ApproveRequest())
    assert exc.value.code == "ALREADY_APPROVED"


def test_verified_seller_cannot_resubmit(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    verification.approve(db, factory.ctx(factory.admin()), doc["id"], ApproveRequest())
    with pytest.raises(ConflictError) as exc:
        verification.submit(db, factory.ctx(seller), submission())
    assert exc.value.code == "ALREADY_VERIFIED"


def test_reject_and_resubmit(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    admin = factory.ctx(factory.admin())

    rejected = verification.reject(db, admin, doc["id"], RejectRequest(rejection_reason="Blurry ID photo"))
    assert rejected["status"] == "resubmit_required"
    assert rejected["rejection_reason"] == "Blurry ID photo"
    user = factory.reload(seller)
    assert (user["is_verified"], user["verification_status"]) == (False, "rejected")

    with pytest.raises(NotVerifiedError) as exc:
        factory.product(seller)
    assert exc.value.extra["verification_status"] == "rejected"

    again = verification.submit(db, factory.ctx(seller), submission(business_name="Acme Ceramics Ltd"))
    assert again["id"] == doc["id"]
    assert again["status"] == "pending"
    assert again["resubmission_count"] == 1
    assert again["rejection_reason"] is None
    assert again["business_name"] == "Acme Ceramics Ltd"
    assert factory.reload(seller)["verification_status"] == "pending"


def test_final_rejection_also_allows_resubmit(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    admin = factory.ctx(factory.admin())
    rejected = verification.reject(db, admin, doc["id"],
                                   RejectRequest(rejection_reason="Fraud suspected", require_resubmit=False))
    assert rejected["status"] == "rejected"
    assert verification.submit(db, factory.ctx(seller), submission())["resubmission_count"] == 1


def test_reject_requires_reason(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    with pytest.raises(ValidationError):
        verification.reject(db, factory.ctx(factory.admin()), doc["id"], RejectRequest(rejection_reason="   "))


def test_start_review(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    admin = factory.ctx(factory.admin())
    assert verification.start_review(db, admin, doc["id"])["status"] == "under_review"
    with pytest.raises(ConflictError) as exc:
        verification.start_review(db, admin, doc["id"])
    assert exc.value.code == "NOT_PENDING"

    with pytest.raises(ConflictError):
        verification.submit(db, factory.ctx(seller), submission())


def test_admin_only(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    ctx = factory.ctx(seller)
    with pytest.raises(ForbiddenError):
        verification.approve(db, ctx, doc["id"], ApproveRequest())
    with pytest.raises(ForbiddenError):
        verification.list_all(db, ctx)
    with pytest.raises(ForbiddenError):
        verification.delete(db, ctx, doc["id"])


def test_list_and_get(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    other, _ = factory.seller("other", verified=False)
    verification.submit(db, factory.ctx(other), submission())
    admin = factory.ctx(factory.admin())

    listing = verification.list_all(db, admin, limit=1)
    assert listing["total"] == 2
    assert listing["pages"] == 2
    assert listing["current_page"] == 1
    assert len(listing["verifications"]) == 1

    verification.approve(db, admin, doc["id"], ApproveRequest())
    assert verification.list_all(db, admin, status="pending")["total"] == 1
    assert verification.get_by_id(db, admin, doc["id"])["status"] == "approved"
    assert verification.get_mine(db, factory.ctx(seller))["id"] == doc["id"]


def test_delete(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    verification.delete(db, factory.ctx(factory.admin()), doc["id"])
    with pytest.raises(NotFoundError):
        verification.get_mine(db, factory.ctx(seller))


def test_resubmission_keeps_reviewer_notes(db, factory, pending_seller):
    seller, shop, doc = pending_seller
    admin = factory.ctx(factory.admin())
    verification.approve(db, admin, doc["id"], ApproveRequest(notes="Bank letter checked"))
    verification.reject(db, admin, doc["id"], RejectRequest(rejection_reason="Licence expired"))

    again = verification.submit(db, factory.ctx(seller), submission(seller_notes="Renewed licence attached"))
    assert again["status"] == "pending"
    assert again["notes"] == "Bank letter checked"
    assert again["seller_notes"] == "Renewed licence attached"


def test_document_upload_time_defaults_to_now(db, factory):
    seller, shop = factory.seller(verified=False)
    doc = verification.submit(db, factory.ctx(seller), submission(
        business_documents=[{"name": "Licence", "url": "https://cdn.example.com/licence.pdf"}]
    ))
    uploaded = doc["business_documents"][0]["uploaded_at"]
    assert uploaded.tzinfo is None
    assert abs((utcnow() - uploaded).total_seconds()) < 60
