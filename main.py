import os
import sys
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import catalog
import complaints
import orders
import promotions
import ratings
import verification
from auth import AuthorizationContext, get_auth_context
from database import db, ensure_indexes, get_db
from errors import AppError
from schemas import (
    ApproveRequest, ComplaintActionRequest, ComplaintIn, CouponIn, CouponUpdate, CouponValidateRequest,
    EvidenceRequest, OrderCreateRequest, ProductIn, ProductUpdate, RejectRequest, ReviewIn,
    ReviewResponseIn, ReviewUpdate, ShopIn, ShopUpdate, StatusUpdateRequest, StockAdjustRequest,
    VerificationSubmitRequest,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

log = logging.getLogger("marketplace")


def setup_logging():
    """Configures the root logger once for the service."""
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)


@asynccontextmanager
async def lifespan(app):
    setup_logging()
    if db is not None:
        try:
            ensure_indexes(db)
        except PyMongoError as e:
            log.error("Could not ensure indexes: %s", e)
    yield


# App setup
app = FastAPI(title="Marketplace API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def handle_app_error(request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(PyMongoError)
async def handle_store_error(request, exc: PyMongoError):
    log.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable", "code": "UNAVAILABLE"})


# Health and helpers
@app.get("/")
def root():
    return {"message": "Marketplace API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Shops & products
@app.post("/shops", status_code=201)
def create_shop(payload: ShopIn, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"shop": catalog.create_shop(db, ctx, payload)}


@app.get("/shops/mine")
def my_shop(ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"success": True, "shop": catalog.get_my_shop(db, ctx)}


@app.put("/shops/mine")
def update_my_shop(payload: ShopUpdate, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"success": True, "message": "Shop updated successfully", "shop": catalog.update_shop(db, ctx, payload)}


@app.get("/shops/{shop_id}")
def get_shop(shop_id: str, db=Depends(get_db)):
    return {"shop": catalog.get_shop(db, shop_id)}


@app.get("/shops/{shop_id}/reviews")
def shop_reviews(shop_id: str, page: int = 1, limit: int = 10, db=Depends(get_db)):
    return ratings.shop_reviews(db, shop_id, page=page, limit=limit)


@app.get("/shops/{shop_id}/products")
def list_shop_products(shop_id: str, db=Depends(get_db)):
    products = catalog.list_shop_products(db, shop_id)
    return {"count": len(products), "products": products}


@app.post("/products", status_code=201)
def create_product(payload: ProductIn, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"product": catalog.create_product(db, ctx, payload)}


@app.get("/products/mine")
def my_products(ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    products = catalog.list_my_products(db, ctx)
    return {"success": True, "count": len(products), "products": products}


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return {"product": catalog.get_product(db, product_id)}


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate,
                   ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"product": catalog.update_product(db, ctx, product_id, payload)}


@app.patch("/products/{product_id}/stock")
def adjust_stock(product_id: str, payload: StockAdjustRequest,
                 ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"product": catalog.adjust_stock(db, ctx, product_id, payload.delta)}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    catalog.delete_product(db, ctx, product_id)
    return {"id": product_id, "deleted": True}


# Coupons
@app.post("/coupons", status_code=201)
def create_coupon(payload: CouponIn, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"coupon": promotions.create_coupon(db, ctx, payload)}


@app.get("/coupons/mine")
def my_coupons(ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"coupons": promotions.list_my_coupons(db, ctx)}


@app.post("/coupons/validate")
def validate_coupon(payload: CouponValidateRequest,
                    ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    result = promotions.validate_coupon(db, payload)
    return {"valid": True, "discount": result.discount, "final_price": result.final_price, "coupon": result.coupon}


@app.get("/coupons/{coupon_id}")
def get_coupon(coupon_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"coupon": promotions.get_coupon(db, ctx, coupon_id)}


@app.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: CouponUpdate,
                  ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"coupon": promotions.update_coupon(db, ctx, coupon_id, payload)}


@app.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    promotions.delete_coupon(db, ctx, coupon_id)
    return {"message": "Coupon deleted successfully"}


# Orders
@app.post("/orders", status_code=201)
def create_order(payload: OrderCreateRequest,
                 ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    order, rejection = orders.create_order(db, ctx, payload)
    response = {"message": "Order created successfully", "order": order}
    if rejection is not None:
        response["coupon_rejection"] = {"code": rejection.reason, "message": rejection.message}
    return response


@app.get("/orders/buyer")
def buyer_orders(ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"orders": orders.list_buyer_orders(db, ctx)}


@app.get("/orders/seller")
def seller_orders(ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"orders": orders.list_shop_orders(db, ctx)}


@app.get("/orders/{order_id}")
def get_order(order_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"order": orders.get_order(db, ctx, order_id)}


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateRequest,
                        ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"message": "Order status updated", "order": orders.update_status(db, ctx, order_id, payload.status)}


@app.get("/orders/{order_id}/shipping-label")
def shipping_label(order_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"success": True, "label": orders.shipping_label(db, ctx, order_id)}


@app.patch("/orders/{order_id}/cancel")
def cancel_order(order_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"message": "Order cancelled", "order": orders.cancel_order(db, ctx, order_id)}


# Complaints
@app.post("/complaints", status_code=201)
def create_complaint(payload: ComplaintIn, ctx: AuthorizationContext = Depends(get_auth_context),
                     db=Depends(get_db)):
    return {"complaint": complaints.create_complaint(db, ctx, payload)}


@app.get("/complaints")
def list_complaints(shop: Optional[str] = None, status: Optional[str] = None, type: Optional[str] = None,
                    order_code: Optional[str] = None, start_date: Optional[str] = None,
                    end_date: Optional[str] = None, page: int = 1, limit: int = 10, sort: str = "-created_at",
                    ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    result = complaints.list_complaints(
        db, ctx, page=page, limit=limit, sort=sort, shop=shop, status=status, complaint_type=type,
        order_code=order_code, start_date=start_date, end_date=end_date,
    )
    return result


@app.get("/complaints/{complaint_id}")
def get_complaint(complaint_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"complaint": complaints.get_complaint(db, ctx, complaint_id)}


@app.patch("/complaints/{complaint_id}/progress")
def complaint_in_progress(complaint_id: str, ctx: AuthorizationContext = Depends(get_auth_context),
                          db=Depends(get_db)):
    return {"complaint": complaints.mark_in_progress(db, ctx, complaint_id)}


@app.patch("/complaints/{complaint_id}/action")
def complaint_action(complaint_id: str, payload: ComplaintActionRequest,
                     ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"complaint": complaints.decide(db, ctx, complaint_id, payload)}


@app.post("/complaints/{complaint_id}/evidence")
def complaint_evidence(complaint_id: str, payload: EvidenceRequest,
                       ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    complaint = complaints.add_seller_evidence(db, ctx, complaint_id, payload.urls)
    return {"urls": payload.urls, "complaint": complaint}


# Seller verification
@app.post("/verification/submit", status_code=201)
def submit_verification(payload: VerificationSubmitRequest,
                        ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    doc = verification.submit(db, ctx, payload)
    return {"success": True, "message": "Verification request submitted successfully", "verification": doc}


@app.get("/verification/mine")
def my_verification(ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"success": True, "verification": verification.get_mine(db, ctx)}


@app.get("/verification")
def list_verifications(status: Optional[str] = None, page: int = 1, limit: int = 20,
                       ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"success": True, **verification.list_all(db, ctx, status=status, page=page, limit=limit)}


@app.get("/verification/{verification_id}")
def get_verification(verification_id: str, ctx: AuthorizationContext = Depends(get_auth_context),
                     db=Depends(get_db)):
    return {"success": True, "verification": verification.get_by_id(db, ctx, verification_id)}


@app.put("/verification/{verification_id}/review")
def review_verification(verification_id: str, ctx: AuthorizationContext = Depends(get_auth_context),
                        db=Depends(get_db)):
    return {"success": True, "verification": verification.start_review(db, ctx, verification_id)}


@app.put("/verification/{verification_id}/approve")
def approve_verification(verification_id: str, payload: Optional[ApproveRequest] = None,
                         ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    doc = verification.approve(db, ctx, verification_id, payload or ApproveRequest())
    return {"success": True, "message": "Verification approved successfully", "verification": doc}


@app.put("/verification/{verification_id}/reject")
def reject_verification(verification_id: str, payload: RejectRequest,
                        ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    doc = verification.reject(db, ctx, verification_id, payload)
    return {"success": True, "message": "Verification rejected", "verification": doc}


@app.delete("/verification/{verification_id}")
def delete_verification(verification_id: str, ctx: AuthorizationContext = Depends(get_auth_context),
                        db=Depends(get_db)):
    verification.delete(db, ctx, verification_id)
    return {"success": True, "message": "Verification deleted successfully"}


# Reviews
@app.get("/reviews/mine")
def my_reviews(ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"reviews": ratings.buyer_reviews(db, ctx)}


@app.get("/reviews/seller")
def received_reviews(ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"reviews": ratings.seller_reviews(db, ctx)}


@app.post("/reviews", status_code=201)
def create_review(payload: ReviewIn, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"message": "Review created successfully", "review": ratings.create_review(db, ctx, payload)}


@app.get("/products/{product_id}/reviews")
def product_reviews(product_id: str, page: int = 1, limit: int = 10, sort: str = "recent", db=Depends(get_db)):
    return ratings.product_reviews(db, product_id, page=page, limit=limit, sort=sort)


@app.put("/reviews/{review_id}")
def update_review(review_id: str, payload: ReviewUpdate,
                  ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"message": "Review updated successfully", "review": ratings.update_review(db, ctx, review_id, payload)}


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    ratings.delete_review(db, ctx, review_id)
    return {"message": "Review deleted successfully"}


@app.post("/reviews/{review_id}/respond")
def respond_to_review(review_id: str, payload: ReviewResponseIn,
                      ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return {"message": "Response added successfully", "review": ratings.respond(db, ctx, review_id, payload.comment)}


@app.post("/reviews/{review_id}/vote")
def vote_review(review_id: str, ctx: AuthorizationContext = Depends(get_auth_context), db=Depends(get_db)):
    return ratings.toggle_vote(db, ctx, review_id)


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
