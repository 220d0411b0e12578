"""
Database Schemas for the Marketplace API

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class SellerVerification -> collection "sellerverification"

References to other documents are hex id strings. Request payloads live at the bottom of the module.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr, field_validator
from datetime import datetime

from database import utcnow

OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]
DiscountType = Literal["percentage", "fixed"]
ComplaintType = Literal["damaged_product", "wrong_item", "missing_item", "late_delivery", "other"]
ComplaintStatus = Literal["new", "in_progress", "resolved", "disputed"]
ComplaintAction = Literal["refund", "replace", "reject"]
VerificationStatus = Literal["pending", "under_review", "approved", "rejected", "resubmit_required"]
VerificationLevel = Literal["basic", "standard", "premium"]

# Core domain models

class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None

class User(BaseModel):
    name: str
    email: EmailStr
    role: Literal["user", "admin"] = "user"
    store_id: Optional[str] = None
    is_verified: bool = False
    verification_status: Literal["unverified", "pending", "verified", "rejected"] = "unverified"
    verification_submitted_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None

class Shop(BaseModel):
    shop_name: str = Field(..., min_length=1)
    owner_id: str
    description: str = Field("", max_length=500)
    logo: Optional[str] = None
    banner: Optional[str] = None
    location: Optional[str] = None
    rating: float = Field(5, ge=0, le=5)
    total_products: int = 0
    is_active: bool = True

class Product(BaseModel):
    shop_id: str
    title: str
    description: str
    category: str
    images: List[str] = Field(default_factory=list)
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount: float = Field(0, ge=0, le=100, description="Display-only percentage, unrelated to coupons")
    stock: int = Field(..., ge=0)
    sold: int = 0
    rating: float = Field(0, ge=0, le=5)
    is_active: bool = True

class Coupon(BaseModel):
    shop_id: str
    code: str
    description: str = ""
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    used_count: int = 0
    applicable_products: List[str] = Field(default_factory=list)
    is_active: bool = True

class CouponSnapshot(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: float

class OrderItem(BaseModel):
    product_id: str
    title: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)

class Order(BaseModel):
    buyer_id: str
    shop_id: str
    order_code: str
    items: List[OrderItem]
    original_price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    total_price: float = Field(..., ge=0)
    coupon_used: Optional[str] = None
    coupon: Optional[CouponSnapshot] = None
    status: OrderStatus = "pending"
    shipping_address: Address = Field(default_factory=Address)
    notes: Optional[str] = None
    tracking_number: Optional[str] = None

class Resolution(BaseModel):
    action: ComplaintAction
    refund_amount: Optional[float] = Field(None, ge=0)
    refund_percentage: Optional[float] = Field(None, ge=0, le=100)
    note: str = ""
    decided_by: str
    decided_at: datetime

class Complaint(BaseModel):
    shop_id: str
    order_id: str
    order_code: str
    product_id: Optional[str] = None
    buyer_id: str
    type: ComplaintType
    title: str
    description: str = ""
    status: ComplaintStatus = "new"
    resolution: Optional[Resolution] = None
    evidence_images: List[str] = Field(default_factory=list)
    seller_evidence: List[str] = Field(default_factory=list)

class IdentityDocument(BaseModel):
    type: Literal["passport", "national_id", "drivers_license"]
    number: str
    front_image: str
    back_image: Optional[str] = None

class BusinessDocument(BaseModel):
    name: str
    type: Literal["business_license", "tax_certificate", "bank_statement", "other"] = "other"
    url: str
    uploaded_at: datetime = Field(default_factory=utcnow)

class BankAccount(BaseModel):
    account_holder_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_name: Optional[str] = None
    bank_code: Optional[str] = None
    swift_code: Optional[str] = None

class SellerVerification(BaseModel):
    seller_id: str
    shop_id: str
    business_name: str
    business_type: Literal["individual", "company", "partnership"]
    business_registration_number: Optional[str] = None
    tax_id: Optional[str] = None
    business_address: Address = Field(default_factory=Address)
    owner_name: str
    owner_email: EmailStr
    owner_phone: str
    identity_document: IdentityDocument
    business_documents: List[BusinessDocument] = Field(default_factory=list)
    bank_account: Optional[BankAccount] = None
    status: VerificationStatus = "pending"
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    seller_notes: Optional[str] = None
    notes: Optional[str] = None
    resubmission_count: int = 0
    verification_level: VerificationLevel = "basic"

class SellerResponse(BaseModel):
    comment: str
    responded_at: datetime

class Review(BaseModel):
    product_id: str
    order_id: str
    buyer_id: str
    shop_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    images: List[str] = Field(default_factory=list)
    seller_response: Optional[SellerResponse] = None
    is_verified_purchase: bool = True
    helpful_votes: int = 0
    voted_by: List[str] = Field(default_factory=list)

# Request payloads

class ShopIn(BaseModel):
    shop_name: str = Field(..., min_length=1)
    description: str = Field("", max_length=500)
    logo: Optional[str] = None
    banner: Optional[str] = None
    location: Optional[str] = None

class ShopUpdate(BaseModel):
    shop_name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, max_length=500)
    logo: Optional[str] = None
    banner: Optional[str] = None
    location: Optional[str] = None

class ProductIn(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount: float = Field(0, ge=0, le=100)
    stock: int = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)

class ProductUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None

class StockAdjustRequest(BaseModel):
    delta: int

class CouponIn(BaseModel):
    code: str = Field(..., min_length=1)
    description: str = ""
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    applicable_products: List[str] = Field(default_factory=list)

class CouponUpdate(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_discount: Optional[float] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    applicable_products: Optional[List[str]] = None
    is_active: Optional[bool] = None

class CouponValidateRequest(BaseModel):
    code: str
    shop_id: str
    product_ids: List[str] = Field(default_factory=list)
    total_price: float

class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class OrderCreateRequest(BaseModel):
    shop_id: str
    items: List[OrderItemIn]
    coupon_code: Optional[str] = None
    shipping_address: Address
    notes: Optional[str] = None

class StatusUpdateRequest(BaseModel):
    status: str

class ComplaintIn(BaseModel):
    order_id: str
    product_id: Optional[str] = None
    type: ComplaintType
    title: str = Field(..., min_length=1)
    description: str = ""
    evidence_images: List[str] = Field(default_factory=list)

    @field_validator("title", "description")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return v.strip()

class ComplaintActionRequest(BaseModel):
    action: ComplaintAction
    refund_amount: Optional[float] = Field(None, ge=0)
    refund_percentage: Optional[float] = Field(None, ge=0, le=100)
    note: str = ""
    seller_evidence_urls: Optional[List[str]] = None

class EvidenceRequest(BaseModel):
    urls: List[str]

class VerificationSubmitRequest(BaseModel):
    business_name: str = Field(..., min_length=1)
    business_type: Literal["individual", "company", "partnership"]
    business_registration_number: Optional[str] = None
    tax_id: Optional[str] = None
    business_address: Address = Field(default_factory=Address)
    owner_name: str = Field(..., min_length=1)
    owner_email: EmailStr
    owner_phone: str = Field(..., min_length=1)
    identity_document: IdentityDocument
    business_documents: List[BusinessDocument] = Field(default_factory=list)
    bank_account: Optional[BankAccount] = None
    seller_notes: Optional[str] = None

class ApproveRequest(BaseModel):
    verification_level: VerificationLevel = "standard"
    notes: Optional[str] = None

class RejectRequest(BaseModel):
    rejection_reason: str = ""
    require_resubmit: bool = True

class ReviewIn(BaseModel):
    product_id: str
    order_id: str
    rating: int
    comment: str = Field(..., min_length=1)
    images: List[str] = Field(default_factory=list)

class ReviewUpdate(BaseModel):
    rating: Optional[int] = None
    comment: Optional[str] = None
    images: Optional[List[str]] = None

class ReviewResponseIn(BaseModel):
    comment: str = Field(..., min_length=1)
