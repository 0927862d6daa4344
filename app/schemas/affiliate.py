"""
Pydantic schemas for the affiliate engine.

This module defines request/response schemas for:
- Order / payment events consumed from collaborators
- Affiliate registration, profile and status changes
- Program configuration and commission rules
- Links, clicks, commissions and payouts
- Dashboard and admin projections
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.affiliate import (
    AffiliateStatus,
    CommissionType,
    LinkType,
    PaymentMethod,
    PayoutFrequency,
    RuleType,
)
from app.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


# ============================================================================
# Collaborator Events
# ============================================================================

class OrderLineItemEvent(BaseCreateSchema):
    line_item_id: str = Field(..., min_length=1, max_length=100)
    product_id: Optional[str] = Field(None, max_length=100)
    vendor_id: Optional[UUID] = Field(None, description="Vendor selling this line; other vendors' lines are skipped")
    category: Optional[str] = Field(None, max_length=100)
    price: Decimal = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class OrderCompletedEvent(BaseCreateSchema):
    """Order reached its terminal completed state."""
    order_id: str = Field(..., min_length=1, max_length=100)
    buyer_id: Optional[str] = Field(None, max_length=100)
    visitor_id: Optional[str] = Field(None, max_length=64)
    referral_code: Optional[str] = Field(None, max_length=20)
    completed_at: Optional[datetime] = None
    line_items: List[OrderLineItemEvent] = Field(default_factory=list)


class OrderRefundedEvent(BaseCreateSchema):
    """Refund or chargeback; no line_item_id means the whole order."""
    order_id: str = Field(..., min_length=1, max_length=100)
    line_item_id: Optional[str] = Field(None, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)


class PaymentConfirmationEvent(BaseCreateSchema):
    payout_id: UUID
    success: bool
    external_reference: Optional[str] = Field(None, max_length=100)
    failure_reason: Optional[str] = Field(None, max_length=500)


class OrderProcessedResponse(BaseModel):
    order_id: str
    attributed: bool
    commission_ids: List[UUID] = []


class OrderRefundResponse(BaseModel):
    order_id: str
    cancelled: int
    already_cancelled: int
    already_paid: int = 0


# ============================================================================
# Affiliate Schemas
# ============================================================================

class AffiliateRegister(BaseCreateSchema):
    vendor_id: UUID
    store_id: Optional[UUID] = None
    bio: Optional[str] = Field(None, max_length=2000)
    website: Optional[str] = Field(None, max_length=500)
    social_media: Optional[dict] = None
    preferred_categories: Optional[List[str]] = None


class AffiliateProfileUpdate(BaseUpdateSchema):
    bio: Optional[str] = Field(None, max_length=2000)
    website: Optional[str] = Field(None, max_length=500)
    social_media: Optional[dict] = None
    preferred_categories: Optional[List[str]] = None


class AffiliateStatusUpdate(BaseModel):
    """Vendor decision on an affiliate application."""
    status: Literal["APPROVED", "REJECTED"]
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    commission_type: Optional[CommissionType] = None
    fixed_commission_amount: Optional[Decimal] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=1000)


class AffiliateBanRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class AffiliateResponse(BaseResponseSchema):
    id: UUID
    user_id: UUID
    vendor_id: UUID
    store_id: Optional[UUID] = None
    program_id: Optional[UUID] = None
    status: AffiliateStatus
    commission_rate: Decimal
    commission_type: CommissionType
    fixed_commission_amount: Decimal
    referral_code: str
    total_clicks: int
    total_conversions: int
    total_earnings: Decimal
    pending_earnings: Decimal
    paid_earnings: Decimal
    bio: Optional[str] = None
    website: Optional[str] = None
    social_media: Optional[dict] = None
    preferred_categories: Optional[List[str]] = None
    notes: Optional[str] = None
    application_date: datetime
    approval_date: Optional[datetime] = None
    created_at: datetime


# ============================================================================
# Program Schemas
# ============================================================================

class CommissionRuleCreate(BaseModel):
    """A CATEGORY override or a sales-volume TIER."""
    rule_type: RuleType
    category: Optional[str] = Field(None, max_length=100)
    min_sales: Optional[Decimal] = Field(None, ge=0)
    commission_rate: Decimal = Field(..., ge=0, le=100)
    commission_type: CommissionType = CommissionType.PERCENTAGE
    fixed_amount: Decimal = Field(default=Decimal("0"), ge=0)

    @model_validator(mode="after")
    def check_variant(self):
        if self.rule_type == RuleType.CATEGORY and not self.category:
            raise ValueError("CATEGORY rules require a category")
        if self.rule_type == RuleType.TIER:
            if self.min_sales is None:
                raise ValueError("TIER rules require min_sales")
            if self.commission_type != CommissionType.PERCENTAGE:
                raise ValueError("TIER rules are percentage rates")
        return self


class CommissionRuleResponse(BaseResponseSchema):
    id: UUID
    rule_type: RuleType
    position: int
    category: Optional[str] = None
    min_sales: Optional[Decimal] = None
    commission_rate: Decimal
    commission_type: CommissionType
    fixed_amount: Decimal


class ProgramUpdate(BaseUpdateSchema):
    is_active: Optional[bool] = None
    enabled: Optional[bool] = None
    default_commission_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    default_commission_type: Optional[CommissionType] = None
    default_fixed_amount: Optional[Decimal] = Field(None, ge=0)
    min_payout_amount: Optional[Decimal] = Field(None, ge=0)
    payout_frequency: Optional[PayoutFrequency] = None
    auto_approve_affiliates: Optional[bool] = None
    require_social_media_verification: Optional[bool] = None
    allowed_payment_methods: Optional[List[PaymentMethod]] = None
    processing_fee: Optional[Decimal] = Field(None, ge=0, le=100)
    vendor_fee: Optional[Decimal] = Field(None, ge=0, le=100)
    payout_processing_fee: Optional[Decimal] = Field(None, ge=0, le=100)
    payout_vendor_fee: Optional[Decimal] = Field(None, ge=0, le=100)
    cookie_duration_days: Optional[int] = Field(None, ge=1, le=365)
    allow_multiple_conversions: Optional[bool] = None
    conversion_window_days: Optional[int] = Field(None, ge=1, le=365)
    require_click_match: Optional[bool] = None
    # Replaces the whole rule list when given
    rules: Optional[List[CommissionRuleCreate]] = None


class ProgramResponse(BaseResponseSchema):
    id: UUID
    vendor_id: UUID
    store_id: Optional[UUID] = None
    is_active: bool
    enabled: bool
    default_commission_rate: Decimal
    default_commission_type: CommissionType
    default_fixed_amount: Decimal
    min_payout_amount: Decimal
    payout_frequency: PayoutFrequency
    auto_approve_affiliates: bool
    require_social_media_verification: bool
    allowed_payment_methods: List[PaymentMethod]
    processing_fee: Decimal
    vendor_fee: Decimal
    payout_processing_fee: Decimal
    payout_vendor_fee: Decimal
    cookie_duration_days: int
    allow_multiple_conversions: bool
    conversion_window_days: int
    require_click_match: bool
    rules: List[CommissionRuleResponse] = []
    created_at: datetime


class ProgramListing(BaseResponseSchema):
    """What an affiliate sees when choosing a program to join."""
    id: UUID
    vendor_id: UUID
    store_id: Optional[UUID] = None
    default_commission_rate: Decimal
    default_commission_type: CommissionType
    default_fixed_amount: Decimal
    min_payout_amount: Decimal
    payout_frequency: PayoutFrequency
    auto_approve_affiliates: bool
    require_social_media_verification: bool
    allowed_payment_methods: List[PaymentMethod]
    cookie_duration_days: int
    rules: List[CommissionRuleResponse] = []


# ============================================================================
# Link / Click Schemas
# ============================================================================

class AffiliateLinkCreate(BaseCreateSchema):
    link_type: LinkType = LinkType.GENERAL
    target_id: Optional[str] = Field(None, max_length=100)
    original_url: str = Field(..., min_length=1, max_length=1000)


class AffiliateLinkResponse(BaseResponseSchema):
    id: UUID
    affiliate_id: UUID
    link_type: LinkType
    target_id: Optional[str] = None
    original_url: str
    affiliate_url: str
    short_code: str
    clicks: int
    conversions: int
    earnings: Decimal
    is_active: bool
    last_used: Optional[datetime] = None
    created_at: datetime


class AffiliateLinkStatusUpdate(BaseUpdateSchema):
    is_active: bool


class ClickResponse(BaseResponseSchema):
    id: UUID
    affiliate_id: UUID
    visitor_id: str
    link_type: LinkType
    target_id: Optional[str] = None
    referrer: Optional[str] = None
    converted: bool
    conversion_date: Optional[datetime] = None
    order_id: Optional[str] = None
    created_at: datetime


# ============================================================================
# Commission Schemas
# ============================================================================

class CommissionResponse(BaseResponseSchema):
    id: UUID
    affiliate_id: UUID
    vendor_id: UUID
    order_id: str
    order_line_id: str
    product_id: Optional[str] = None
    order_amount: Decimal
    commission_rate: Decimal
    commission_type: CommissionType
    commission_amount: Decimal
    platform_fee: Decimal
    vendor_fee: Decimal
    net_commission: Decimal
    status: str
    payout_id: Optional[UUID] = None
    needs_review: bool
    review_reason: Optional[str] = None
    earned_date: datetime
    approved_date: Optional[datetime] = None
    paid_date: Optional[datetime] = None
    refunded: bool
    refund_reason: Optional[str] = None


class VendorAffiliateDetail(BaseModel):
    affiliate: AffiliateResponse
    recent_commissions: List[CommissionResponse] = []
    recent_clicks: List[ClickResponse] = []


# ============================================================================
# Payout Schemas
# ============================================================================

class PaymentDetails(BaseModel):
    account_name: Optional[str] = Field(None, max_length=200)
    account_number: Optional[str] = Field(None, max_length=50)
    bank_name: Optional[str] = Field(None, max_length=200)
    routing_number: Optional[str] = Field(None, max_length=50)
    mobile_number: Optional[str] = Field(None, max_length=20)
    paypal_email: Optional[str] = Field(None, max_length=255)


class PayoutRequestCreate(BaseModel):
    vendor_id: UUID
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)

    @model_validator(mode="after")
    def check_details(self):
        d = self.payment_details
        if self.payment_method == PaymentMethod.BANK and not d.account_number:
            raise ValueError("Bank payouts require an account number")
        if self.payment_method == PaymentMethod.MOBILE_MONEY and not d.mobile_number:
            raise ValueError("Mobile money payouts require a mobile number")
        if self.payment_method == PaymentMethod.PAYPAL and not d.paypal_email:
            raise ValueError("PayPal payouts require an email")
        return self


class PayoutRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class PayoutResponse(BaseResponseSchema):
    id: UUID
    affiliate_id: UUID
    vendor_id: UUID
    requested_amount: Decimal
    total_amount: Decimal
    platform_fee: Decimal
    vendor_fee: Decimal
    net_amount: Decimal
    cancelled_amount: Decimal = Decimal("0.00")
    payment_method: PaymentMethod
    payment_details: Optional[dict] = None
    status: str
    commission_ids: List[UUID] = []
    requested_by: UUID
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[UUID] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    transaction_id: Optional[str] = None
    completed_date: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime


# ============================================================================
# Dashboard / Admin Projections
# ============================================================================

class AffiliateSummary(BaseModel):
    affiliate_id: UUID
    referral_code: str
    status: str
    total_clicks: int
    total_conversions: int
    conversion_rate: float
    total_earnings: Decimal
    pending_earnings: Decimal
    approved_earnings: Decimal
    paid_earnings: Decimal
    this_month_earnings: Decimal
    last_month_earnings: Decimal


class TopAffiliate(BaseModel):
    affiliate_id: UUID
    referral_code: str
    total_clicks: int
    total_conversions: int
    total_earnings: Decimal


class VendorAnalytics(BaseModel):
    vendor_id: UUID
    period: str
    clicks: int
    conversions: int
    conversion_rate: float
    total_commission: Decimal
    pending_commission: Decimal
    paid_commission: Decimal
    affiliates_by_status: dict
    top_affiliates: List[TopAffiliate]


class AdminStats(BaseModel):
    total_affiliates: int
    affiliates_by_status: dict
    total_clicks: int
    total_conversions: int
    conversion_rate: float
    total_commissions: Decimal
    platform_revenue: Decimal
    active_programs: int


class TopVendor(BaseModel):
    vendor_id: UUID
    total_commission: Decimal
    platform_revenue: Decimal
    commission_count: int
    affiliate_count: int


class FraudReportResponse(BaseModel):
    affiliate_id: UUID
    vendor_id: UUID
    referral_code: str
    status: str
    total_clicks: int
    distinct_visitors: int
    conversions: int
    click_to_visitor_ratio: float
    risk_score: float
    reasons: List[str]


class ReconciliationResponse(BaseModel):
    affiliate_id: UUID
    in_sync: bool
    repaired: bool
    drift: dict

    @field_validator("drift", mode="before")
    @classmethod
    def stringify(cls, v):
        return {k: {kk: str(vv) for kk, vv in d.items()} for k, d in v.items()}
