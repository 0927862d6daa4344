"""Affiliate models for referral attribution and commission tracking.

This module holds the five records of the affiliate engine plus their
supporting tables:
- AffiliateProgram (+ AffiliateCommissionRule): per-vendor configuration
- Affiliate: promoter identity with running aggregates
- AffiliateLink: tracked links with short codes
- AffiliateClick: immutable visit events
- AffiliateCommission: money-bearing ledger lines
- AffiliatePayout (+ AffiliatePayoutItem): payout batches
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Boolean, DateTime, ForeignKey, Integer, Text,
    UniqueConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.database import Base
from app.db_types import JSONType, UUIDType, MoneyType, RateType


ZERO = Decimal("0.00")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS (stored as VARCHAR) ====================

class AffiliateStatus(str, Enum):
    """Affiliate registration status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    BANNED = "BANNED"


class CommissionType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"


class CommissionStatus(str, Enum):
    """Commission ledger status."""
    PENDING = "PENDING"           # Order completed, commission calculated
    APPROVED = "APPROVED"         # Included in a payout request
    PAID = "PAID"                 # Payout confirmed by payment provider
    CANCELLED = "CANCELLED"       # Order refunded or charged back


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"


class PaymentMethod(str, Enum):
    BANK = "BANK"
    MOBILE_MONEY = "MOBILE_MONEY"
    PAYPAL = "PAYPAL"


class PayoutFrequency(str, Enum):
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"


class LinkType(str, Enum):
    PRODUCT = "PRODUCT"
    STORE = "STORE"
    CATEGORY = "CATEGORY"
    GENERAL = "GENERAL"


class RuleType(str, Enum):
    CATEGORY = "CATEGORY"
    TIER = "TIER"


# ==================== MODELS ====================

class AffiliateProgram(Base):
    """
    Per-vendor affiliate program configuration.

    Created lazily on the first affiliate registration for a vendor and
    mutated only by the owning vendor afterwards.
    """
    __tablename__ = "affiliate_programs"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    vendor_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        unique=True,
        nullable=False,
        comment="One program per vendor"
    )
    store_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Global settings
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    default_commission_rate: Mapped[Decimal] = mapped_column(RateType, default=Decimal("5.00"))
    default_commission_type: Mapped[str] = mapped_column(
        String(20),
        default=CommissionType.PERCENTAGE.value,
        comment="PERCENTAGE, FIXED"
    )
    default_fixed_amount: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO)
    min_payout_amount: Mapped[Decimal] = mapped_column(MoneyType, default=Decimal("50.00"))
    payout_frequency: Mapped[str] = mapped_column(
        String(20),
        default=PayoutFrequency.MONTHLY.value,
        comment="WEEKLY, MONTHLY, QUARTERLY"
    )
    auto_approve_affiliates: Mapped[bool] = mapped_column(Boolean, default=False)
    require_social_media_verification: Mapped[bool] = mapped_column(Boolean, default=False)

    # Payout settings
    allowed_payment_methods: Mapped[list] = mapped_column(
        JSONType,
        default=lambda: [PaymentMethod.BANK.value, PaymentMethod.MOBILE_MONEY.value]
    )
    processing_fee: Mapped[Decimal] = mapped_column(
        RateType,
        default=Decimal("3.00"),
        comment="Platform fee % deducted from each commission"
    )
    vendor_fee: Mapped[Decimal] = mapped_column(
        RateType,
        default=ZERO,
        comment="Vendor fee % deducted from each commission"
    )
    payout_processing_fee: Mapped[Decimal] = mapped_column(
        RateType,
        default=ZERO,
        comment="Platform fee % charged on a payout batch"
    )
    payout_vendor_fee: Mapped[Decimal] = mapped_column(
        RateType,
        default=ZERO,
        comment="Vendor fee % charged on a payout batch"
    )

    # Tracking settings
    cookie_duration_days: Mapped[int] = mapped_column(Integer, default=30)
    allow_multiple_conversions: Mapped[bool] = mapped_column(Boolean, default=True)
    conversion_window_days: Mapped[int] = mapped_column(Integer, default=7)
    require_click_match: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Only attribute orders with a click inside the conversion window"
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now
    )

    rules: Mapped[List["AffiliateCommissionRule"]] = relationship(
        "AffiliateCommissionRule",
        back_populates="program",
        cascade="all, delete-orphan",
        order_by="AffiliateCommissionRule.position",
        lazy="selectin",
    )

    @property
    def is_accepting(self) -> bool:
        return bool(self.is_active and self.enabled)


class AffiliateCommissionRule(Base):
    """
    One commission rule of a program.

    CATEGORY rows override rate and type for a product category.
    TIER rows give a percentage rate once cumulative sales reach min_sales.
    """
    __tablename__ = "affiliate_commission_rules"
    __table_args__ = (
        Index('ix_affiliate_commission_rules_program', 'program_id', 'rule_type'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    program_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliate_programs.id", ondelete="CASCADE"),
        nullable=False
    )
    rule_type: Mapped[str] = mapped_column(String(20), nullable=False, comment="CATEGORY, TIER")
    position: Mapped[int] = mapped_column(Integer, default=0)

    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    min_sales: Mapped[Optional[Decimal]] = mapped_column(MoneyType, nullable=True)
    commission_rate: Mapped[Decimal] = mapped_column(RateType, nullable=False)
    commission_type: Mapped[str] = mapped_column(
        String(20),
        default=CommissionType.PERCENTAGE.value
    )
    fixed_amount: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO)

    program: Mapped["AffiliateProgram"] = relationship("AffiliateProgram", back_populates="rules")


class Affiliate(Base):
    """
    A person promoting a vendor's catalog.

    Running aggregates are only ever changed with atomic column increments;
    the ledger is the source of truth and reconciliation recomputes them.
    """
    __tablename__ = "affiliates"
    __table_args__ = (
        UniqueConstraint('user_id', 'vendor_id', name='uq_affiliate_user_vendor'),
        Index('ix_affiliates_vendor_status', 'vendor_id', 'status'),
        Index('ix_affiliates_status', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    vendor_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    store_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    program_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("affiliate_programs.id", ondelete="SET NULL"),
        nullable=True
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=AffiliateStatus.PENDING.value,
        nullable=False,
        comment="PENDING, APPROVED, REJECTED, BANNED"
    )

    commission_rate: Mapped[Decimal] = mapped_column(RateType, default=Decimal("5.00"))
    commission_type: Mapped[str] = mapped_column(
        String(20),
        default=CommissionType.PERCENTAGE.value
    )
    fixed_commission_amount: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO)

    referral_code: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
        comment="Issued once, never changed"
    )

    # Running aggregates
    total_clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_earnings: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO, nullable=False)
    pending_earnings: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO, nullable=False)
    paid_earnings: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO, nullable=False)

    # Profile
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    social_media: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    preferred_categories: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    application_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    approval_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    banned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now
    )

    program: Mapped[Optional["AffiliateProgram"]] = relationship("AffiliateProgram")

    @validates("referral_code")
    def validate_referral_code(self, key, value):
        if self.referral_code is not None and value != self.referral_code:
            raise ValueError("Referral code cannot be changed once issued")
        return value


class AffiliateLink(Base):
    """Tracked link an affiliate shares, resolvable by short code."""
    __tablename__ = "affiliate_links"
    __table_args__ = (
        Index('ix_affiliate_links_affiliate', 'affiliate_id', 'is_active'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    link_type: Mapped[str] = mapped_column(
        String(20),
        default=LinkType.GENERAL.value,
        comment="PRODUCT, STORE, CATEGORY, GENERAL"
    )
    target_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    original_url: Mapped[str] = mapped_column(String(1000), nullable=False)
    affiliate_url: Mapped[str] = mapped_column(String(1100), nullable=False)
    short_code: Mapped[str] = mapped_column(String(12), unique=True, nullable=False)

    clicks: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    conversions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    earnings: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_used: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class AffiliateClick(Base):
    """
    Immutable visit event.

    Only the conversion fields are ever written after insert, exactly once,
    when an order is attributed to the click.
    """
    __tablename__ = "affiliate_clicks"
    __table_args__ = (
        Index('ix_affiliate_clicks_affiliate_created', 'affiliate_id', 'created_at'),
        Index('ix_affiliate_clicks_vendor_created', 'vendor_id', 'created_at'),
        Index('ix_affiliate_clicks_visitor', 'visitor_id'),
        Index('ix_affiliate_clicks_converted_created', 'converted', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    affiliate_link_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("affiliate_links.id", ondelete="SET NULL"),
        nullable=True
    )

    visitor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    link_type: Mapped[str] = mapped_column(String(20), default=LinkType.GENERAL.value)
    target_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    clicked_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    target_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)

    # Source metadata (fraud heuristics only)
    referrer: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    converted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    conversion_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class AffiliateCommission(Base):
    """
    Money-bearing ledger line, one per attributed (order, order line).

    net_commission is derived; assigning any of its inputs recomputes it.
    """
    __tablename__ = "affiliate_commissions"
    __table_args__ = (
        UniqueConstraint('order_id', 'order_line_id', name='uq_affiliate_commission_order_line'),
        Index('ix_affiliate_commissions_affiliate_status', 'affiliate_id', 'status'),
        Index('ix_affiliate_commissions_vendor_status', 'vendor_id', 'status'),
        Index('ix_affiliate_commissions_affiliate_earned', 'affiliate_id', 'earned_date'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    order_id: Mapped[str] = mapped_column(String(100), nullable=False)
    order_line_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    product_category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    click_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("affiliate_clicks.id", ondelete="SET NULL"),
        nullable=True
    )

    order_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(RateType, nullable=False)
    commission_type: Mapped[str] = mapped_column(String(20), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False, comment="Gross")
    platform_fee: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO, nullable=False)
    vendor_fee: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO, nullable=False)
    net_commission: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=CommissionStatus.PENDING.value,
        nullable=False,
        comment="PENDING, APPROVED, PAID, CANCELLED"
    )
    payout_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("affiliate_payouts.id", ondelete="SET NULL"),
        nullable=True
    )

    needs_review: Mapped[bool] = mapped_column(Boolean, default=False)
    review_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    earned_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    approved_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    refunded: Mapped[bool] = mapped_column(Boolean, default=False)
    refund_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now
    )

    @validates("commission_amount", "platform_fee", "vendor_fee")
    def validate_amounts(self, key, value):
        value = Decimal(value if value is not None else 0)
        if value < 0:
            raise ValueError(f"{key} cannot be negative")
        gross = value if key == "commission_amount" else (self.commission_amount or ZERO)
        platform_fee = value if key == "platform_fee" else (self.platform_fee or ZERO)
        vendor_fee = value if key == "vendor_fee" else (self.vendor_fee or ZERO)
        self.net_commission = max(gross - platform_fee - vendor_fee, ZERO)
        return value


class AffiliatePayout(Base):
    """Batch request grouping commission entries of one affiliate."""
    __tablename__ = "affiliate_payouts"
    __table_args__ = (
        Index('ix_affiliate_payouts_affiliate_status', 'affiliate_id', 'status'),
        Index('ix_affiliate_payouts_vendor_status', 'vendor_id', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliates.id", ondelete="CASCADE"),
        nullable=False
    )
    vendor_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)

    requested_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO)
    vendor_fee: Mapped[Decimal] = mapped_column(MoneyType, default=ZERO)
    net_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    commissions_net: Mapped[Decimal] = mapped_column(
        MoneyType,
        nullable=False,
        comment="Sum of net_commission moved out of pending earnings"
    )
    cancelled_amount: Mapped[Decimal] = mapped_column(
        MoneyType,
        default=ZERO,
        nullable=False,
        comment="Gross of entries refunded after batching"
    )

    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_details: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Masked account details"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=PayoutStatus.PENDING.value,
        nullable=False,
        comment="PENDING, APPROVED, REJECTED, PAID"
    )

    requested_by: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False)
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    processing_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now
    )

    items: Mapped[List["AffiliatePayoutItem"]] = relationship(
        "AffiliatePayoutItem",
        back_populates="payout",
        cascade="all, delete-orphan",
        order_by="AffiliatePayoutItem.position",
        lazy="selectin",
    )

    @property
    def commission_ids(self) -> List[uuid.UUID]:
        return [item.commission_id for item in self.items]


class AffiliatePayoutItem(Base):
    """Ordered membership of a commission entry in a payout."""
    __tablename__ = "affiliate_payout_items"
    __table_args__ = (
        UniqueConstraint('payout_id', 'commission_id', name='uq_affiliate_payout_item'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    payout_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliate_payouts.id", ondelete="CASCADE"),
        nullable=False
    )
    commission_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("affiliate_commissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(MoneyType, nullable=False)

    payout: Mapped["AffiliatePayout"] = relationship("AffiliatePayout", back_populates="items")
