"""
Vendor Affiliate Management Endpoints

For the vendor owning an affiliate program:
- Program settings and commission rules
- Affiliate applications (approve / reject) and single-affiliate detail
- Commission history and analytics
- Vendor-scoped suspicious-affiliate scan
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query

from app.api.deps import DB, Cache, VendorPrincipal
from app.models.affiliate import AffiliateStatus, CommissionStatus
from app.schemas.affiliate import (
    AffiliateResponse,
    AffiliateStatusUpdate,
    ClickResponse,
    CommissionResponse,
    FraudReportResponse,
    ProgramResponse,
    ProgramUpdate,
    VendorAffiliateDetail,
    VendorAnalytics,
)
from app.services.affiliate_errors import AffiliateError
from app.services.affiliate_service import AffiliateService
from app.services.analytics_service import AnalyticsService
from app.services.commission_ledger import CommissionLedger
from app.services.fraud_service import FraudHeuristics
from app.services.program_service import ProgramService


router = APIRouter(prefix="/vendor/affiliates", tags=["Vendor Affiliates"])


# ============================================================================
# Program
# ============================================================================

@router.get("/program", response_model=ProgramResponse)
async def get_program(vendor: VendorPrincipal, db: DB):
    """Get the vendor's program, creating it with defaults if needed."""
    program = await ProgramService(db).get_or_create(vendor.vendor_id)
    await db.commit()
    return program


@router.put("/program", response_model=ProgramResponse)
async def update_program(data: ProgramUpdate, vendor: VendorPrincipal, db: DB):
    """
    Update program settings.

    When ``rules`` is given it replaces the program's whole rule list
    (category overrides and sales tiers).
    """
    return await ProgramService(db).update(vendor.vendor_id, data)


# ============================================================================
# Affiliates
# ============================================================================

@router.get("")
async def list_affiliates(
    vendor: VendorPrincipal,
    db: DB,
    status_filter: Optional[AffiliateStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    items, total = await AffiliateService(db).list_for_vendor(
        vendor.vendor_id,
        status=status_filter.value if status_filter else None,
        skip=(page - 1) * page_size,
        limit=page_size,
    )
    return {
        "items": [AffiliateResponse.model_validate(a) for a in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.patch("/{affiliate_id}/status", response_model=AffiliateResponse)
async def update_affiliate_status(
    affiliate_id: UUID,
    data: AffiliateStatusUpdate,
    vendor: VendorPrincipal,
    db: DB,
    cache: Cache,
):
    """
    Approve or reject a PENDING affiliate.

    On approval the vendor may set the affiliate's commission rate and type.
    """
    try:
        return await AffiliateService(db, cache).update_status(affiliate_id, vendor.vendor_id, data)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ============================================================================
# Commissions & Analytics
# ============================================================================

@router.get("/commissions")
async def list_vendor_commissions(
    vendor: VendorPrincipal,
    db: DB,
    affiliate_id: Optional[UUID] = None,
    status_filter: Optional[CommissionStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    items, total = await CommissionLedger(db).list_commissions(
        affiliate_id=affiliate_id,
        vendor_id=vendor.vendor_id,
        status=status_filter.value if status_filter else None,
        skip=(page - 1) * page_size,
        limit=page_size,
    )
    return {
        "items": [CommissionResponse.model_validate(c) for c in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/analytics", response_model=VendorAnalytics)
async def get_vendor_analytics(
    vendor: VendorPrincipal,
    db: DB,
    period: str = Query("30d", pattern="^(7d|30d|90d)$"),
):
    return await AnalyticsService(db).vendor_analytics(vendor.vendor_id, period)


@router.get("/suspicious", response_model=list[FraudReportResponse])
async def list_suspicious_affiliates(
    vendor: VendorPrincipal,
    db: DB,
    window_days: int = Query(30, ge=1, le=365),
):
    reports = await FraudHeuristics(db).scan(window_days=window_days, vendor_id=vendor.vendor_id)
    return [r.__dict__ for r in reports]


# Declared last so the fixed paths above take precedence
@router.get("/{affiliate_id}", response_model=VendorAffiliateDetail)
async def get_affiliate_detail(affiliate_id: UUID, vendor: VendorPrincipal, db: DB):
    """One affiliate of this vendor with its ten latest commissions and clicks."""
    try:
        affiliate = await AffiliateService(db).get_for_vendor(affiliate_id, vendor.vendor_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    commissions, _ = await CommissionLedger(db).list_commissions(affiliate_id=affiliate.id, limit=10)
    clicks, _ = await AnalyticsService(db).list_clicks(affiliate.id, limit=10)
    return {
        "affiliate": AffiliateResponse.model_validate(affiliate),
        "recent_commissions": [CommissionResponse.model_validate(c) for c in commissions],
        "recent_clicks": [ClickResponse.model_validate(c) for c in clicks],
    }
