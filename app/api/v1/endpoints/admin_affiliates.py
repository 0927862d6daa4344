"""
Admin Affiliate Endpoints

Platform administration of the affiliate engine:
- Global stats and top vendors
- Suspicious affiliates and bans
- Programs overview
- Payout approval / rejection
- Ledger reconciliation and background job status
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query

from app.api.deps import DB, AdminPrincipal, Cache
from app.jobs.scheduler import get_job_status
from app.models.affiliate import PayoutStatus
from app.schemas.affiliate import (
    AdminStats,
    AffiliateBanRequest,
    AffiliateResponse,
    FraudReportResponse,
    PayoutRejectRequest,
    PayoutResponse,
    ProgramResponse,
    ReconciliationResponse,
    TopVendor,
)
from app.services.affiliate_errors import AffiliateError
from app.services.affiliate_service import AffiliateService
from app.services.analytics_service import AnalyticsService
from app.services.commission_ledger import CommissionLedger
from app.services.fraud_service import FraudHeuristics
from app.services.payout_service import PayoutBatcher
from app.services.program_service import ProgramService


router = APIRouter(prefix="/admin/affiliates", tags=["Admin Affiliates"])


# ============================================================================
# Reporting
# ============================================================================

@router.get("/stats", response_model=AdminStats)
async def get_stats(admin: AdminPrincipal, db: DB):
    return await AnalyticsService(db).admin_stats()


@router.get("/top-vendors", response_model=list[TopVendor])
async def get_top_vendors(
    admin: AdminPrincipal,
    db: DB,
    limit: int = Query(10, ge=1, le=100),
):
    return await AnalyticsService(db).top_vendors(limit)


@router.get("/jobs")
async def get_background_jobs(admin: AdminPrincipal):
    """Scheduled fraud scan and reconciliation jobs with their next run time."""
    return {"jobs": get_job_status()}


@router.get("/suspicious", response_model=list[FraudReportResponse])
async def get_suspicious_affiliates(
    admin: AdminPrincipal,
    db: DB,
    window_days: int = Query(30, ge=1, le=365),
    limit: int = Query(20, ge=1, le=100),
):
    """
    Affiliates flagged by the fraud heuristics, highest risk first.

    Advisory only; use the ban endpoint to act on a report.
    """
    reports = await FraudHeuristics(db).scan(window_days=window_days, limit=limit)
    return [r.__dict__ for r in reports]


@router.post("/{affiliate_id}/ban", response_model=AffiliateResponse)
async def ban_affiliate(
    affiliate_id: UUID,
    data: AffiliateBanRequest,
    admin: AdminPrincipal,
    db: DB,
    cache: Cache,
):
    try:
        return await AffiliateService(db, cache).ban(affiliate_id, admin.user_id, data.reason)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{affiliate_id}/reconcile", response_model=ReconciliationResponse)
async def reconcile_affiliate(
    affiliate_id: UUID,
    admin: AdminPrincipal,
    db: DB,
    repair: bool = False,
):
    """Compare an affiliate's aggregates with the ledger; repair on request."""
    try:
        report = await CommissionLedger(db).reconcile(affiliate_id, repair=repair)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    await db.commit()
    return {
        "affiliate_id": report.affiliate_id,
        "in_sync": report.in_sync,
        "repaired": report.repaired,
        "drift": report.drift,
    }


# ============================================================================
# Programs
# ============================================================================

@router.get("/programs")
async def list_programs(
    admin: AdminPrincipal,
    db: DB,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    items, total = await ProgramService(db).list_programs(
        is_active=is_active, skip=(page - 1) * page_size, limit=page_size
    )
    return {
        "items": [ProgramResponse.model_validate(p) for p in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


# ============================================================================
# Payouts
# ============================================================================

@router.get("/payouts")
async def list_payouts(
    admin: AdminPrincipal,
    db: DB,
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    vendor_id: Optional[UUID] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    items, total = await PayoutBatcher(db).list_payouts(
        vendor_id=vendor_id,
        status=status_filter.value if status_filter else None,
        skip=(page - 1) * page_size,
        limit=page_size,
    )
    return {
        "items": [PayoutResponse.model_validate(p) for p in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.post("/payouts/{payout_id}/approve", response_model=PayoutResponse)
async def approve_payout(payout_id: UUID, admin: AdminPrincipal, db: DB):
    try:
        return await PayoutBatcher(db).approve(payout_id, admin.user_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/payouts/{payout_id}/reject", response_model=PayoutResponse)
async def reject_payout(
    payout_id: UUID,
    data: PayoutRejectRequest,
    admin: AdminPrincipal,
    db: DB,
):
    """Reject a PENDING payout; its commissions return to pending earnings."""
    try:
        return await PayoutBatcher(db).reject(payout_id, admin.user_id, data.reason)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
