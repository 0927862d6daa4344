"""
Affiliate API Endpoints

Self-service endpoints for affiliates:
- Registration with a vendor
- Profile management
- Dashboard summary, commission and click history
- Tracked links (create, pause, delete)
- Program discovery
- Payout requests
- Referral code resolution (for collaborators)
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from app.api.deps import DB, Cache, CurrentPrincipal
from app.models.affiliate import CommissionStatus
from app.schemas.affiliate import (
    AffiliateLinkCreate,
    AffiliateLinkResponse,
    AffiliateLinkStatusUpdate,
    AffiliateProfileUpdate,
    AffiliateRegister,
    AffiliateResponse,
    AffiliateSummary,
    ClickResponse,
    CommissionResponse,
    PayoutRequestCreate,
    PayoutResponse,
    ProgramListing,
)
from app.services.affiliate_errors import AffiliateError
from app.services.affiliate_service import AffiliateService
from app.services.analytics_service import AnalyticsService
from app.services.commission_ledger import CommissionLedger
from app.services.payout_service import PayoutBatcher
from app.services.program_service import ProgramService
from app.services.referral_resolver import ReferralResolver


router = APIRouter(prefix="/affiliates", tags=["Affiliates"])


# ============================================================================
# Program Discovery
# ============================================================================

@router.get("/programs")
async def browse_programs(
    db: DB,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    """Programs accepting new affiliates, with their commission terms."""
    items, total = await ProgramService(db).list_open(skip=(page - 1) * page_size, limit=page_size)
    return {
        "items": [ProgramListing.model_validate(p) for p in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


# ============================================================================
# Registration & Profile
# ============================================================================

@router.post("/register", response_model=AffiliateResponse, status_code=status.HTTP_201_CREATED)
async def register_affiliate(
    data: AffiliateRegister,
    principal: CurrentPrincipal,
    db: DB,
    cache: Cache,
):
    """
    Register the current user as an affiliate of a vendor.

    The vendor's program is created with default settings if it does not
    exist yet. Affiliates start PENDING unless the program auto-approves.
    """
    service = AffiliateService(db, cache)
    try:
        return await service.register(principal.user_id, data)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/me", response_model=list[AffiliateResponse])
async def list_my_affiliations(principal: CurrentPrincipal, db: DB):
    """All vendor affiliations of the current user."""
    return await AffiliateService(db).list_for_user(principal.user_id)


@router.get("/me/{vendor_id}", response_model=AffiliateResponse)
async def get_my_affiliate(vendor_id: UUID, principal: CurrentPrincipal, db: DB):
    try:
        return await AffiliateService(db).get_for_user(principal.user_id, vendor_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put("/me/{vendor_id}", response_model=AffiliateResponse)
async def update_my_affiliate(
    vendor_id: UUID,
    data: AffiliateProfileUpdate,
    principal: CurrentPrincipal,
    db: DB,
):
    service = AffiliateService(db)
    try:
        affiliate = await service.get_for_user(principal.user_id, vendor_id)
        return await service.update_profile(affiliate, data)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ============================================================================
# Dashboard
# ============================================================================

@router.get("/me/{vendor_id}/summary", response_model=AffiliateSummary)
async def get_my_summary(vendor_id: UUID, principal: CurrentPrincipal, db: DB):
    """Aggregates, conversion rate, and this/last month earnings."""
    try:
        affiliate = await AffiliateService(db).get_for_user(principal.user_id, vendor_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return await AnalyticsService(db).affiliate_summary(affiliate)


@router.get("/me/{vendor_id}/commissions")
async def get_my_commissions(
    vendor_id: UUID,
    principal: CurrentPrincipal,
    db: DB,
    status_filter: Optional[CommissionStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    try:
        affiliate = await AffiliateService(db).get_for_user(principal.user_id, vendor_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    items, total = await CommissionLedger(db).list_commissions(
        affiliate_id=affiliate.id,
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


@router.get("/me/{vendor_id}/clicks")
async def get_my_clicks(
    vendor_id: UUID,
    principal: CurrentPrincipal,
    db: DB,
    converted: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    try:
        affiliate = await AffiliateService(db).get_for_user(principal.user_id, vendor_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    items, total = await AnalyticsService(db).list_clicks(
        affiliate.id, converted=converted, skip=(page - 1) * page_size, limit=page_size
    )
    return {
        "items": [ClickResponse.model_validate(c) for c in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


# ============================================================================
# Links
# ============================================================================

@router.post("/me/{vendor_id}/links", response_model=AffiliateLinkResponse, status_code=status.HTTP_201_CREATED)
async def create_my_link(
    vendor_id: UUID,
    data: AffiliateLinkCreate,
    principal: CurrentPrincipal,
    db: DB,
):
    """Create a tracked link; its affiliate_url carries the referral code."""
    service = AffiliateService(db)
    try:
        affiliate = await service.get_for_user(principal.user_id, vendor_id)
        return await service.create_link(affiliate, data)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/me/{vendor_id}/links", response_model=list[AffiliateLinkResponse])
async def list_my_links(vendor_id: UUID, principal: CurrentPrincipal, db: DB):
    service = AffiliateService(db)
    try:
        affiliate = await service.get_for_user(principal.user_id, vendor_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return await service.list_links(affiliate.id)


@router.post("/me/{vendor_id}/links/{link_id}/status", response_model=AffiliateLinkResponse)
async def update_my_link_status(
    vendor_id: UUID,
    link_id: UUID,
    data: AffiliateLinkStatusUpdate,
    principal: CurrentPrincipal,
    db: DB,
):
    """Pause or resume a link. Paused short links answer 404."""
    service = AffiliateService(db)
    try:
        affiliate = await service.get_for_user(principal.user_id, vendor_id)
        return await service.set_link_active(affiliate, link_id, data.is_active)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete("/me/{vendor_id}/links/{link_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_my_link(vendor_id: UUID, link_id: UUID, principal: CurrentPrincipal, db: DB):
    service = AffiliateService(db)
    try:
        affiliate = await service.get_for_user(principal.user_id, vendor_id)
        await service.delete_link(affiliate, link_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


# ============================================================================
# Payouts
# ============================================================================

@router.post("/me/payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
async def request_my_payout(data: PayoutRequestCreate, principal: CurrentPrincipal, db: DB):
    """
    Request a payout of pending earnings.

    Rejected with 400 when the amount exceeds pending earnings, is below
    the program minimum, or uses a payment method the program does not accept.
    """
    try:
        affiliate = await AffiliateService(db).get_for_user(principal.user_id, data.vendor_id)
        result = await PayoutBatcher(db).request_payout(
            affiliate_id=affiliate.id,
            vendor_id=data.vendor_id,
            amount=data.amount,
            method=data.payment_method,
            details=data.payment_details,
            requested_by=principal.user_id,
        )
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    if not result.created:
        raise HTTPException(
            status_code=400,
            detail={"reason": result.outcome.value, "message": result.message},
        )
    return result.payout


@router.get("/me/{vendor_id}/payouts")
async def list_my_payouts(
    vendor_id: UUID,
    principal: CurrentPrincipal,
    db: DB,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    try:
        affiliate = await AffiliateService(db).get_for_user(principal.user_id, vendor_id)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    items, total = await PayoutBatcher(db).list_payouts(
        affiliate_id=affiliate.id, skip=(page - 1) * page_size, limit=page_size
    )
    return {
        "items": [PayoutResponse.model_validate(p) for p in items],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


# ============================================================================
# Referral Resolution
# ============================================================================

@router.get("/resolve/{code}")
async def resolve_referral(code: str, db: DB, cache: Cache):
    """
    Resolve a referral code to its approved affiliate.

    404 for unknown codes, 403 for affiliates that are not approved.
    """
    try:
        ref = await ReferralResolver(db, cache).resolve(code)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ref.to_dict()
