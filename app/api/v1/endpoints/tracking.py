"""
Short Link Redirects

``GET /r/{short_code}`` records a click against the link's affiliate and
redirects to the link's original URL with the tracking cookies set.
"""

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import RedirectResponse

from app.api.deps import DB
from app.config import settings
from app.middleware.affiliate_tracking import safe_track_referral, set_tracking_cookies
from app.models.affiliate import AffiliateStatus, LinkType
from app.services.affiliate_errors import AffiliateError
from app.services.affiliate_service import AffiliateService
from app.services.click_service import ClickTarget, visitor_id_from_cookies


router = APIRouter(tags=["Tracking"])


@router.get("/r/{short_code}")
async def follow_short_link(short_code: str, request: Request, db: DB):
    try:
        link, affiliate = await AffiliateService(db).get_link_by_short_code(short_code)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    response = RedirectResponse(url=link.original_url, status_code=302)
    if affiliate.status != AffiliateStatus.APPROVED.value:
        return response

    visitor_id = visitor_id_from_cookies(
        request.cookies.get(settings.VISITOR_COOKIE_NAME),
        request.cookies.get(settings.SESSION_COOKIE_NAME),
    )
    target = ClickTarget(
        link_type=LinkType(link.link_type),
        target_id=link.target_id,
        target_url=link.original_url,
        link_id=link.id,
    )
    ref = await safe_track_referral(request, affiliate.referral_code, visitor_id, target)
    if ref is not None:
        set_tracking_cookies(response, ref, visitor_id)
    return response
