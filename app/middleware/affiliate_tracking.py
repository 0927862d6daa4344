"""
Affiliate tracking middleware

Records a click whenever a request arrives with a referral code in the
query string. Tracking is best-effort: it is bounded by a timeout and any
failure is logged and swallowed so the page itself is never affected.
"""
import asyncio
import logging
from typing import Optional

from fastapi import Request, Response

from app.config import settings
from app.database import async_session_factory
from app.models.affiliate import LinkType
from app.services.click_service import (
    ClickMetadata,
    ClickRecorder,
    ClickTarget,
    visitor_id_from_cookies,
)
from app.services.referral_resolver import AffiliateRef, ReferralResolver

logger = logging.getLogger(__name__)

# Routes that never carry storefront referral traffic
SKIP_PREFIXES = (
    "/api/v1/webhooks",
    "/api/v1/admin",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/health",
    "/r/",
)

TARGET_SEGMENTS = {
    "products": LinkType.PRODUCT,
    "product": LinkType.PRODUCT,
    "stores": LinkType.STORE,
    "store": LinkType.STORE,
    "categories": LinkType.CATEGORY,
    "category": LinkType.CATEGORY,
}


def target_from_request(request: Request) -> ClickTarget:
    """Infer what the visitor landed on from the URL path, e.g. /products/<id>."""
    segments = [s for s in request.url.path.split("/") if s]
    for index, segment in enumerate(segments):
        link_type = TARGET_SEGMENTS.get(segment.lower())
        if link_type:
            target_id = segments[index + 1] if index + 1 < len(segments) else None
            return ClickTarget(link_type=link_type, target_id=target_id, target_url=str(request.url))
    return ClickTarget(link_type=LinkType.GENERAL, target_url=str(request.url))


def metadata_from_request(request: Request) -> ClickMetadata:
    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (
        request.client.host if request.client else None
    )
    return ClickMetadata(
        referrer=request.headers.get("referer"),
        user_agent=request.headers.get("user-agent"),
        ip_address=ip_address,
        clicked_url=str(request.url),
        session_id=request.cookies.get(settings.SESSION_COOKIE_NAME),
    )


async def track_referral(
    request: Request,
    code: str,
    visitor_id: str,
    target: Optional[ClickTarget] = None,
) -> Optional[AffiliateRef]:
    """Resolve the code and record one click in its own session."""
    session_factory = getattr(request.app.state, "session_factory", async_session_factory)
    cache = getattr(request.app.state, "cache", None)

    async with session_factory() as db:
        ref = await ReferralResolver(db, cache).try_resolve(code)
        if ref is None:
            return None
        await ClickRecorder(db).record_click(
            ref,
            visitor_id=visitor_id,
            target=target or target_from_request(request),
            metadata=metadata_from_request(request),
        )
        return ref


def set_tracking_cookies(response: Response, ref: AffiliateRef, visitor_id: str) -> None:
    max_age = 60 * 60 * 24 * ref.cookie_duration_days
    response.set_cookie(
        settings.AFFILIATE_COOKIE_NAME,
        ref.referral_code,
        max_age=max_age,
        httponly=True,
        samesite="lax",
    )
    response.set_cookie(
        settings.VISITOR_COOKIE_NAME,
        visitor_id,
        max_age=max_age,
        httponly=True,
        samesite="lax",
    )


async def safe_track_referral(
    request: Request,
    code: str,
    visitor_id: str,
    target: Optional[ClickTarget] = None,
) -> Optional[AffiliateRef]:
    """track_referral bounded by the tracking timeout; never raises."""
    try:
        return await asyncio.wait_for(
            track_referral(request, code, visitor_id, target),
            timeout=settings.CLICK_TRACKING_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Affiliate click tracking timed out for code {code}")
    except Exception:
        logger.exception(f"Affiliate click tracking failed for code {code}")
    return None


async def affiliate_tracking_middleware(request: Request, call_next):
    """
    Middleware that records referral clicks.

    This middleware:
    1. Picks the referral code from the query string (GET requests only)
    2. Reuses the visitor cookie, or derives a visitor id from the session
    3. Records the click, then stores ref code and visitor id in cookies
    """
    code = request.query_params.get(settings.AFFILIATE_REF_PARAM)
    if not code or request.method != "GET" or request.url.path.startswith(SKIP_PREFIXES):
        return await call_next(request)

    visitor_id = visitor_id_from_cookies(
        request.cookies.get(settings.VISITOR_COOKIE_NAME),
        request.cookies.get(settings.SESSION_COOKIE_NAME),
    )
    ref = await safe_track_referral(request, code, visitor_id)
    request.state.affiliate_ref = ref

    response = await call_next(request)
    if ref is not None:
        set_tracking_cookies(response, ref, visitor_id)
    return response
