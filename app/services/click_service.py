"""
Click Recorder

Writes one AffiliateClick per resolved referral visit and bumps the
affiliate's click counter with an atomic SQL increment, so concurrent
clicks never lose updates.
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.affiliate import Affiliate, AffiliateClick, AffiliateLink, LinkType
from app.services.referral_resolver import AffiliateRef

logger = logging.getLogger(__name__)

VISITOR_ID_MAX_LENGTH = 64


@dataclass(frozen=True)
class ClickTarget:
    link_type: LinkType = LinkType.GENERAL
    target_id: Optional[str] = None
    target_url: Optional[str] = None
    link_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class ClickMetadata:
    """Source metadata kept for fraud heuristics only."""
    referrer: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    clicked_url: Optional[str] = None
    session_id: Optional[str] = None
    extra: dict = field(default_factory=dict)


def derive_visitor_id(session_token: Optional[str], secret: str = settings.SECRET_KEY) -> str:
    """
    Pseudonymous visitor id.

    Stable for one browsing session when a session token is available
    (keyed hash, not reversible); random otherwise.
    """
    if session_token:
        digest = hmac.new(secret.encode(), session_token.encode(), hashlib.sha256)
        return digest.hexdigest()[:32]
    return secrets.token_hex(16)


def visitor_id_from_cookies(visitor_cookie: Optional[str], session_token: Optional[str]) -> str:
    """Reuse a visitor cookie that fits a click row, otherwise derive a new id."""
    if visitor_cookie and len(visitor_cookie) <= VISITOR_ID_MAX_LENGTH:
        return visitor_cookie
    return derive_visitor_id(session_token)


def _clip(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else value


class ClickRecorder:
    """Record referral visits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_click(
        self,
        ref: AffiliateRef,
        visitor_id: Optional[str] = None,
        target: Optional[ClickTarget] = None,
        metadata: Optional[ClickMetadata] = None,
    ) -> uuid.UUID:
        """Insert a click row, increment the counters and commit."""
        target = target or ClickTarget()
        metadata = metadata or ClickMetadata()
        visitor_id = visitor_id or derive_visitor_id(metadata.session_id)

        click = AffiliateClick(
            affiliate_id=ref.affiliate_id,
            vendor_id=ref.vendor_id,
            affiliate_link_id=target.link_id,
            visitor_id=_clip(visitor_id, VISITOR_ID_MAX_LENGTH),
            session_id=_clip(metadata.session_id, 128),
            link_type=LinkType(target.link_type).value,
            target_id=target.target_id,
            target_url=_clip(target.target_url, 2000),
            clicked_url=_clip(metadata.clicked_url, 2000),
            referrer=_clip(metadata.referrer, 2000),
            user_agent=_clip(metadata.user_agent, 500),
            ip_address=_clip(metadata.ip_address, 45),
            converted=False,
        )
        self.db.add(click)
        await self.db.flush()

        await self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == ref.affiliate_id)
            .values(total_clicks=Affiliate.total_clicks + 1)
            .execution_options(synchronize_session=False)
        )

        if target.link_id:
            await self.db.execute(
                update(AffiliateLink)
                .where(AffiliateLink.id == target.link_id)
                .values(
                    clicks=AffiliateLink.clicks + 1,
                    last_used=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )

        await self.db.commit()
        logger.debug(f"Recorded click {click.id} for affiliate {ref.affiliate_id}")
        return click.id
