"""
Affiliate Service

Handles the affiliate lifecycle around the attribution engine:
- Registration (with lazy program creation)
- Vendor approval / rejection and admin bans
- Profile updates
- Tracked links with short codes
"""

import logging
import random
import string
import uuid
from datetime import datetime, timezone
from typing import Optional, List, Tuple
from urllib.parse import urlencode, urlsplit, urlunsplit, parse_qsl

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.affiliate import (
    Affiliate,
    AffiliateClick,
    AffiliateLink,
    AffiliateStatus,
)
from app.schemas.affiliate import (
    AffiliateLinkCreate,
    AffiliateProfileUpdate,
    AffiliateRegister,
    AffiliateStatusUpdate,
)
from app.services.affiliate_errors import (
    NotFoundError,
    ReferralNotApprovedError,
    RegistrationError,
)
from app.services.affiliate_state_machine import validate_transition
from app.services.cache_service import CacheService
from app.services.program_service import ProgramService

logger = logging.getLogger(__name__)

REFERRAL_CODE_LENGTH = 8
SHORT_CODE_LENGTH = 6


def with_ref_param(url: str, code: str) -> str:
    """Append (or replace) the referral query parameter on a URL."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
             if k != settings.AFFILIATE_REF_PARAM]
    query.append((settings.AFFILIATE_REF_PARAM, code))
    return urlunsplit(parts._replace(query=urlencode(query)))


class AffiliateService:
    """Service for affiliate lifecycle operations"""

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache
        self.programs = ProgramService(db)

    # ========================================================================
    # Code Generation
    # ========================================================================

    async def generate_referral_code(self) -> str:
        """
        Generate unique referral code: 8 uppercase alphanumeric characters
        Example: K7X2M9QA
        """
        while True:
            code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=REFERRAL_CODE_LENGTH))
            result = await self.db.execute(
                select(Affiliate.id).where(Affiliate.referral_code == code)
            )
            if not result.scalar_one_or_none():
                return code

    async def generate_short_code(self) -> str:
        """Generate unique 6-character lowercase short code for links."""
        while True:
            code = ''.join(random.choices(string.ascii_lowercase + string.digits, k=SHORT_CODE_LENGTH))
            result = await self.db.execute(
                select(AffiliateLink.id).where(AffiliateLink.short_code == code)
            )
            if not result.scalar_one_or_none():
                return code

    # ========================================================================
    # Registration
    # ========================================================================

    async def register(self, user_id: uuid.UUID, data: AffiliateRegister) -> Affiliate:
        """
        Register a user as an affiliate of a vendor.

        Flow:
        1. Reject a second registration for the same vendor
        2. Load the vendor's program, creating it if absent
        3. Issue a referral code
        4. Auto-approve when the program says so, otherwise PENDING
        """
        existing = await self.db.execute(
            select(Affiliate.id).where(
                Affiliate.user_id == user_id,
                Affiliate.vendor_id == data.vendor_id,
            )
        )
        if existing.scalar_one_or_none():
            raise RegistrationError("You are already registered as an affiliate for this vendor")

        program = await self.programs.get_or_create(data.vendor_id, data.store_id)
        if not program.is_accepting:
            raise RegistrationError("This vendor's affiliate program is not accepting affiliates")
        if program.require_social_media_verification and not data.social_media:
            raise RegistrationError("This program requires social media profiles")

        auto_approve = program.auto_approve_affiliates
        now = datetime.now(timezone.utc)
        affiliate = Affiliate(
            user_id=user_id,
            vendor_id=data.vendor_id,
            store_id=data.store_id,
            program_id=program.id,
            status=AffiliateStatus.APPROVED.value if auto_approve else AffiliateStatus.PENDING.value,
            commission_rate=program.default_commission_rate,
            commission_type=program.default_commission_type,
            fixed_commission_amount=program.default_fixed_amount,
            referral_code=await self.generate_referral_code(),
            bio=data.bio,
            website=data.website,
            social_media=data.social_media,
            preferred_categories=data.preferred_categories,
            application_date=now,
            approval_date=now if auto_approve else None,
        )
        self.db.add(affiliate)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.error(f"Affiliate registration failed for user {user_id}: {e}")
            raise RegistrationError("You are already registered as an affiliate for this vendor")

        logger.info(
            f"Affiliate {affiliate.id} registered for vendor {data.vendor_id} "
            f"({affiliate.status}, code {affiliate.referral_code})"
        )
        return affiliate

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get(self, affiliate_id: uuid.UUID) -> Affiliate:
        affiliate = await self.db.get(Affiliate, affiliate_id, populate_existing=True)
        if not affiliate:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")
        return affiliate

    async def get_for_vendor(self, affiliate_id: uuid.UUID, vendor_id: uuid.UUID) -> Affiliate:
        affiliate = await self.get(affiliate_id)
        if affiliate.vendor_id != vendor_id:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")
        return affiliate

    async def get_for_user(self, user_id: uuid.UUID, vendor_id: Optional[uuid.UUID] = None) -> Affiliate:
        query = select(Affiliate).where(Affiliate.user_id == user_id)
        if vendor_id:
            query = query.where(Affiliate.vendor_id == vendor_id)
        result = await self.db.execute(
            query.order_by(Affiliate.created_at.desc()).execution_options(populate_existing=True)
        )
        affiliate = result.scalars().first()
        if not affiliate:
            raise NotFoundError("You are not registered as an affiliate")
        return affiliate

    async def list_for_user(self, user_id: uuid.UUID) -> List[Affiliate]:
        result = await self.db.execute(
            select(Affiliate).where(Affiliate.user_id == user_id).order_by(Affiliate.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_for_vendor(
        self,
        vendor_id: uuid.UUID,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Affiliate], int]:
        query = select(Affiliate).where(Affiliate.vendor_id == vendor_id)
        if status:
            query = query.where(Affiliate.status == status)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(Affiliate.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total or 0

    # ========================================================================
    # Status Changes
    # ========================================================================

    async def _invalidate(self, affiliate: Affiliate) -> None:
        if self.cache:
            await self.cache.invalidate_affiliate_ref(affiliate.referral_code)

    async def update_status(
        self,
        affiliate_id: uuid.UUID,
        vendor_id: uuid.UUID,
        data: AffiliateStatusUpdate,
    ) -> Affiliate:
        """Vendor approves or rejects a PENDING affiliate."""
        affiliate = await self.get_for_vendor(affiliate_id, vendor_id)
        validate_transition("affiliate", affiliate.status, data.status)

        affiliate.status = data.status
        if data.status == AffiliateStatus.APPROVED.value:
            affiliate.approval_date = datetime.now(timezone.utc)
            if data.commission_rate is not None:
                affiliate.commission_rate = data.commission_rate
            if data.commission_type is not None:
                affiliate.commission_type = data.commission_type.value
            if data.fixed_commission_amount is not None:
                affiliate.fixed_commission_amount = data.fixed_commission_amount
        if data.notes:
            affiliate.notes = data.notes

        await self.db.commit()
        await self._invalidate(affiliate)
        logger.info(f"Affiliate {affiliate_id} {data.status} by vendor {vendor_id}")
        return affiliate

    async def ban(self, affiliate_id: uuid.UUID, admin_id: uuid.UUID, reason: str) -> Affiliate:
        """Admin bans an APPROVED affiliate. Terminal."""
        affiliate = await self.get(affiliate_id)
        validate_transition("affiliate", affiliate.status, AffiliateStatus.BANNED.value)

        now = datetime.now(timezone.utc)
        affiliate.status = AffiliateStatus.BANNED.value
        affiliate.banned_at = now
        note = f"Banned by admin {admin_id} on {now.date().isoformat()}: {reason}"
        affiliate.notes = f"{affiliate.notes}\n{note}" if affiliate.notes else note

        await self.db.commit()
        await self._invalidate(affiliate)
        logger.warning(f"Affiliate {affiliate_id} banned by {admin_id}: {reason}")
        return affiliate

    async def update_profile(self, affiliate: Affiliate, data: AffiliateProfileUpdate) -> Affiliate:
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(affiliate, field, value)
        await self.db.commit()
        return affiliate

    # ========================================================================
    # Links
    # ========================================================================

    async def create_link(self, affiliate: Affiliate, data: AffiliateLinkCreate) -> AffiliateLink:
        if affiliate.status != AffiliateStatus.APPROVED.value:
            raise ReferralNotApprovedError(
                "Only approved affiliates can create links",
                status=affiliate.status,
            )

        link = AffiliateLink(
            affiliate_id=affiliate.id,
            vendor_id=affiliate.vendor_id,
            link_type=data.link_type.value,
            target_id=data.target_id,
            original_url=data.original_url,
            affiliate_url=with_ref_param(data.original_url, affiliate.referral_code),
            short_code=await self.generate_short_code(),
        )
        self.db.add(link)
        await self.db.commit()
        return link

    async def list_links(self, affiliate_id: uuid.UUID) -> List[AffiliateLink]:
        result = await self.db.execute(
            select(AffiliateLink)
            .where(AffiliateLink.affiliate_id == affiliate_id)
            .order_by(AffiliateLink.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_link_by_short_code(self, short_code: str) -> Tuple[AffiliateLink, Affiliate]:
        result = await self.db.execute(
            select(AffiliateLink, Affiliate)
            .join(Affiliate, Affiliate.id == AffiliateLink.affiliate_id)
            .where(AffiliateLink.short_code == short_code.lower(), AffiliateLink.is_active.is_(True))
        )
        row = result.first()
        if not row:
            raise NotFoundError(f"Link {short_code} not found")
        return row[0], row[1]

    async def get_link(self, affiliate: Affiliate, link_id: uuid.UUID) -> AffiliateLink:
        link = await self.db.get(AffiliateLink, link_id, populate_existing=True)
        if not link or link.affiliate_id != affiliate.id:
            raise NotFoundError(f"Link {link_id} not found")
        return link

    async def set_link_active(
        self,
        affiliate: Affiliate,
        link_id: uuid.UUID,
        is_active: bool,
    ) -> AffiliateLink:
        """Pause or resume a link; paused short codes stop redirecting."""
        link = await self.get_link(affiliate, link_id)
        link.is_active = is_active
        await self.db.commit()
        state = "activated" if is_active else "deactivated"
        logger.info(f"Link {link.short_code} of affiliate {affiliate.id} {state}")
        return link

    async def delete_link(self, affiliate: Affiliate, link_id: uuid.UUID) -> None:
        """Delete a link. Its past clicks stay attributed to the affiliate."""
        link = await self.get_link(affiliate, link_id)
        await self.db.execute(
            update(AffiliateClick)
            .where(AffiliateClick.affiliate_link_id == link.id)
            .values(affiliate_link_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.delete(link)
        await self.db.commit()
        logger.info(f"Link {link.short_code} of affiliate {affiliate.id} deleted")
