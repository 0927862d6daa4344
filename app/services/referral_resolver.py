"""
Referral Resolver

Maps a referral code to the approved affiliate behind it. Read-only and
cached by code, since it runs on every tracked visit.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.affiliate import Affiliate, AffiliateProgram, AffiliateStatus
from app.services.affiliate_errors import ReferralNotFoundError, ReferralNotApprovedError
from app.services.cache_service import CacheService

logger = logging.getLogger(__name__)

DEFAULT_COOKIE_DAYS = 30


@dataclass(frozen=True)
class AffiliateRef:
    """Identity of an approved affiliate and its sponsoring vendor/program."""
    affiliate_id: uuid.UUID
    vendor_id: uuid.UUID
    referral_code: str
    program_id: Optional[uuid.UUID] = None
    store_id: Optional[uuid.UUID] = None
    cookie_duration_days: int = DEFAULT_COOKIE_DAYS

    @classmethod
    def from_affiliate(cls, affiliate: Affiliate, cookie_duration_days: Optional[int] = None) -> "AffiliateRef":
        return cls(
            affiliate_id=affiliate.id,
            vendor_id=affiliate.vendor_id,
            referral_code=affiliate.referral_code,
            program_id=affiliate.program_id,
            store_id=affiliate.store_id,
            cookie_duration_days=cookie_duration_days or DEFAULT_COOKIE_DAYS,
        )

    def to_dict(self) -> dict:
        return {
            "affiliate_id": str(self.affiliate_id),
            "vendor_id": str(self.vendor_id),
            "referral_code": self.referral_code,
            "program_id": str(self.program_id) if self.program_id else None,
            "store_id": str(self.store_id) if self.store_id else None,
            "cookie_duration_days": self.cookie_duration_days,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AffiliateRef":
        return cls(
            affiliate_id=uuid.UUID(data["affiliate_id"]),
            vendor_id=uuid.UUID(data["vendor_id"]),
            referral_code=data["referral_code"],
            program_id=uuid.UUID(data["program_id"]) if data.get("program_id") else None,
            store_id=uuid.UUID(data["store_id"]) if data.get("store_id") else None,
            cookie_duration_days=data.get("cookie_duration_days", DEFAULT_COOKIE_DAYS),
        )


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


class ReferralResolver:
    """Resolve referral codes to approved affiliates."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.cache = cache

    async def resolve(self, code: str) -> AffiliateRef:
        """
        Resolve a referral code.

        Raises:
            ReferralNotFoundError: no affiliate has this code
            ReferralNotApprovedError: affiliate exists but is not APPROVED
        """
        code = normalize_code(code)
        if not code:
            raise ReferralNotFoundError("Referral code is empty")

        if self.cache:
            cached = await self.cache.get_affiliate_ref(code)
            if cached:
                return AffiliateRef.from_dict(cached)

        result = await self.db.execute(
            select(Affiliate, AffiliateProgram.cookie_duration_days)
            .outerjoin(AffiliateProgram, AffiliateProgram.id == Affiliate.program_id)
            .where(Affiliate.referral_code == code)
        )
        row = result.first()

        if not row:
            raise ReferralNotFoundError(f"Referral code {code} not found", {"code": code})
        affiliate, cookie_days = row

        if affiliate.status != AffiliateStatus.APPROVED.value:
            logger.debug(f"Referral code {code} belongs to a {affiliate.status} affiliate")
            raise ReferralNotApprovedError(
                f"Affiliate for referral code {code} is not approved",
                status=affiliate.status,
                details={"code": code, "affiliate_id": str(affiliate.id)},
            )

        ref = AffiliateRef.from_affiliate(affiliate, cookie_days)
        if self.cache:
            await self.cache.set_affiliate_ref(code, ref.to_dict())
        return ref

    async def try_resolve(self, code: Optional[str]) -> Optional[AffiliateRef]:
        """Resolve a code, returning None for unknown or non-trackable affiliates."""
        if not code:
            return None
        try:
            return await self.resolve(code)
        except (ReferralNotFoundError, ReferralNotApprovedError):
            return None
