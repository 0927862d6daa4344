"""
Affiliate Program Service

Per-vendor program configuration. A program is created lazily the first
time an affiliate registers for a vendor and is changed only by its vendor.
"""

import logging
import uuid
from typing import Optional, List, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.affiliate import AffiliateProgram, AffiliateCommissionRule
from app.schemas.affiliate import ProgramUpdate
from app.services.affiliate_errors import NotFoundError

logger = logging.getLogger(__name__)


class ProgramService:
    """Read and manage affiliate programs."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_vendor(self, vendor_id: uuid.UUID) -> Optional[AffiliateProgram]:
        result = await self.db.execute(
            select(AffiliateProgram).where(AffiliateProgram.vendor_id == vendor_id)
        )
        return result.scalar_one_or_none()

    async def require_by_vendor(self, vendor_id: uuid.UUID) -> AffiliateProgram:
        program = await self.get_by_vendor(vendor_id)
        if not program:
            raise NotFoundError(f"No affiliate program for vendor {vendor_id}")
        return program

    async def get_or_create(
        self,
        vendor_id: uuid.UUID,
        store_id: Optional[uuid.UUID] = None,
    ) -> AffiliateProgram:
        """Return the vendor's program, creating one with default settings if absent."""
        program = await self.get_by_vendor(vendor_id)
        if program:
            return program

        program = AffiliateProgram(vendor_id=vendor_id, store_id=store_id, rules=[])
        self.db.add(program)
        try:
            await self.db.flush()
        except IntegrityError:
            # Another registration created it first
            await self.db.rollback()
            return await self.require_by_vendor(vendor_id)

        logger.info(f"Created affiliate program {program.id} for vendor {vendor_id}")
        return program

    async def update(self, vendor_id: uuid.UUID, data: ProgramUpdate) -> AffiliateProgram:
        program = await self.get_or_create(vendor_id)

        update_data = data.model_dump(exclude_unset=True, exclude={"rules"})
        for field, value in update_data.items():
            if value is None:
                continue
            if field == "allowed_payment_methods":
                value = [m.value for m in value]
            elif hasattr(value, "value"):
                value = value.value
            setattr(program, field, value)

        if data.rules is not None:
            program.rules = [
                AffiliateCommissionRule(
                    rule_type=rule.rule_type.value,
                    position=position,
                    category=rule.category,
                    min_sales=rule.min_sales,
                    commission_rate=rule.commission_rate,
                    commission_type=rule.commission_type.value,
                    fixed_amount=rule.fixed_amount,
                )
                for position, rule in enumerate(data.rules)
            ]

        await self.db.commit()
        await self.db.refresh(program)
        logger.info(f"Affiliate program {program.id} updated by vendor {vendor_id}")
        return program

    async def list_programs(
        self,
        is_active: Optional[bool] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[AffiliateProgram], int]:
        query = select(AffiliateProgram)
        if is_active is not None:
            query = query.where(AffiliateProgram.is_active == is_active)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(AffiliateProgram.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total or 0

    async def list_open(self, skip: int = 0, limit: int = 20) -> Tuple[List[AffiliateProgram], int]:
        """Programs currently accepting affiliates, newest first."""
        query = select(AffiliateProgram).where(
            AffiliateProgram.is_active.is_(True),
            AffiliateProgram.enabled.is_(True),
        )
        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(AffiliateProgram.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total or 0
