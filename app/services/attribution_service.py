"""
Conversion Attributor

Turns a completed order into commission intents. The referral code carried
on the order is authoritative; clicks are an auxiliary signal that gets
marked as converted when one falls inside the program's conversion window.
Programs that set ``require_click_match`` only attribute orders with such
a click.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.affiliate import AffiliateClick, AffiliateLink, AffiliateProgram
from app.schemas.affiliate import OrderCompletedEvent
from app.services.cache_service import CacheService
from app.services.commission_rules import LineItem
from app.services.referral_resolver import AffiliateRef, ReferralResolver

logger = logging.getLogger(__name__)


def order_time(completed_at: Optional[datetime], now: datetime) -> datetime:
    """When the order completed, in UTC; naive timestamps are taken as UTC."""
    if completed_at is None:
        return now
    if completed_at.tzinfo is None:
        return completed_at.replace(tzinfo=timezone.utc)
    return completed_at.astimezone(timezone.utc)


@dataclass(frozen=True)
class CommissionIntent:
    """One attributed order line, ready for the ledger."""
    affiliate_id: uuid.UUID
    vendor_id: uuid.UUID
    order_id: str
    line_item: LineItem
    click_id: Optional[uuid.UUID] = None
    link_id: Optional[uuid.UUID] = None
    earned_at: Optional[datetime] = None


class ConversionAttributor:
    """Attribute completed orders to affiliates."""

    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.resolver = ReferralResolver(db, cache)

    async def attribute(self, event: OrderCompletedEvent) -> List[CommissionIntent]:
        """Return one intent per attributable line item; empty when the order earns nothing."""
        ref = await self.resolver.try_resolve(event.referral_code)
        if ref is None:
            if event.referral_code:
                logger.info(f"Order {event.order_id}: referral {event.referral_code} not trackable")
            return []

        result = await self.db.execute(
            select(AffiliateProgram).where(AffiliateProgram.vendor_id == ref.vendor_id)
        )
        program = result.scalar_one_or_none()
        if program is None or not program.is_accepting:
            logger.info(f"Order {event.order_id}: program for vendor {ref.vendor_id} inactive")
            return []

        lines = [
            line for line in event.line_items
            if line.vendor_id is None or line.vendor_id == ref.vendor_id
        ]
        if not lines:
            return []

        click = await self.mark_conversion(ref, program, event)
        if click is None and program.require_click_match:
            logger.info(
                f"Order {event.order_id}: no click inside the "
                f"{program.conversion_window_days}-day window, strict matching on"
            )
            return []

        return [
            CommissionIntent(
                affiliate_id=ref.affiliate_id,
                vendor_id=ref.vendor_id,
                order_id=event.order_id,
                line_item=LineItem(
                    line_item_id=line.line_item_id,
                    product_id=line.product_id,
                    category=line.category,
                    price=line.price,
                    quantity=line.quantity,
                ),
                click_id=click.id if click else None,
                link_id=click.affiliate_link_id if click else None,
                earned_at=event.completed_at,
            )
            for line in lines
        ]

    async def mark_conversion(
        self,
        ref: AffiliateRef,
        program: AffiliateProgram,
        event: OrderCompletedEvent,
    ) -> Optional[AffiliateClick]:
        """
        Mark one click inside the conversion window as converted by this order.

        A click already linked to this order is returned as-is, so redelivered
        events do not convert a second click.
        """
        result = await self.db.execute(
            select(AffiliateClick).where(
                AffiliateClick.affiliate_id == ref.affiliate_id,
                AffiliateClick.order_id == event.order_id,
            )
        )
        existing = result.scalars().first()
        if existing:
            return existing

        visitor_id = event.visitor_id or event.buyer_id
        if not visitor_id:
            return None

        now = datetime.now(timezone.utc)
        completed_at = order_time(event.completed_at, now)
        cutoff = completed_at - timedelta(days=program.conversion_window_days)
        in_window = (
            AffiliateClick.affiliate_id == ref.affiliate_id,
            AffiliateClick.visitor_id == visitor_id,
            AffiliateClick.created_at >= cutoff,
            AffiliateClick.created_at <= completed_at,
        )

        if program.allow_multiple_conversions:
            query = (
                select(AffiliateClick)
                .where(*in_window, AffiliateClick.converted.is_(False))
                .order_by(AffiliateClick.created_at.desc())
            )
        else:
            already = await self.db.execute(
                select(AffiliateClick.id).where(*in_window, AffiliateClick.converted.is_(True)).limit(1)
            )
            if already.scalar_one_or_none():
                return None
            query = (
                select(AffiliateClick)
                .where(*in_window, AffiliateClick.converted.is_(False))
                .order_by(AffiliateClick.created_at.asc())
            )

        candidate = (await self.db.execute(query.limit(1))).scalar_one_or_none()
        if candidate is None:
            return None

        # Only the first writer flips the flag
        marked = await self.db.execute(
            update(AffiliateClick)
            .where(AffiliateClick.id == candidate.id, AffiliateClick.converted.is_(False))
            .values(converted=True, conversion_date=now, order_id=event.order_id)
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount != 1:
            logger.info(f"Click {candidate.id} converted concurrently, order {event.order_id}")
            return None

        if candidate.affiliate_link_id:
            await self.db.execute(
                update(AffiliateLink)
                .where(AffiliateLink.id == candidate.affiliate_link_id)
                .values(conversions=AffiliateLink.conversions + 1)
                .execution_options(synchronize_session=False)
            )

        await self.db.refresh(candidate)
        return candidate
