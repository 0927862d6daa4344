"""
Affiliate Analytics Service

Read-only projections over affiliates, clicks and the commission ledger
for affiliate dashboards, vendor analytics and admin reporting.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.affiliate import (
    Affiliate,
    AffiliateClick,
    AffiliateCommission,
    AffiliateProgram,
    CommissionStatus,
)
from app.services.commission_rules import money

PERIOD_DAYS = {"7d": 7, "30d": 30, "90d": 90}


def conversion_rate(conversions: int, clicks: int) -> float:
    return round(conversions / clicks * 100, 2) if clicks else 0.0


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Start of this month and start of last month."""
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    last_month = (this_month - timedelta(days=1)).replace(day=1)
    return this_month, last_month


class AnalyticsService:
    """Dashboard and admin read models."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _sum_net(self, *conditions) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(AffiliateCommission.net_commission), 0)).where(*conditions)
        )
        return money(result.scalar())

    # ==================== Affiliate Dashboard ====================

    async def affiliate_summary(self, affiliate: Affiliate) -> dict:
        now = datetime.now(timezone.utc)
        this_month, last_month = month_bounds(now)
        mine = AffiliateCommission.affiliate_id == affiliate.id
        not_cancelled = AffiliateCommission.status != CommissionStatus.CANCELLED.value

        return {
            "affiliate_id": affiliate.id,
            "referral_code": affiliate.referral_code,
            "status": affiliate.status,
            "total_clicks": affiliate.total_clicks,
            "total_conversions": affiliate.total_conversions,
            "conversion_rate": conversion_rate(affiliate.total_conversions, affiliate.total_clicks),
            "total_earnings": money(affiliate.total_earnings),
            "pending_earnings": money(affiliate.pending_earnings),
            "approved_earnings": await self._sum_net(
                mine, AffiliateCommission.status == CommissionStatus.APPROVED.value
            ),
            "paid_earnings": money(affiliate.paid_earnings),
            "this_month_earnings": await self._sum_net(
                mine, not_cancelled, AffiliateCommission.earned_date >= this_month
            ),
            "last_month_earnings": await self._sum_net(
                mine,
                not_cancelled,
                AffiliateCommission.earned_date >= last_month,
                AffiliateCommission.earned_date < this_month,
            ),
        }

    async def list_clicks(
        self,
        affiliate_id: uuid.UUID,
        converted: Optional[bool] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[AffiliateClick], int]:
        query = select(AffiliateClick).where(AffiliateClick.affiliate_id == affiliate_id)
        if converted is not None:
            query = query.where(AffiliateClick.converted.is_(converted))

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(AffiliateClick.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total or 0

    # ==================== Vendor Analytics ====================

    async def vendor_analytics(self, vendor_id: uuid.UUID, period: str = "30d") -> dict:
        since = datetime.now(timezone.utc) - timedelta(days=PERIOD_DAYS.get(period, 30))

        clicks = await self.db.scalar(
            select(func.count(AffiliateClick.id)).where(
                AffiliateClick.vendor_id == vendor_id,
                AffiliateClick.created_at >= since,
            )
        ) or 0
        conversions = await self.db.scalar(
            select(func.count(AffiliateClick.id)).where(
                AffiliateClick.vendor_id == vendor_id,
                AffiliateClick.converted.is_(True),
                AffiliateClick.conversion_date >= since,
            )
        ) or 0

        in_period = (
            AffiliateCommission.vendor_id == vendor_id,
            AffiliateCommission.earned_date >= since,
        )
        totals = await self.db.execute(
            select(
                func.coalesce(func.sum(AffiliateCommission.commission_amount).filter(
                    AffiliateCommission.status != CommissionStatus.CANCELLED.value
                ), 0),
                func.coalesce(func.sum(AffiliateCommission.net_commission).filter(
                    AffiliateCommission.status == CommissionStatus.PENDING.value
                ), 0),
                func.coalesce(func.sum(AffiliateCommission.net_commission).filter(
                    AffiliateCommission.status == CommissionStatus.PAID.value
                ), 0),
            ).where(*in_period)
        )
        total_commission, pending_commission, paid_commission = totals.one()

        by_status = await self.db.execute(
            select(Affiliate.status, func.count(Affiliate.id))
            .where(Affiliate.vendor_id == vendor_id)
            .group_by(Affiliate.status)
        )

        top = await self.db.execute(
            select(Affiliate)
            .where(Affiliate.vendor_id == vendor_id)
            .order_by(Affiliate.total_earnings.desc())
            .limit(5)
        )

        return {
            "vendor_id": vendor_id,
            "period": period if period in PERIOD_DAYS else "30d",
            "clicks": clicks,
            "conversions": conversions,
            "conversion_rate": conversion_rate(conversions, clicks),
            "total_commission": money(total_commission),
            "pending_commission": money(pending_commission),
            "paid_commission": money(paid_commission),
            "affiliates_by_status": {status: count for status, count in by_status.all()},
            "top_affiliates": [
                {
                    "affiliate_id": a.id,
                    "referral_code": a.referral_code,
                    "total_clicks": a.total_clicks,
                    "total_conversions": a.total_conversions,
                    "total_earnings": money(a.total_earnings),
                }
                for a in top.scalars()
            ],
        }

    # ==================== Admin Reporting ====================

    async def admin_stats(self) -> dict:
        by_status_rows = await self.db.execute(
            select(Affiliate.status, func.count(Affiliate.id)).group_by(Affiliate.status)
        )
        by_status: Dict[str, int] = {status: count for status, count in by_status_rows.all()}

        totals = await self.db.execute(
            select(
                func.coalesce(func.sum(Affiliate.total_clicks), 0),
                func.coalesce(func.sum(Affiliate.total_conversions), 0),
            )
        )
        total_clicks, total_conversions = totals.one()

        money_totals = await self.db.execute(
            select(
                func.coalesce(func.sum(AffiliateCommission.commission_amount), 0),
                func.coalesce(func.sum(AffiliateCommission.platform_fee), 0),
            ).where(AffiliateCommission.status != CommissionStatus.CANCELLED.value)
        )
        total_commissions, platform_revenue = money_totals.one()

        active_programs = await self.db.scalar(
            select(func.count(AffiliateProgram.id)).where(AffiliateProgram.is_active.is_(True))
        ) or 0

        return {
            "total_affiliates": sum(by_status.values()),
            "affiliates_by_status": by_status,
            "total_clicks": int(total_clicks),
            "total_conversions": int(total_conversions),
            "conversion_rate": conversion_rate(int(total_conversions), int(total_clicks)),
            "total_commissions": money(total_commissions),
            "platform_revenue": money(platform_revenue),
            "active_programs": active_programs,
        }

    async def top_vendors(self, limit: int = 10) -> List[dict]:
        commission_sum = func.sum(AffiliateCommission.commission_amount)
        result = await self.db.execute(
            select(
                AffiliateCommission.vendor_id,
                commission_sum,
                func.sum(AffiliateCommission.platform_fee),
                func.count(AffiliateCommission.id),
                func.count(distinct(AffiliateCommission.affiliate_id)),
            )
            .where(AffiliateCommission.status != CommissionStatus.CANCELLED.value)
            .group_by(AffiliateCommission.vendor_id)
            .order_by(commission_sum.desc())
            .limit(limit)
        )
        return [
            {
                "vendor_id": vendor_id,
                "total_commission": money(total),
                "platform_revenue": money(fees),
                "commission_count": count,
                "affiliate_count": affiliates,
            }
            for vendor_id, total, fees, count, affiliates in result.all()
        ]
