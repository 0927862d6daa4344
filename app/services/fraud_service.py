"""
Fraud Heuristics

Read-only scan over clicks and ledger entries that ranks affiliates by a
risk score. Advisory only: banning is a separate, explicit admin action.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import select, func, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.affiliate import Affiliate, AffiliateClick, AffiliateCommission, CommissionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FraudThresholds:
    max_click_visitor_ratio: float = settings.FRAUD_MAX_CLICK_VISITOR_RATIO
    max_conversions: int = settings.FRAUD_MAX_CONVERSIONS
    max_clicks: int = settings.FRAUD_MAX_CLICKS


@dataclass
class FraudReport:
    affiliate_id: uuid.UUID
    vendor_id: uuid.UUID
    referral_code: str
    status: str
    total_clicks: int
    distinct_visitors: int
    conversions: int
    click_to_visitor_ratio: float
    risk_score: float
    reasons: List[str] = field(default_factory=list)

    @property
    def suspicious(self) -> bool:
        return bool(self.reasons)


def score(
    clicks: int,
    visitors: int,
    conversions: int,
    thresholds: FraudThresholds,
) -> tuple[float, float, List[str]]:
    """Return (click_to_visitor_ratio, risk_score, reasons)."""
    ratio = clicks / visitors if visitors else 0.0
    reasons = []
    if ratio > thresholds.max_click_visitor_ratio:
        reasons.append(f"click_to_visitor_ratio {ratio:.2f} > {thresholds.max_click_visitor_ratio}")
    if conversions > thresholds.max_conversions:
        reasons.append(f"conversions {conversions} > {thresholds.max_conversions}")
    if clicks > thresholds.max_clicks:
        reasons.append(f"clicks {clicks} > {thresholds.max_clicks}")
    risk = min(100.0, ratio * 10 + conversions * 2)
    return round(ratio, 2), round(risk, 2), reasons


class FraudHeuristics:
    """On-demand suspicious-affiliate analysis."""

    def __init__(self, db: AsyncSession, thresholds: Optional[FraudThresholds] = None):
        self.db = db
        self.thresholds = thresholds or FraudThresholds()

    async def scan(
        self,
        window_days: int = settings.FRAUD_WINDOW_DAYS,
        limit: Optional[int] = settings.FRAUD_REPORT_LIMIT,
        vendor_id: Optional[uuid.UUID] = None,
        include_clean: bool = False,
    ) -> List[FraudReport]:
        """Score every affiliate active in the window, highest risk first."""
        since = datetime.now(timezone.utc) - timedelta(days=window_days)

        click_query = (
            select(
                AffiliateClick.affiliate_id,
                func.count(AffiliateClick.id),
                func.count(distinct(AffiliateClick.visitor_id)),
            )
            .where(AffiliateClick.created_at >= since)
            .group_by(AffiliateClick.affiliate_id)
        )
        conversion_query = (
            select(
                AffiliateCommission.affiliate_id,
                func.count(distinct(AffiliateCommission.order_id)),
            )
            .where(
                AffiliateCommission.earned_date >= since,
                AffiliateCommission.status != CommissionStatus.CANCELLED.value,
            )
            .group_by(AffiliateCommission.affiliate_id)
        )
        if vendor_id:
            click_query = click_query.where(AffiliateClick.vendor_id == vendor_id)
            conversion_query = conversion_query.where(AffiliateCommission.vendor_id == vendor_id)

        clicks: Dict[uuid.UUID, tuple[int, int]] = {
            row[0]: (row[1], row[2]) for row in (await self.db.execute(click_query)).all()
        }
        conversions: Dict[uuid.UUID, int] = {
            row[0]: row[1] for row in (await self.db.execute(conversion_query)).all()
        }

        affiliate_ids = set(clicks) | set(conversions)
        if not affiliate_ids:
            return []

        affiliates = {
            a.id: a for a in (await self.db.execute(
                select(Affiliate).where(Affiliate.id.in_(affiliate_ids))
            )).scalars()
        }

        reports = []
        for affiliate_id in affiliate_ids:
            affiliate = affiliates.get(affiliate_id)
            if affiliate is None:
                continue
            total_clicks, visitors = clicks.get(affiliate_id, (0, 0))
            converted = conversions.get(affiliate_id, 0)
            ratio, risk, reasons = score(total_clicks, visitors, converted, self.thresholds)
            report = FraudReport(
                affiliate_id=affiliate_id,
                vendor_id=affiliate.vendor_id,
                referral_code=affiliate.referral_code,
                status=affiliate.status,
                total_clicks=total_clicks,
                distinct_visitors=visitors,
                conversions=converted,
                click_to_visitor_ratio=ratio,
                risk_score=risk,
                reasons=reasons,
            )
            if report.suspicious or include_clean:
                reports.append(report)

        reports.sort(key=lambda r: r.risk_score, reverse=True)
        if limit:
            reports = reports[:limit]

        if reports and not include_clean:
            logger.info(f"Fraud scan flagged {len(reports)} affiliates over {window_days} days")
        return reports
