"""
Affiliate Background Jobs

Periodic housekeeping for the affiliate engine:
- Suspicious-affiliate scan (advisory, logged for admins)
- Aggregate reconciliation against the commission ledger
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import settings
from app.database import get_db_session
from app.services.commission_ledger import CommissionLedger
from app.services.fraud_service import FraudHeuristics

logger = logging.getLogger(__name__)


async def scan_suspicious_affiliates(
    session_factory: Optional[async_sessionmaker] = None,
) -> Dict[str, Any]:
    """
    Run the fraud heuristics over the configured window.

    Flagged affiliates are only logged; banning stays a manual admin action.
    """
    logger.info("Starting suspicious affiliate scan...")
    start_time = datetime.now(timezone.utc)

    async with get_db_session(session_factory) as session:
        reports = await FraudHeuristics(session).scan(
            window_days=settings.FRAUD_WINDOW_DAYS,
            limit=None,
        )

    for report in reports:
        logger.warning(
            f"Suspicious affiliate {report.affiliate_id} ({report.referral_code}): "
            f"risk={report.risk_score} reasons={report.reasons}"
        )

    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(f"Suspicious affiliate scan completed: {len(reports)} flagged in {elapsed:.2f}s")
    return {
        "flagged": len(reports),
        "affiliate_ids": [str(r.affiliate_id) for r in reports],
        "elapsed_seconds": elapsed,
    }


async def reconcile_affiliate_aggregates(
    session_factory: Optional[async_sessionmaker] = None,
    repair: bool = True,
) -> Dict[str, Any]:
    """Recompute every affiliate's aggregates from the ledger and repair drift."""
    logger.info("Starting affiliate aggregate reconciliation...")
    start_time = datetime.now(timezone.utc)

    async with get_db_session(session_factory) as session:
        reports = await CommissionLedger(session).reconcile_all(repair=repair)

    drifted = [r for r in reports if not r.in_sync]
    elapsed = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        f"Affiliate reconciliation completed: {len(reports)} checked, "
        f"{len(drifted)} drifted in {elapsed:.2f}s"
    )
    return {
        "checked": len(reports),
        "drifted": len(drifted),
        "repaired": sum(1 for r in drifted if r.repaired),
        "elapsed_seconds": elapsed,
    }
