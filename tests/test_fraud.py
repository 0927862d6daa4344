"""Tests for the suspicious-affiliate heuristics and the background jobs."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update

from app.jobs.affiliate_jobs import reconcile_affiliate_aggregates, scan_suspicious_affiliates
from app.models.affiliate import Affiliate, AffiliateClick
from app.services.fraud_service import FraudHeuristics, FraudThresholds, score
from app.services.order_event_service import OrderEventService
from tests.conftest import make_affiliate, order_event, reload


async def add_clicks(session, affiliate, count, visitors, days_ago=1):
    created_at = datetime.now(timezone.utc) - timedelta(days=days_ago)
    session.add_all([
        AffiliateClick(
            affiliate_id=affiliate.id,
            vendor_id=affiliate.vendor_id,
            visitor_id=f"visitor-{n % visitors}",
            created_at=created_at,
        )
        for n in range(count)
    ])
    await session.commit()


class TestScore:
    def test_high_click_to_visitor_ratio_is_flagged(self):
        ratio, risk, reasons = score(100, 5, 0, FraudThresholds())
        assert ratio == 20.0
        assert risk == 100.0
        assert len(reasons) == 1
        assert reasons[0].startswith("click_to_visitor_ratio")

    def test_normal_traffic_is_clean(self):
        ratio, risk, reasons = score(10, 10, 3, FraudThresholds())
        assert ratio == 1.0
        assert risk == 16.0
        assert reasons == []

    def test_many_conversions_are_flagged(self):
        _, _, reasons = score(60, 60, 51, FraudThresholds(max_conversions=50))
        assert reasons == ["conversions 51 > 50"]

    def test_no_visitors_gives_zero_ratio(self):
        ratio, _, _ = score(0, 0, 0, FraudThresholds())
        assert ratio == 0.0


class TestScan:
    async def test_only_suspicious_affiliates_are_reported(self, db_session, program, affiliate):
        clean = await make_affiliate(db_session, program, "CLEAN001")
        await add_clicks(db_session, affiliate, count=30, visitors=2)
        await add_clicks(db_session, clean, count=3, visitors=3)

        reports = await FraudHeuristics(db_session).scan(window_days=30)

        assert [r.affiliate_id for r in reports] == [affiliate.id]
        report = reports[0]
        assert report.total_clicks == 30
        assert report.distinct_visitors == 2
        assert report.click_to_visitor_ratio == 15.0

    async def test_include_clean_orders_by_risk(self, db_session, program, affiliate):
        clean = await make_affiliate(db_session, program, "CLEAN002")
        await add_clicks(db_session, affiliate, count=30, visitors=2)
        await add_clicks(db_session, clean, count=3, visitors=3)

        reports = await FraudHeuristics(db_session).scan(window_days=30, include_clean=True)

        assert [r.affiliate_id for r in reports] == [affiliate.id, clean.id]

    async def test_clicks_outside_window_are_ignored(self, db_session, affiliate):
        await add_clicks(db_session, affiliate, count=30, visitors=1, days_ago=40)
        assert await FraudHeuristics(db_session).scan(window_days=30) == []

    async def test_conversions_count_distinct_orders(self, db_session, affiliate):
        service = OrderEventService(db_session)
        await service.handle_order_completed(
            order_event("ORD-F1", affiliate.referral_code, lines=(("L1", "10.00", 1), ("L2", "10.00", 1)))
        )
        await service.handle_order_completed(order_event("ORD-F2", affiliate.referral_code))

        reports = await FraudHeuristics(db_session, FraudThresholds(max_conversions=1)).scan(window_days=30)

        assert reports[0].conversions == 2
        assert reports[0].total_clicks == 0


class TestJobs:
    async def test_scan_job_reports_flagged_affiliates(self, session_factory, db_session, affiliate):
        await add_clicks(db_session, affiliate, count=30, visitors=1)

        result = await scan_suspicious_affiliates(session_factory)

        assert result["flagged"] == 1
        assert result["affiliate_ids"] == [str(affiliate.id)]

    async def test_reconcile_job_repairs_drift(self, session_factory, db_session, affiliate):
        await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-J1", affiliate.referral_code)
        )
        await db_session.execute(
            update(Affiliate).where(Affiliate.id == affiliate.id).values(total_earnings=Decimal("0"))
        )
        await db_session.commit()

        result = await reconcile_affiliate_aggregates(session_factory)

        assert result["drifted"] == 1
        assert result["repaired"] == 1
        await reload(db_session, affiliate)
        assert affiliate.total_earnings == Decimal("20.00")
