"""Tests for commission recording, cancellation and reconciliation."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from app.models.affiliate import Affiliate, AffiliateCommission, AffiliateStatus, CommissionStatus
from app.schemas.affiliate import OrderRefundedEvent
from app.services.affiliate_errors import CommissionAlreadyPaidError
from app.services.commission_ledger import CommissionLedger
from app.services.order_event_service import OrderEventService
from tests.conftest import make_affiliate, order_event, reload


async def count_entries(session, order_id: str) -> int:
    return await session.scalar(
        select(func.count(AffiliateCommission.id)).where(AffiliateCommission.order_id == order_id)
    )


class TestRecord:
    async def test_completed_order_creates_pending_entry(self, db_session, affiliate):
        result = await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-1", affiliate.referral_code)
        )

        assert result["attributed"] is True
        assert len(result["commission_ids"]) == 1

        entry = await db_session.get(AffiliateCommission, result["commission_ids"][0])
        assert entry.status == CommissionStatus.PENDING.value
        assert entry.order_amount == Decimal("200.00")
        assert entry.commission_amount == Decimal("20.00")
        assert entry.platform_fee == Decimal("0.60")
        assert entry.net_commission == Decimal("19.40")

        await reload(db_session, affiliate)
        assert affiliate.total_conversions == 1
        assert affiliate.total_earnings == Decimal("20.00")
        assert affiliate.pending_earnings == Decimal("19.40")

    async def test_redelivered_order_is_absorbed(self, db_session, affiliate):
        service = OrderEventService(db_session)
        event = order_event("ORD-2", affiliate.referral_code, lines=(("L1", "50.00", 1), ("L2", "25.00", 2)))

        first = await service.handle_order_completed(event)
        second = await service.handle_order_completed(event)

        assert sorted(first["commission_ids"]) == sorted(second["commission_ids"])
        assert await count_entries(db_session, "ORD-2") == 2

        await reload(db_session, affiliate)
        assert affiliate.total_conversions == 2
        assert affiliate.total_earnings == Decimal("10.00")

    async def test_unknown_referral_code_earns_nothing(self, db_session, affiliate):
        result = await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-3", "NOSUCHCODE")
        )
        assert result == {"order_id": "ORD-3", "attributed": False, "commission_ids": []}
        assert await count_entries(db_session, "ORD-3") == 0

    async def test_pending_affiliate_is_not_attributed(self, db_session, program):
        pending = await make_affiliate(db_session, program, "PENDING1", status=AffiliateStatus.PENDING)
        result = await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-4", pending.referral_code)
        )
        assert result["attributed"] is False

    async def test_lines_of_other_vendors_are_skipped(self, db_session, affiliate):
        event = order_event("ORD-5", affiliate.referral_code, vendor_id=uuid.uuid4())
        result = await OrderEventService(db_session).handle_order_completed(event)
        assert result["attributed"] is False


class TestCancel:
    async def test_refund_reverses_aggregates(self, db_session, affiliate):
        service = OrderEventService(db_session)
        await service.handle_order_completed(order_event("ORD-10", affiliate.referral_code))

        result = await service.handle_order_refunded(OrderRefundedEvent(order_id="ORD-10", reason="returned"))
        assert result["cancelled"] == 1

        await reload(db_session, affiliate)
        assert affiliate.total_conversions == 0
        assert affiliate.total_earnings == Decimal("0.00")
        assert affiliate.pending_earnings == Decimal("0.00")

    async def test_second_refund_is_a_no_op(self, db_session, affiliate):
        service = OrderEventService(db_session)
        await service.handle_order_completed(order_event("ORD-11", affiliate.referral_code))
        await service.handle_order_refunded(OrderRefundedEvent(order_id="ORD-11"))

        result = await service.handle_order_refunded(OrderRefundedEvent(order_id="ORD-11"))
        assert result["cancelled"] == 0
        assert result["already_cancelled"] == 1

        await reload(db_session, affiliate)
        assert affiliate.total_earnings == Decimal("0.00")

    async def test_refund_of_one_line_keeps_the_others(self, db_session, affiliate):
        service = OrderEventService(db_session)
        await service.handle_order_completed(
            order_event("ORD-12", affiliate.referral_code, lines=(("L1", "100.00", 1), ("L2", "100.00", 1)))
        )
        await service.handle_order_refunded(OrderRefundedEvent(order_id="ORD-12", line_item_id="L2"))

        await reload(db_session, affiliate)
        assert affiliate.total_conversions == 1
        assert affiliate.total_earnings == Decimal("10.00")
        assert affiliate.pending_earnings == Decimal("9.70")

    async def test_paid_commission_cannot_be_cancelled(self, db_session, affiliate):
        service = OrderEventService(db_session)
        await service.handle_order_completed(order_event("ORD-13", affiliate.referral_code))
        await db_session.execute(
            update(AffiliateCommission)
            .where(AffiliateCommission.order_id == "ORD-13")
            .values(status=CommissionStatus.PAID.value)
        )
        await db_session.commit()

        with pytest.raises(CommissionAlreadyPaidError):
            await CommissionLedger(db_session).cancel("ORD-13")

    async def test_whole_order_refund_skips_paid_lines(self, db_session, affiliate):
        service = OrderEventService(db_session)
        await service.handle_order_completed(
            order_event("ORD-14", affiliate.referral_code, lines=(("L1", "100.00", 1), ("L2", "100.00", 1)))
        )
        await db_session.execute(
            update(AffiliateCommission)
            .where(AffiliateCommission.order_id == "ORD-14", AffiliateCommission.order_line_id == "L1")
            .values(status=CommissionStatus.PAID.value)
        )
        await db_session.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate.id)
            .values(pending_earnings=Decimal("9.70"), paid_earnings=Decimal("9.70"))
        )
        await db_session.commit()

        result = await service.handle_order_refunded(OrderRefundedEvent(order_id="ORD-14"))

        assert result == {
            "order_id": "ORD-14", "cancelled": 1, "already_cancelled": 0, "already_paid": 1
        }
        statuses = dict((await db_session.execute(
            select(AffiliateCommission.order_line_id, AffiliateCommission.status)
            .where(AffiliateCommission.order_id == "ORD-14")
        )).all())
        assert statuses == {"L1": CommissionStatus.PAID.value, "L2": CommissionStatus.CANCELLED.value}

        await reload(db_session, affiliate)
        assert affiliate.pending_earnings == Decimal("0.00")
        assert affiliate.paid_earnings == Decimal("9.70")
        assert (await CommissionLedger(db_session).reconcile(affiliate.id)).in_sync

    async def test_order_without_commissions_cancels_nothing(self, db_session, affiliate):
        result = await OrderEventService(db_session).handle_order_refunded(
            OrderRefundedEvent(order_id="NO-SUCH-ORDER")
        )
        assert result == {
            "order_id": "NO-SUCH-ORDER", "cancelled": 0, "already_cancelled": 0, "already_paid": 0
        }


class TestReconcile:
    async def test_aggregates_match_ledger_after_mixed_events(self, db_session, affiliate):
        service = OrderEventService(db_session)
        for n in range(4):
            await service.handle_order_completed(order_event(f"ORD-2{n}", affiliate.referral_code))
        await service.handle_order_refunded(OrderRefundedEvent(order_id="ORD-21"))
        await service.handle_order_completed(order_event("ORD-20", affiliate.referral_code))

        report = await CommissionLedger(db_session).reconcile(affiliate.id)
        assert report.in_sync, report.drift
        assert report.expected["total_conversions"] == Decimal(3)
        assert report.expected["pending_earnings"] == Decimal("58.20")

    async def test_drift_is_reported_and_repaired(self, db_session, affiliate):
        await OrderEventService(db_session).handle_order_completed(
            order_event("ORD-30", affiliate.referral_code)
        )
        await db_session.execute(
            update(Affiliate).where(Affiliate.id == affiliate.id).values(pending_earnings=Decimal("999.00"))
        )
        await db_session.commit()

        ledger = CommissionLedger(db_session)
        report = await ledger.reconcile(affiliate.id)
        assert not report.in_sync
        assert set(report.drift) == {"pending_earnings"}
        assert not report.repaired

        report = await ledger.reconcile(affiliate.id, repair=True)
        await db_session.commit()
        assert report.repaired

        assert (await ledger.reconcile(affiliate.id)).in_sync
