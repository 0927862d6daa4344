"""Tests for payout batching, admin decisions and payment confirmation."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models.affiliate import (
    AffiliateCommission,
    AffiliateStatus,
    CommissionStatus,
    PaymentMethod,
    PayoutStatus,
)
from app.schemas.affiliate import OrderRefundedEvent, PaymentDetails
from app.services.affiliate_errors import InvalidTransitionError, ReferralNotApprovedError
from app.services.commission_ledger import CommissionLedger
from app.services.order_event_service import OrderEventService
from app.services.payout_service import PayoutBatcher, PayoutOutcome, mask_payment_details
from tests.conftest import make_affiliate, order_event, reload


ADMIN_ID = uuid.uuid4()


async def earn(session, affiliate, count=3):
    """Record ``count`` orders of 20.00 gross / 19.40 net, oldest first; return their ids."""
    service = OrderEventService(session)
    now = datetime.now(timezone.utc)
    ids = []
    for n in range(count):
        event = order_event(f"ORD-P{n}", affiliate.referral_code).model_copy(
            update={"completed_at": now - timedelta(days=count - n)}
        )
        result = await service.handle_order_completed(event)
        ids.extend(result["commission_ids"])
    return ids


async def statuses(session, ids):
    result = await session.execute(
        select(AffiliateCommission.id, AffiliateCommission.status).where(AffiliateCommission.id.in_(ids))
    )
    return {row[0]: row[1] for row in result.all()}


async def request(session, affiliate, amount, method=PaymentMethod.BANK):
    return await PayoutBatcher(session).request_payout(
        affiliate_id=affiliate.id,
        vendor_id=affiliate.vendor_id,
        amount=Decimal(amount),
        method=method,
        details=PaymentDetails(account_name="Jo Doe", account_number="0123456789"),
    )


class TestRequestPayout:
    async def test_insufficient_funds_changes_nothing(self, db_session, affiliate):
        ids = await earn(db_session, affiliate, count=1)

        result = await request(db_session, affiliate, "50.00")

        assert result.outcome == PayoutOutcome.INSUFFICIENT_FUNDS
        assert result.payout is None
        await reload(db_session, affiliate)
        assert affiliate.pending_earnings == Decimal("19.40")
        assert set((await statuses(db_session, ids)).values()) == {CommissionStatus.PENDING.value}

    async def test_below_minimum(self, db_session, affiliate):
        await earn(db_session, affiliate, count=1)
        result = await request(db_session, affiliate, "5.00")
        assert result.outcome == PayoutOutcome.BELOW_MINIMUM

    async def test_payment_method_must_be_allowed(self, db_session, affiliate):
        await earn(db_session, affiliate, count=1)
        result = await request(db_session, affiliate, "15.00", method=PaymentMethod.PAYPAL)
        assert result.outcome == PayoutOutcome.METHOD_NOT_ALLOWED

    async def test_entries_are_selected_oldest_first(self, db_session, affiliate):
        ids = await earn(db_session, affiliate, count=3)

        result = await request(db_session, affiliate, "30.00")

        assert result.created
        payout = result.payout
        assert payout.commission_ids == ids[:2]
        assert payout.total_amount == Decimal("40.00")
        assert payout.commissions_net == Decimal("38.80")
        assert payout.status == PayoutStatus.PENDING.value

        current = await statuses(db_session, ids)
        assert current[ids[0]] == CommissionStatus.APPROVED.value
        assert current[ids[1]] == CommissionStatus.APPROVED.value
        assert current[ids[2]] == CommissionStatus.PENDING.value

        await reload(db_session, affiliate)
        assert affiliate.pending_earnings == Decimal("19.40")

    async def test_entries_never_join_two_payouts(self, db_session, affiliate):
        await earn(db_session, affiliate, count=3)

        first = await request(db_session, affiliate, "30.00")
        second = await request(db_session, affiliate, "15.00")

        assert first.created and second.created
        assert not set(first.payout.commission_ids) & set(second.payout.commission_ids)
        assert len(second.payout.commission_ids) == 1

    async def test_payment_details_are_masked(self, db_session, affiliate):
        await earn(db_session, affiliate, count=1)
        result = await request(db_session, affiliate, "15.00")
        assert result.payout.payment_details["account_number"] == "******6789"

    async def test_unapproved_affiliate_cannot_request(self, db_session, program):
        pending = await make_affiliate(db_session, program, "PEND0001", status=AffiliateStatus.PENDING)
        with pytest.raises(ReferralNotApprovedError):
            await request(db_session, pending, "15.00")

    def test_mask_paypal_email(self):
        masked = mask_payment_details(PaymentDetails(paypal_email="someone@example.com"))
        assert masked == {"paypal_email": "s***@example.com"}


class TestPayoutDecisions:
    async def test_reject_returns_entries_to_pending(self, db_session, affiliate):
        ids = await earn(db_session, affiliate, count=3)
        payout = (await request(db_session, affiliate, "30.00")).payout

        rejected = await PayoutBatcher(db_session).reject(payout.id, ADMIN_ID, "details do not match")

        assert rejected.status == PayoutStatus.REJECTED.value
        assert set((await statuses(db_session, ids)).values()) == {CommissionStatus.PENDING.value}
        await reload(db_session, affiliate)
        assert affiliate.pending_earnings == Decimal("58.20")
        assert (await CommissionLedger(db_session).reconcile(affiliate.id)).in_sync

    async def test_confirmed_payment_marks_entries_paid(self, db_session, affiliate):
        ids = await earn(db_session, affiliate, count=2)
        payout = (await request(db_session, affiliate, "30.00")).payout
        batcher = PayoutBatcher(db_session)
        await batcher.approve(payout.id, ADMIN_ID)

        paid = await batcher.confirm_payment(payout.id, success=True, external_reference="TX-1")

        assert paid.status == PayoutStatus.PAID.value
        assert paid.transaction_id == "TX-1"
        assert set((await statuses(db_session, ids)).values()) == {CommissionStatus.PAID.value}
        await reload(db_session, affiliate)
        assert affiliate.paid_earnings == Decimal("38.80")
        assert affiliate.pending_earnings == Decimal("0.00")
        assert (await CommissionLedger(db_session).reconcile(affiliate.id)).in_sync

    async def test_repeated_confirmation_is_a_no_op(self, db_session, affiliate):
        await earn(db_session, affiliate, count=2)
        payout = (await request(db_session, affiliate, "30.00")).payout
        batcher = PayoutBatcher(db_session)
        await batcher.approve(payout.id, ADMIN_ID)
        await batcher.confirm_payment(payout.id, success=True, external_reference="TX-2")

        await batcher.confirm_payment(payout.id, success=True, external_reference="TX-2")

        await reload(db_session, affiliate)
        assert affiliate.paid_earnings == Decimal("38.80")

    async def test_failed_payment_keeps_payout_approved(self, db_session, affiliate):
        await earn(db_session, affiliate, count=2)
        payout = (await request(db_session, affiliate, "30.00")).payout
        batcher = PayoutBatcher(db_session)
        await batcher.approve(payout.id, ADMIN_ID)

        failed = await batcher.confirm_payment(payout.id, success=False, failure_reason="account closed")

        assert failed.status == PayoutStatus.APPROVED.value
        assert failed.failure_reason == "account closed"

    async def test_pending_payout_cannot_be_paid(self, db_session, affiliate):
        await earn(db_session, affiliate, count=2)
        payout = (await request(db_session, affiliate, "30.00")).payout
        with pytest.raises(InvalidTransitionError):
            await PayoutBatcher(db_session).confirm_payment(payout.id, success=True)

    async def test_refund_after_batching_is_not_paid(self, db_session, affiliate):
        ids = await earn(db_session, affiliate, count=2)
        payout = (await request(db_session, affiliate, "30.00")).payout
        batcher = PayoutBatcher(db_session)
        await batcher.approve(payout.id, ADMIN_ID)

        await OrderEventService(db_session).handle_order_refunded(OrderRefundedEvent(order_id="ORD-P1"))
        await batcher.confirm_payment(payout.id, success=True)

        current = await statuses(db_session, ids)
        assert current[ids[0]] == CommissionStatus.PAID.value
        assert current[ids[1]] == CommissionStatus.CANCELLED.value
        await reload(db_session, affiliate)
        assert affiliate.paid_earnings == Decimal("19.40")
        assert (await CommissionLedger(db_session).reconcile(affiliate.id)).in_sync

    async def test_refund_after_approval_restates_the_payout(self, db_session, program, affiliate):
        program.payout_processing_fee = Decimal("2.00")
        await db_session.commit()
        ids = await earn(db_session, affiliate, count=2)
        payout = (await request(db_session, affiliate, "30.00")).payout
        assert payout.total_amount == Decimal("40.00")
        batcher = PayoutBatcher(db_session)
        await batcher.approve(payout.id, ADMIN_ID)

        await OrderEventService(db_session).handle_order_refunded(OrderRefundedEvent(order_id="ORD-P1"))
        paid = await batcher.confirm_payment(payout.id, success=True, external_reference="TX-3")

        assert paid.total_amount == Decimal("20.00")
        assert paid.platform_fee == Decimal("0.40")
        assert paid.net_amount == Decimal("19.60")
        assert paid.cancelled_amount == Decimal("20.00")
        assert paid.commission_ids == ids

        await reload(db_session, affiliate)
        assert paid.commissions_net == affiliate.paid_earnings == Decimal("19.40")
        assert (await CommissionLedger(db_session).reconcile(affiliate.id)).in_sync
