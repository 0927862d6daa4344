"""
Payout Batcher

Groups an affiliate's PENDING commission entries into a payout request.

Selection and approval of entries happen under the affiliate's row lock
and use a conditional ``status = PENDING`` update, so two concurrent
requests can never batch the same entry.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.affiliate import (
    Affiliate,
    AffiliateCommission,
    AffiliatePayout,
    AffiliatePayoutItem,
    AffiliateProgram,
    AffiliateStatus,
    CommissionStatus,
    PaymentMethod,
    PayoutStatus,
)
from app.schemas.affiliate import PaymentDetails
from app.services.affiliate_errors import (
    NotFoundError,
    PayoutConflictError,
    ReferralNotApprovedError,
)
from app.services.affiliate_state_machine import validate_transition
from app.services.commission_ledger import CommissionLedger, decrement, lock_affiliate
from app.services.commission_rules import money, split_fees, ZERO

logger = logging.getLogger(__name__)

DEFAULT_MIN_PAYOUT = Decimal("50.00")


class PayoutOutcome(str, Enum):
    CREATED = "CREATED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    BELOW_MINIMUM = "BELOW_MINIMUM"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"


@dataclass
class PayoutResult:
    outcome: PayoutOutcome
    message: str
    payout: Optional[AffiliatePayout] = None

    @property
    def created(self) -> bool:
        return self.outcome == PayoutOutcome.CREATED


def mask_value(value: Optional[str], visible: int = 4) -> Optional[str]:
    if not value:
        return value
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def mask_payment_details(details: Optional[PaymentDetails]) -> dict:
    """Keep only what an operator needs to recognise the account."""
    if details is None:
        return {}
    data = details.model_dump(exclude_none=True)
    for key in ("account_number", "routing_number", "mobile_number"):
        if key in data:
            data[key] = mask_value(data[key])
    if "paypal_email" in data:
        name, _, domain = data["paypal_email"].partition("@")
        data["paypal_email"] = f"{name[:1]}***@{domain}"
    return data


class PayoutBatcher:
    """Create, approve, reject and settle payout batches."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = CommissionLedger(db)

    # ========================================================================
    # Request
    # ========================================================================

    async def request_payout(
        self,
        affiliate_id: uuid.UUID,
        vendor_id: uuid.UUID,
        amount: Decimal,
        method: PaymentMethod,
        details: Optional[PaymentDetails] = None,
        requested_by: Optional[uuid.UUID] = None,
    ) -> PayoutResult:
        """
        Batch PENDING entries (oldest first) until their gross covers ``amount``.

        Validation failures come back as a PayoutResult and leave all state
        untouched.
        """
        amount = money(amount)
        affiliate = await lock_affiliate(self.db, affiliate_id)
        if affiliate.vendor_id != vendor_id:
            raise NotFoundError(f"Affiliate {affiliate_id} does not belong to vendor {vendor_id}")
        if affiliate.status != AffiliateStatus.APPROVED.value:
            raise ReferralNotApprovedError(
                f"Affiliate {affiliate_id} cannot request payouts while {affiliate.status}",
                status=affiliate.status,
            )

        program = (await self.db.execute(
            select(AffiliateProgram).where(AffiliateProgram.vendor_id == vendor_id)
        )).scalar_one_or_none()
        min_payout = money(program.min_payout_amount) if program else DEFAULT_MIN_PAYOUT
        pending = money(affiliate.pending_earnings)

        if amount > pending:
            return PayoutResult(
                PayoutOutcome.INSUFFICIENT_FUNDS,
                f"Requested {amount} exceeds pending earnings {pending}",
            )
        if amount < min_payout:
            return PayoutResult(
                PayoutOutcome.BELOW_MINIMUM,
                f"Minimum payout amount is {min_payout}",
            )
        method = PaymentMethod(method)
        if program and method.value not in (program.allowed_payment_methods or []):
            return PayoutResult(
                PayoutOutcome.METHOD_NOT_ALLOWED,
                f"Payment method {method.value} is not accepted by this program",
            )

        selected, gross_total, net_total = await self._select_entries(affiliate_id, vendor_id, amount)
        if gross_total < amount:
            return PayoutResult(
                PayoutOutcome.INSUFFICIENT_FUNDS,
                f"Pending commissions cover only {gross_total} of {amount}",
            )

        platform_fee, vendor_fee, net_amount, _ = split_fees(
            gross_total,
            program.payout_processing_fee if program else ZERO,
            program.payout_vendor_fee if program else ZERO,
        )
        payout = AffiliatePayout(
            affiliate_id=affiliate_id,
            vendor_id=vendor_id,
            requested_amount=amount,
            total_amount=gross_total,
            platform_fee=platform_fee,
            vendor_fee=vendor_fee,
            net_amount=net_amount,
            commissions_net=net_total,
            payment_method=method.value,
            payment_details=mask_payment_details(details),
            status=PayoutStatus.PENDING.value,
            requested_by=requested_by or affiliate.user_id,
        )
        payout.items = [
            AffiliatePayoutItem(
                commission_id=entry.id,
                position=position,
                gross_amount=entry.commission_amount,
                net_amount=entry.net_commission,
            )
            for position, entry in enumerate(selected)
        ]
        self.db.add(payout)
        await self.db.flush()

        changed = await self.ledger.approve_for_payout([e.id for e in selected], payout.id)
        if changed != len(selected):
            await self.db.rollback()
            logger.warning(
                f"Payout for affiliate {affiliate_id} lost {len(selected) - changed} "
                f"entries to a concurrent request"
            )
            raise PayoutConflictError(
                "Some commissions were claimed by another payout request, please retry",
                {"affiliate_id": str(affiliate_id)},
            )

        await self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .values(pending_earnings=decrement(Affiliate.pending_earnings, net_total))
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(
            f"Payout {payout.id} created for affiliate {affiliate_id}: "
            f"{len(selected)} commissions, total={gross_total}, net={net_amount}"
        )
        return PayoutResult(PayoutOutcome.CREATED, "Payout request created", payout)

    async def _select_entries(
        self,
        affiliate_id: uuid.UUID,
        vendor_id: uuid.UUID,
        amount: Decimal,
    ) -> Tuple[List[AffiliateCommission], Decimal, Decimal]:
        result = await self.db.execute(
            select(AffiliateCommission)
            .where(
                AffiliateCommission.affiliate_id == affiliate_id,
                AffiliateCommission.vendor_id == vendor_id,
                AffiliateCommission.status == CommissionStatus.PENDING.value,
            )
            .order_by(AffiliateCommission.earned_date.asc(), AffiliateCommission.created_at.asc())
        )
        selected: List[AffiliateCommission] = []
        gross_total = ZERO
        net_total = ZERO
        for entry in result.scalars():
            if gross_total >= amount:
                break
            selected.append(entry)
            gross_total += money(entry.commission_amount)
            net_total += money(entry.net_commission)
        return selected, gross_total, net_total

    # ========================================================================
    # Admin decisions
    # ========================================================================

    async def _lock_payout(self, payout_id: uuid.UUID) -> AffiliatePayout:
        result = await self.db.execute(
            select(AffiliatePayout)
            .where(AffiliatePayout.id == payout_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payout = result.scalar_one_or_none()
        if not payout:
            raise NotFoundError(f"Payout {payout_id} not found")
        return payout

    async def _lock_affiliate_and_payout(self, payout_id: uuid.UUID) -> AffiliatePayout:
        """Lock the affiliate row, then the payout, in the same order refunds do."""
        affiliate_id = await self.db.scalar(
            select(AffiliatePayout.affiliate_id).where(AffiliatePayout.id == payout_id)
        )
        if affiliate_id is None:
            raise NotFoundError(f"Payout {payout_id} not found")
        await lock_affiliate(self.db, affiliate_id)
        return await self._lock_payout(payout_id)

    async def approve(self, payout_id: uuid.UUID, approved_by: uuid.UUID) -> AffiliatePayout:
        """PENDING -> APPROVED."""
        payout = await self._lock_payout(payout_id)
        validate_transition("payout", payout.status, PayoutStatus.APPROVED.value)

        now = datetime.now(timezone.utc)
        payout.status = PayoutStatus.APPROVED.value
        payout.approved_by = approved_by
        payout.approved_at = now
        payout.processing_date = now
        await self.db.commit()

        logger.info(f"Payout {payout_id} approved by {approved_by}")
        return payout

    async def reject(
        self,
        payout_id: uuid.UUID,
        rejected_by: uuid.UUID,
        reason: str,
    ) -> AffiliatePayout:
        """PENDING -> REJECTED, returning the entries to PENDING earnings."""
        payout = await self._lock_affiliate_and_payout(payout_id)
        validate_transition("payout", payout.status, PayoutStatus.REJECTED.value)

        released, net = await self.ledger.release_from_payout(payout.id)
        await self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == payout.affiliate_id)
            .values(pending_earnings=Affiliate.pending_earnings + net)
            .execution_options(synchronize_session=False)
        )

        payout.status = PayoutStatus.REJECTED.value
        payout.rejected_by = rejected_by
        payout.rejected_at = datetime.now(timezone.utc)
        payout.rejection_reason = reason
        await self.db.commit()

        logger.info(f"Payout {payout_id} rejected by {rejected_by}: {released} commissions released ({net})")
        return payout

    # ========================================================================
    # Payment confirmation (external)
    # ========================================================================

    async def confirm_payment(
        self,
        payout_id: uuid.UUID,
        success: bool,
        external_reference: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> AffiliatePayout:
        """
        Settle an APPROVED payout.

        On success the payout and its entries become PAID; the settled
        amounts are those of the entries still APPROVED. On failure the
        payout stays APPROVED with the failure recorded, so it can be retried.
        A repeated success confirmation for a PAID payout is a no-op.
        """
        payout = await self._lock_affiliate_and_payout(payout_id)

        if not success:
            validate_transition("payout", payout.status, PayoutStatus.PAID.value)
            payout.failure_reason = failure_reason or "Payment failed"
            payout.transaction_id = external_reference
            await self.db.commit()
            logger.warning(f"Payout {payout_id} payment failed: {payout.failure_reason}")
            return payout

        if payout.status == PayoutStatus.PAID.value:
            return payout
        validate_transition("payout", payout.status, PayoutStatus.PAID.value)

        paid_count, paid_net = await self.ledger.mark_paid(payout.id, payout.affiliate_id)
        if paid_net != money(payout.commissions_net):
            logger.warning(
                f"Payout {payout_id} settles net {paid_net} but records {payout.commissions_net}"
            )

        payout.status = PayoutStatus.PAID.value
        payout.transaction_id = external_reference
        payout.completed_date = datetime.now(timezone.utc)
        payout.failure_reason = None
        await self.db.commit()

        logger.info(f"Payout {payout_id} paid: {paid_count} commissions, net={paid_net}")
        return payout

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_payout(self, payout_id: uuid.UUID) -> AffiliatePayout:
        payout = await self.db.get(AffiliatePayout, payout_id)
        if not payout:
            raise NotFoundError(f"Payout {payout_id} not found")
        return payout

    async def list_payouts(
        self,
        affiliate_id: Optional[uuid.UUID] = None,
        vendor_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[AffiliatePayout], int]:
        query = select(AffiliatePayout)
        if affiliate_id:
            query = query.where(AffiliatePayout.affiliate_id == affiliate_id)
        if vendor_id:
            query = query.where(AffiliatePayout.vendor_id == vendor_id)
        if status:
            query = query.where(AffiliatePayout.status == status)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(AffiliatePayout.created_at.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total or 0
