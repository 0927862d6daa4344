"""
Commission Ledger

Authoritative record of commission entries, one per (order, order line),
and the bookkeeping that keeps affiliate aggregates consistent with it:

    total_conversions / total_earnings  <- non-cancelled entries
    pending_earnings                    <- net of PENDING entries
    paid_earnings                       <- net of PAID entries

Aggregates only move through atomic column increments. ``reconcile``
recomputes them from the entries and reports (or repairs) any drift.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, case
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.affiliate import (
    Affiliate,
    AffiliateClick,
    AffiliateCommission,
    AffiliateLink,
    AffiliatePayout,
    AffiliateProgram,
    CommissionStatus,
)
from app.services.affiliate_errors import CommissionAlreadyPaidError, NotFoundError
from app.services.affiliate_state_machine import validate_transition
from app.services.commission_rules import (
    AffiliateTerms,
    ProgramTerms,
    compute_commission,
    money,
    split_fees,
    ZERO,
)

logger = logging.getLogger(__name__)


def decrement(column, amount):
    """``column - amount`` evaluated in SQL, never below zero."""
    return case((column >= amount, column - amount), else_=0)


async def lock_affiliate(db: AsyncSession, affiliate_id: uuid.UUID) -> Affiliate:
    """
    Load an affiliate holding its row lock until commit.

    Serializes money movements of one affiliate (payouts, cancellations);
    click and conversion increments do not take this lock.
    """
    result = await db.execute(
        select(Affiliate)
        .where(Affiliate.id == affiliate_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    affiliate = result.scalar_one_or_none()
    if not affiliate:
        raise NotFoundError(f"Affiliate {affiliate_id} not found")
    return affiliate


@dataclass
class CancelOutcome:
    commission_id: uuid.UUID
    previous_status: str
    cancelled: bool


@dataclass
class ReconciliationReport:
    affiliate_id: uuid.UUID
    expected: Dict[str, Decimal]
    actual: Dict[str, Decimal]
    repaired: bool = False
    drift: Dict[str, Dict[str, Decimal]] = field(default_factory=dict)

    @property
    def in_sync(self) -> bool:
        return not self.drift


class CommissionLedger:
    """Ledger writes, status transitions and reconciliation."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ========================================================================
    # Recording
    # ========================================================================

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(AffiliateCommission)
        if dialect == "sqlite":
            return sqlite_insert(AffiliateCommission)
        raise RuntimeError(f"Unsupported database dialect for the commission ledger: {dialect}")

    async def cumulative_sales(self, affiliate_id: uuid.UUID) -> Decimal:
        """Sum of order amounts of the affiliate's non-cancelled entries."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(AffiliateCommission.order_amount), 0)).where(
                AffiliateCommission.affiliate_id == affiliate_id,
                AffiliateCommission.status != CommissionStatus.CANCELLED.value,
            )
        )
        return money(result.scalar())

    async def record(self, intents) -> List[uuid.UUID]:
        """
        Insert one PENDING entry per intent and credit the affiliate.

        Idempotent per (order_id, order_line_id): the unique constraint turns
        a redelivered order into a no-op that returns the existing ids.
        """
        ids: List[uuid.UUID] = []
        affiliates: Dict[uuid.UUID, Affiliate] = {}
        programs: Dict[uuid.UUID, ProgramTerms] = {}

        for intent in intents:
            affiliate = affiliates.get(intent.affiliate_id)
            if affiliate is None:
                affiliate = await self.db.get(Affiliate, intent.affiliate_id)
                if affiliate is None:
                    raise NotFoundError(f"Affiliate {intent.affiliate_id} not found")
                affiliates[intent.affiliate_id] = affiliate

            terms = programs.get(intent.vendor_id)
            if terms is None:
                result = await self.db.execute(
                    select(AffiliateProgram).where(AffiliateProgram.vendor_id == intent.vendor_id)
                )
                program = result.scalar_one_or_none()
                if program is None:
                    raise NotFoundError(f"No affiliate program for vendor {intent.vendor_id}")
                terms = ProgramTerms.from_program(program)
                programs[intent.vendor_id] = terms

            line = intent.line_item
            computed = compute_commission(
                line,
                AffiliateTerms.from_affiliate(affiliate),
                terms,
                cumulative_sales=await self.cumulative_sales(affiliate.id),
            )

            commission_id = uuid.uuid4()
            values = dict(
                id=commission_id,
                affiliate_id=intent.affiliate_id,
                vendor_id=intent.vendor_id,
                order_id=intent.order_id,
                order_line_id=line.line_item_id,
                product_id=line.product_id,
                product_category=line.category,
                click_id=intent.click_id,
                order_amount=line.amount,
                commission_rate=computed.rate,
                commission_type=computed.commission_type.value,
                commission_amount=computed.gross,
                platform_fee=computed.platform_fee,
                vendor_fee=computed.vendor_fee,
                net_commission=computed.net,
                status=CommissionStatus.PENDING.value,
                needs_review=computed.fee_exceeds_gross,
                review_reason=", ".join(computed.review_reasons) or None,
                earned_date=intent.earned_at or datetime.now(timezone.utc),
            )
            stmt = self._insert().values(**values).on_conflict_do_nothing(
                index_elements=["order_id", "order_line_id"]
            )
            inserted = await self.db.execute(stmt)

            if inserted.rowcount == 0:
                existing = await self.db.execute(
                    select(AffiliateCommission.id).where(
                        AffiliateCommission.order_id == intent.order_id,
                        AffiliateCommission.order_line_id == line.line_item_id,
                    )
                )
                ids.append(existing.scalar_one())
                logger.info(
                    f"Duplicate attribution absorbed for order {intent.order_id} "
                    f"line {line.line_item_id}"
                )
                continue

            await self.db.execute(
                update(Affiliate)
                .where(Affiliate.id == intent.affiliate_id)
                .values(
                    total_conversions=Affiliate.total_conversions + 1,
                    total_earnings=Affiliate.total_earnings + computed.gross,
                    pending_earnings=Affiliate.pending_earnings + computed.net,
                )
                .execution_options(synchronize_session=False)
            )
            if intent.link_id:
                await self.db.execute(
                    update(AffiliateLink)
                    .where(AffiliateLink.id == intent.link_id)
                    .values(earnings=AffiliateLink.earnings + computed.net)
                    .execution_options(synchronize_session=False)
                )

            if computed.fee_exceeds_gross:
                logger.warning(
                    f"Commission {commission_id} fees exceed gross {computed.gross}; "
                    f"net clamped to 0 and flagged for review"
                )
            logger.info(
                f"Commission {commission_id} recorded: affiliate={intent.affiliate_id} "
                f"order={intent.order_id} line={line.line_item_id} gross={computed.gross} "
                f"net={computed.net} rule={computed.source}"
            )
            ids.append(commission_id)

        return ids

    # ========================================================================
    # Cancellation (refund / chargeback)
    # ========================================================================

    async def cancel(
        self,
        order_id: str,
        line_item_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> List[CancelOutcome]:
        """
        Cancel the entries of an order (or of one line) and reverse their deltas.

        Cancelling an already-cancelled entry is a no-op. PAID lines of a
        whole-order refund are skipped and reported; the refund raises
        CommissionAlreadyPaidError only when every matching entry is PAID.
        An order that never earned a commission yields no outcomes.
        """
        query = select(AffiliateCommission).where(AffiliateCommission.order_id == order_id)
        if line_item_id:
            query = query.where(AffiliateCommission.order_line_id == line_item_id)
        entries = (await self.db.execute(query.order_by(AffiliateCommission.order_line_id))).scalars().all()
        if not entries:
            logger.info(
                f"Refund for order {order_id}" + (f" line {line_item_id}" if line_item_id else "")
                + " matches no commission"
            )
            return []

        paid = [e for e in entries if e.status == CommissionStatus.PAID.value]
        if len(paid) == len(entries):
            raise CommissionAlreadyPaidError(
                f"Commission for order {order_id} line {paid[0].order_line_id} is already paid",
                {"commission_ids": [str(e.id) for e in paid]},
            )

        outcomes = []
        for entry in entries:
            if entry.status == CommissionStatus.PAID.value:
                logger.warning(
                    f"Refund of order {order_id} skips paid commission {entry.id} "
                    f"(line {entry.order_line_id})"
                )
                outcomes.append(CancelOutcome(entry.id, entry.status, cancelled=False))
                continue
            await lock_affiliate(self.db, entry.affiliate_id)
            outcomes.append(await self._cancel_entry(entry.id, reason))
        return outcomes

    async def _cancel_entry(self, commission_id: uuid.UUID, reason: Optional[str]) -> CancelOutcome:
        result = await self.db.execute(
            select(AffiliateCommission)
            .where(AffiliateCommission.id == commission_id)
            .execution_options(populate_existing=True)
        )
        entry = result.scalar_one()
        observed = entry.status

        if observed == CommissionStatus.CANCELLED.value:
            return CancelOutcome(entry.id, observed, cancelled=False)
        if observed == CommissionStatus.PAID.value:
            raise CommissionAlreadyPaidError(f"Commission {entry.id} is already paid")
        validate_transition("commission", observed, CommissionStatus.CANCELLED.value)

        now = datetime.now(timezone.utc)
        changed = await self.db.execute(
            update(AffiliateCommission)
            .where(AffiliateCommission.id == entry.id, AffiliateCommission.status == observed)
            .values(
                status=CommissionStatus.CANCELLED.value,
                refunded=True,
                refund_date=now,
                refund_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if changed.rowcount != 1:
            # Status moved under us; evaluate again against the new status
            return await self._cancel_entry(commission_id, reason)

        deltas = dict(
            total_conversions=decrement(Affiliate.total_conversions, 1),
            total_earnings=decrement(Affiliate.total_earnings, entry.commission_amount),
        )
        if observed == CommissionStatus.PENDING.value:
            deltas["pending_earnings"] = decrement(Affiliate.pending_earnings, entry.net_commission)

        await self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == entry.affiliate_id)
            .values(**deltas)
            .execution_options(synchronize_session=False)
        )
        if observed == CommissionStatus.APPROVED.value and entry.payout_id:
            await self.restate_payout(entry.payout_id, entry.commission_amount)

        logger.info(
            f"Commission {entry.id} cancelled from {observed}: order={entry.order_id} "
            f"line={entry.order_line_id} reason={reason}"
        )
        return CancelOutcome(entry.id, observed, cancelled=True)

    async def restate_payout(self, payout_id: uuid.UUID, removed_gross: Decimal) -> None:
        """
        Recompute a payout's amounts from the entries it still carries.

        Called when an APPROVED entry leaves the payout through a refund, so
        the amount sent to the payment processor never includes it.
        """
        payout = (await self.db.execute(
            select(AffiliatePayout)
            .where(AffiliatePayout.id == payout_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one()
        program = (await self.db.execute(
            select(AffiliateProgram).where(AffiliateProgram.vendor_id == payout.vendor_id)
        )).scalar_one_or_none()

        gross, net = await self._sum_amounts(payout_id, CommissionStatus.APPROVED)
        platform_fee, vendor_fee, net_amount, _ = split_fees(
            gross,
            program.payout_processing_fee if program else ZERO,
            program.payout_vendor_fee if program else ZERO,
        )
        payout.total_amount = gross
        payout.platform_fee = platform_fee
        payout.vendor_fee = vendor_fee
        payout.net_amount = net_amount
        payout.commissions_net = net
        payout.cancelled_amount = money(payout.cancelled_amount) + money(removed_gross)

        if gross == ZERO:
            logger.warning(f"Payout {payout_id} has no payable commissions left after refunds")
        logger.info(
            f"Payout {payout_id} restated after refund: total={gross}, net={net_amount}, "
            f"cancelled={payout.cancelled_amount}"
        )

    # ========================================================================
    # Payout-driven transitions
    # ========================================================================

    async def approve_for_payout(
        self,
        commission_ids: List[uuid.UUID],
        payout_id: uuid.UUID,
    ) -> int:
        """PENDING -> APPROVED for the given entries; returns rows changed."""
        result = await self.db.execute(
            update(AffiliateCommission)
            .where(
                AffiliateCommission.id.in_(commission_ids),
                AffiliateCommission.status == CommissionStatus.PENDING.value,
            )
            .values(
                status=CommissionStatus.APPROVED.value,
                payout_id=payout_id,
                approved_date=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def release_from_payout(self, payout_id: uuid.UUID) -> Tuple[int, Decimal]:
        """APPROVED -> PENDING for a rejected payout; returns (count, net restored)."""
        _, net = await self._sum_amounts(payout_id, CommissionStatus.APPROVED)
        result = await self.db.execute(
            update(AffiliateCommission)
            .where(
                AffiliateCommission.payout_id == payout_id,
                AffiliateCommission.status == CommissionStatus.APPROVED.value,
            )
            .values(status=CommissionStatus.PENDING.value, payout_id=None, approved_date=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount, net

    async def mark_paid(self, payout_id: uuid.UUID, affiliate_id: uuid.UUID) -> Tuple[int, Decimal]:
        """
        APPROVED -> PAID for a confirmed payout and credit paid_earnings.

        Entries cancelled after batching stay cancelled and are not paid.
        """
        _, net = await self._sum_amounts(payout_id, CommissionStatus.APPROVED)
        result = await self.db.execute(
            update(AffiliateCommission)
            .where(
                AffiliateCommission.payout_id == payout_id,
                AffiliateCommission.status == CommissionStatus.APPROVED.value,
            )
            .values(status=CommissionStatus.PAID.value, paid_date=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate_id)
            .values(paid_earnings=Affiliate.paid_earnings + net)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount, net

    async def _sum_amounts(self, payout_id: uuid.UUID, status: CommissionStatus) -> Tuple[Decimal, Decimal]:
        """(gross, net) of the payout's entries in ``status``."""
        result = await self.db.execute(
            select(
                func.coalesce(func.sum(AffiliateCommission.commission_amount), 0),
                func.coalesce(func.sum(AffiliateCommission.net_commission), 0),
            ).where(
                AffiliateCommission.payout_id == payout_id,
                AffiliateCommission.status == status.value,
            )
        )
        gross, net = result.one()
        return money(gross), money(net)

    # ========================================================================
    # Reconciliation
    # ========================================================================

    async def expected_aggregates(self, affiliate_id: uuid.UUID) -> Dict[str, Decimal]:
        """Recompute the affiliate's aggregates from ledger entries and clicks."""
        not_cancelled = AffiliateCommission.status != CommissionStatus.CANCELLED.value
        result = await self.db.execute(
            select(
                func.count(AffiliateCommission.id).filter(not_cancelled),
                func.coalesce(func.sum(AffiliateCommission.commission_amount).filter(not_cancelled), 0),
                func.coalesce(
                    func.sum(AffiliateCommission.net_commission).filter(
                        AffiliateCommission.status == CommissionStatus.PENDING.value
                    ),
                    0,
                ),
                func.coalesce(
                    func.sum(AffiliateCommission.net_commission).filter(
                        AffiliateCommission.status == CommissionStatus.PAID.value
                    ),
                    0,
                ),
            ).where(AffiliateCommission.affiliate_id == affiliate_id)
        )
        conversions, total, pending, paid = result.one()

        clicks = await self.db.execute(
            select(func.count(AffiliateClick.id)).where(AffiliateClick.affiliate_id == affiliate_id)
        )
        return {
            "total_clicks": Decimal(clicks.scalar() or 0),
            "total_conversions": Decimal(conversions or 0),
            "total_earnings": money(total),
            "pending_earnings": money(pending),
            "paid_earnings": money(paid),
        }

    async def reconcile(self, affiliate_id: uuid.UUID, repair: bool = False) -> ReconciliationReport:
        """Compare stored aggregates to the ledger; optionally overwrite them."""
        affiliate = await lock_affiliate(self.db, affiliate_id) if repair else await self.db.get(
            Affiliate, affiliate_id, populate_existing=True
        )
        if affiliate is None:
            raise NotFoundError(f"Affiliate {affiliate_id} not found")

        expected = await self.expected_aggregates(affiliate_id)
        actual = {
            "total_clicks": Decimal(affiliate.total_clicks or 0),
            "total_conversions": Decimal(affiliate.total_conversions or 0),
            "total_earnings": money(affiliate.total_earnings),
            "pending_earnings": money(affiliate.pending_earnings),
            "paid_earnings": money(affiliate.paid_earnings),
        }
        report = ReconciliationReport(affiliate_id=affiliate_id, expected=expected, actual=actual)
        report.drift = {
            name: {"expected": expected[name], "actual": actual[name]}
            for name in expected
            if expected[name] != actual[name]
        }

        if report.drift:
            logger.warning(f"Affiliate {affiliate_id} aggregates drifted: {report.drift}")
            if repair:
                await self.db.execute(
                    update(Affiliate)
                    .where(Affiliate.id == affiliate_id)
                    .values(
                        total_clicks=int(expected["total_clicks"]),
                        total_conversions=int(expected["total_conversions"]),
                        total_earnings=expected["total_earnings"],
                        pending_earnings=expected["pending_earnings"],
                        paid_earnings=expected["paid_earnings"],
                    )
                    .execution_options(synchronize_session=False)
                )
                report.repaired = True
                logger.info(f"Affiliate {affiliate_id} aggregates repaired from ledger")
        return report

    async def reconcile_all(self, repair: bool = False) -> List[ReconciliationReport]:
        ids = (await self.db.execute(select(Affiliate.id))).scalars().all()
        reports = []
        for affiliate_id in ids:
            reports.append(await self.reconcile(affiliate_id, repair=repair))
        return reports

    # ========================================================================
    # Read projections
    # ========================================================================

    async def list_commissions(
        self,
        affiliate_id: Optional[uuid.UUID] = None,
        vendor_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[AffiliateCommission], int]:
        """Time-ordered commission history, newest first."""
        query = select(AffiliateCommission)
        if affiliate_id:
            query = query.where(AffiliateCommission.affiliate_id == affiliate_id)
        if vendor_id:
            query = query.where(AffiliateCommission.vendor_id == vendor_id)
        if status:
            query = query.where(AffiliateCommission.status == status)

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))
        result = await self.db.execute(
            query.order_by(AffiliateCommission.earned_date.desc()).offset(skip).limit(limit)
        )
        return list(result.scalars().all()), total or 0
