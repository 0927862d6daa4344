"""
Order Event Service

Entry point for order lifecycle signals from the order collaborator.
Completed orders are attributed and recorded in the ledger; refunds
cancel the matching ledger entries. Both handlers are safe to re-invoke
with the same event.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.affiliate import CommissionStatus
from app.schemas.affiliate import OrderCompletedEvent, OrderRefundedEvent
from app.services.attribution_service import ConversionAttributor
from app.services.cache_service import CacheService
from app.services.commission_ledger import CommissionLedger

logger = logging.getLogger(__name__)


class OrderEventService:
    def __init__(self, db: AsyncSession, cache: Optional[CacheService] = None):
        self.db = db
        self.attributor = ConversionAttributor(db, cache)
        self.ledger = CommissionLedger(db)

    async def handle_order_completed(self, event: OrderCompletedEvent) -> dict:
        intents = await self.attributor.attribute(event)
        if not intents:
            await self.db.commit()
            return {"order_id": event.order_id, "attributed": False, "commission_ids": []}

        commission_ids = await self.ledger.record(intents)
        await self.db.commit()
        return {"order_id": event.order_id, "attributed": True, "commission_ids": commission_ids}

    async def handle_order_refunded(self, event: OrderRefundedEvent) -> dict:
        outcomes = await self.ledger.cancel(event.order_id, event.line_item_id, event.reason)
        await self.db.commit()
        cancelled = sum(1 for o in outcomes if o.cancelled)
        already_paid = sum(1 for o in outcomes if o.previous_status == CommissionStatus.PAID.value)
        if cancelled:
            logger.info(f"Order {event.order_id} refund cancelled {cancelled} commissions")
        return {
            "order_id": event.order_id,
            "cancelled": cancelled,
            "already_cancelled": len(outcomes) - cancelled - already_paid,
            "already_paid": already_paid,
        }
