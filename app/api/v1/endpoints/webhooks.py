"""
Collaborator Webhooks

Order lifecycle and payment execution signals. All calls carry the shared
secret in the ``X-Webhook-Secret`` header. Order completion may be
delivered more than once; the ledger absorbs duplicates.
"""

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import DB, Cache, verify_webhook
from app.schemas.affiliate import (
    OrderCompletedEvent,
    OrderProcessedResponse,
    OrderRefundedEvent,
    OrderRefundResponse,
    PaymentConfirmationEvent,
    PayoutResponse,
)
from app.services.affiliate_errors import AffiliateError
from app.services.order_event_service import OrderEventService
from app.services.payout_service import PayoutBatcher


router = APIRouter(prefix="/webhooks", tags=["Webhooks"], dependencies=[Depends(verify_webhook)])


@router.post("/orders/completed", response_model=OrderProcessedResponse)
async def order_completed(event: OrderCompletedEvent, db: DB, cache: Cache):
    try:
        return await OrderEventService(db, cache).handle_order_completed(event)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/orders/refunded", response_model=OrderRefundResponse)
async def order_refunded(event: OrderRefundedEvent, db: DB, cache: Cache):
    try:
        return await OrderEventService(db, cache).handle_order_refunded(event)
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/payouts/confirmation", response_model=PayoutResponse)
async def payout_confirmation(event: PaymentConfirmationEvent, db: DB):
    try:
        return await PayoutBatcher(db).confirm_payment(
            event.payout_id,
            success=event.success,
            external_reference=event.external_reference,
            failure_reason=event.failure_reason,
        )
    except AffiliateError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
