# backend/app/api/v1/billing.py
import json

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies import get_dispatcher, get_processor
from app.core.logging import logger
from app.db.database import get_db
from app.schemas.billing import BillingRequest
from app.services.billing_actions import BillingActionDispatcher
from app.services.payment_processor import PaymentProcessorService
from app.services.subscription_lifecycle import ProcessorEvent, SubscriptionLifecycleManager

router = APIRouter()


@router.post("/rpc")
async def billing_rpc(
    payload: BillingRequest,
    dispatcher: BillingActionDispatcher = Depends(get_dispatcher),
):
    """Run one billing action; errors are rendered by the BillingError handler"""
    result = await dispatcher.dispatch(payload.action, payload.params)
    return {"success": True, "action": payload.action, "data": result}


@router.post("/webhook")
async def processor_webhook(
    request: Request,
    processor: PaymentProcessorService = Depends(get_processor),
    db: AsyncSession = Depends(get_db),
):
    """Handle payment processor webhooks"""

    # Get raw body for signature verification
    body = await request.body()
    signature = request.headers.get("X-Signature", "")

    if not processor.verify_webhook_signature(body, signature):
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    event = ProcessorEvent.from_payload(data)
    outcome = await SubscriptionLifecycleManager(db, processor=processor).handle_event(event)
    return {"received": True, "event_id": event.id, "outcome": outcome.value}
