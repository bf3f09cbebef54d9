import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from entitlements.services.container import get_webhook_reconciler
from entitlements.services.webhook_reconciler import WebhookReconciler

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("/webhook", summary="Stripe Webhook", description="Receive subscription and invoice events from Stripe.")
async def stripe_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
):
    # Signature covers the exact bytes Stripe sent; read before any parsing
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")

    result = await asyncio.to_thread(reconciler.handle, payload, signature)

    if not result.acknowledged:
        return JSONResponse(
            status_code=400,
            content={"received": False, "error": "Invalid signature"},
        )
    return {
        "received": True,
        "outcome": result.outcome.value,
        "event_id": result.event_id,
    }
