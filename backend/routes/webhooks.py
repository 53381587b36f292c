"""Webhook Routes - Stripe payment events.

POST /api/webhook/stripe  - Main Stripe webhook endpoint
POST /api/webhooks/stripe - Alias (Stripe may be configured with this URL)

Duplicate deliveries are acknowledged with 200 "Already processed". Only a
failure that left nothing written returns 500 so Stripe retries it.
"""
from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse
from services.payment_reconciliation import payment_reconciliation
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_stripe_webhook(request: Request, stripe_signature: str = None):
    try:
        payload = await request.body()

        success, message, details = await payment_reconciliation.process_webhook(
            payload=payload,
            signature=stripe_signature or ""
        )

        if success:
            return {"status": "received", "message": message, "details": details}
        if message == "Not applied":
            return JSONResponse(status_code=500, content={"status": "error", "message": message})

        # Bad signature or payload: nothing to retry
        logger.error(f"Webhook rejected: {message}")
        return JSONResponse(status_code=400, content={"status": "error", "message": message})

    except Exception as e:
        logger.exception(f"Stripe webhook error: {e}")
        return JSONResponse(status_code=500, content={"status": "error", "message": "Webhook processing failed"})


@router.post("/api/webhook/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhook/stripe"""
    return await _handle_stripe_webhook(request, stripe_signature)


@router.post("/api/webhooks/stripe")
async def stripe_webhook_alias(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """Handle Stripe webhooks at /api/webhooks/stripe (alias)"""
    return await _handle_stripe_webhook(request, stripe_signature)
