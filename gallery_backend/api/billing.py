"""
Billing webhook API routes.

Endpoints:
- POST /v1/billing/webhook: Handle Stripe webhooks
"""
from typing import Dict, Any
from fastapi import APIRouter, Request, HTTPException
from starlette.concurrency import run_in_threadpool

from gallery_backend.features.billing.service import billing_enabled, process_webhook_event
from gallery_backend.features.billing.provider import BillingProviderError, BillingWebhookError


router = APIRouter(prefix="/v1/billing", tags=["billing"])


@router.post("/webhook")
async def handle_webhook(request: Request) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Verifies the signature and hands the event to the lifecycle engine. The
    Stripe event id doubles as correlation id, so redeliveries replay.

    Errors:
        400: Invalid signature or payload
        404: Customer reference matches no account
        500: Cascade partially applied; Stripe redelivers and it resumes
        503: Billing disabled
    """
    if not billing_enabled():
        raise HTTPException(
            status_code=503,
            detail={"error": "Billing disabled", "code": "billing_disabled"},
        )

    # Read raw body (required for signature verification)
    body = await request.body()
    headers = dict(request.headers)

    try:
        return await run_in_threadpool(process_webhook_event, headers, body)
    except BillingWebhookError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BillingProviderError as e:
        raise HTTPException(status_code=503, detail=str(e))
