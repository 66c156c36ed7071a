"""Provider webhook receiver."""
from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool

from ..billing import BillingError
from ..schemas.billing import WebhookAcknowledgement
from ..services.billing import get_webhook_reconciler

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    response_model=WebhookAcknowledgement,
    response_model_exclude_none=True,
)
async def receive_stripe_webhook(request: Request) -> WebhookAcknowledgement:
    # The signature covers the exact bytes, so the body is read raw.
    payload = await request.body()
    reconciler = get_webhook_reconciler()
    try:
        outcome = await run_in_threadpool(reconciler.handle, payload, request.headers.get("stripe-signature"))
    except BillingError as exc:
        raise exc.to_http_exception() from exc

    if outcome.duplicate:
        return WebhookAcknowledgement(received=True, duplicate=True)
    return WebhookAcknowledgement(
        received=True,
        processed=outcome.processed,
        subscription_id=outcome.subscription_id,
    )


__all__ = ["router"]
