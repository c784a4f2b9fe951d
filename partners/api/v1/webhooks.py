"""PayPal webhook endpoint: receives and applies subscription notifications."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from partners.api.deps import get_runtime
from partners.billing.errors import MalformedEvent, VerificationError
from partners.billing.events import parse_webhook_event
from partners.billing.runtime import BillingRuntime
from partners.billing.verifier import WebhookHeaders
from partners.schemas.billing import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/subscriptions", tags=["webhooks"])


@router.post("/paypal", response_model=WebhookResponse)
async def paypal_webhook(
    request: Request,
    runtime: BillingRuntime = Depends(get_runtime),
) -> WebhookResponse:
    """Receive a PayPal webhook, verify it and feed it to the state machine."""
    # 1. Read raw body (MUST be raw bytes for signature verification)
    raw_body = await request.body()

    # 2. Verify signature
    try:
        headers = WebhookHeaders.from_request(request.headers, runtime.settings.paypal_webhook_id)
        verified = await runtime.verifier.verify(raw_body, headers)
    except VerificationError as e:
        logger.warning("PayPal webhook verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e

    try:
        payload = verified.json()
    except ValueError as e:
        logger.warning("Verified PayPal webhook %s is not valid JSON", verified.transmission_id)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    # 3. Parse; malformed but authentic events are acknowledged so PayPal stops retrying
    try:
        event = parse_webhook_event(payload)
    except MalformedEvent as e:
        logger.warning("Malformed PayPal webhook %s: %s", verified.transmission_id, e)
        return WebhookResponse(status="malformed")

    logger.info(
        "Processing PayPal webhook %s (id=%s, resource=%s)",
        event.event_type,
        event.event_id,
        event.resource_id,
    )

    # 4. Apply
    try:
        result = await runtime.machine.handle_event(event)
    except Exception as e:
        logger.exception("Error processing PayPal webhook %s", event.event_id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return WebhookResponse(status=result.outcome.value)
