import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from billing_webhooks.core.config import Settings, get_settings
from billing_webhooks.services.provider_client import StripeProviderClient
from billing_webhooks.services.webhook_processor import WebhookProcessor
from billing_webhooks.webhooks.envelope import parse_envelope
from billing_webhooks.webhooks.responses import compose_response

router = APIRouter()
logger = logging.getLogger(__name__)


def get_webhook_processor(request: Request) -> WebhookProcessor:
    return request.app.state.webhook_processor


def get_provider_client(request: Request) -> StripeProviderClient:
    return request.app.state.provider_client


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    processor: WebhookProcessor = Depends(get_webhook_processor),
    provider_client: StripeProviderClient = Depends(get_provider_client),
    settings: Settings = Depends(get_settings),
):
    """
    Stripe webhook endpoint.

    1. Verify the signature over the raw body (nothing is parsed before this)
    2. Parse the event envelope
    3. Hand it to the processor: idempotency claim, handler, commit
    4. 200 {"received": true} acknowledges, 500 asks Stripe to redeliver

    Verification and payload errors raise WebhookError and are rendered by
    the app level exception handler.
    """
    payload = await request.body()

    event = provider_client.verify_signature(payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    envelope = parse_envelope(event)

    outcome = await processor.process(envelope)
    return compose_response(outcome)
