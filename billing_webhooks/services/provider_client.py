import asyncio
import json
import logging
from typing import Any, Dict, Optional

import stripe

from billing_webhooks.core.exceptions import (
    InvalidPayloadError,
    InvalidSignatureError,
    MissingSignatureError,
    UpstreamProviderError,
    WebhookConfigurationError,
)

logger = logging.getLogger(__name__)


class StripeProviderClient:
    """
    Thin wrapper around the Stripe SDK calls the webhook pipeline needs:
    signature verification of the raw body and subscription retrieval.
    """

    def __init__(self, api_key: str, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.api_key = api_key
        self.tolerance = tolerance

    def verify_signature(self, payload: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header against the raw body and return the parsed event.
        Must run before anything else looks at the payload.
        """
        if not signature:
            raise MissingSignatureError()
        if not secret:
            raise WebhookConfigurationError()

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignatureError()

        try:
            stripe.WebhookSignature.verify_header(body, signature, secret, self.tolerance)
        except stripe.SignatureVerificationError:
            raise InvalidSignatureError()

        try:
            event = json.loads(body)
        except json.JSONDecodeError:
            raise InvalidPayloadError()
        if not isinstance(event, dict):
            raise InvalidPayloadError()
        return event

    async def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """
        Fetch the current subscription object. The SDK call is blocking,
        so it runs in a worker thread.
        """
        try:
            subscription = await asyncio.to_thread(
                stripe.Subscription.retrieve, subscription_id, api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe subscription retrieval failed: {e.user_message or type(e).__name__}")
            raise UpstreamProviderError() from e
        # StripeObject renders itself as JSON
        return json.loads(str(subscription))
