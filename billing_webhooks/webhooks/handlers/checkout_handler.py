from billing_webhooks.webhooks.envelope import resolve_reference_id
from billing_webhooks.webhooks.handlers.base_handler import BaseSubscriptionHandler
from billing_webhooks.webhooks.registry import WebhookContext
from billing_webhooks.webhooks.results import (
    CANNOT_IDENTIFY_USER,
    CHECKOUT_HAS_NO_SUBSCRIPTION,
    HandlerResult,
    Skipped,
)
from billing_webhooks.webhooks.user_resolution import user_id_from_metadata


class CheckoutHandler(BaseSubscriptionHandler):
    """Completed checkout: link the new subscription to the user who paid."""
    event_types = ("checkout.session.completed",)

    async def handle(self, context: WebhookContext) -> HandlerResult:
        checkout = context.envelope.object
        user_id = user_id_from_metadata(checkout.get("metadata"), self.metadata_key)
        client_reference_id = checkout.get("client_reference_id")
        if not user_id and isinstance(client_reference_id, str) and client_reference_id.strip():
            user_id = client_reference_id.strip()
        if not user_id:
            user_id = await self.resolve_user(context, None, checkout.get("customer"))
        if not user_id:
            self.sink.report_warning("Cannot identify user for checkout session", context={
                "event": context.event_type,
                "event_id": context.event_id,
            })
            return Skipped(CANNOT_IDENTIFY_USER)

        subscription_id = resolve_reference_id(checkout.get("subscription"))
        if not subscription_id:
            return Skipped(CHECKOUT_HAS_NO_SUBSCRIPTION)

        subscription = await self.provider_client.retrieve_subscription(subscription_id)
        return await self.apply_subscription(context, subscription, user_id, event_type="checkout_completed")
