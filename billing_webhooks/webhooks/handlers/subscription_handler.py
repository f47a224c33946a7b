from billing_webhooks.webhooks.handlers.base_handler import BaseSubscriptionHandler
from billing_webhooks.webhooks.registry import WebhookContext
from billing_webhooks.webhooks.results import CANNOT_IDENTIFY_USER, HandlerResult, Skipped

SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class SubscriptionHandler(BaseSubscriptionHandler):
    """
    Subscription lifecycle events.

    created / updated: active and trialing grant entitlement, every other
    status revokes it. deleted: always revokes and clears the stored
    subscription id. An unidentifiable user is skipped, since no redelivery
    would ever resolve it.
    """
    event_types = (
        "customer.subscription.created",
        "customer.subscription.updated",
        SUBSCRIPTION_DELETED,
    )

    async def handle(self, context: WebhookContext) -> HandlerResult:
        subscription = context.envelope.object
        user_id = await self.resolve_user(context, subscription.get("metadata"), subscription.get("customer"))
        if not user_id:
            self.sink.report_warning("Cannot identify user for subscription event", context={
                "event": context.event_type,
                "event_id": context.event_id,
            })
            return Skipped(CANNOT_IDENTIFY_USER)

        if context.event_type == SUBSCRIPTION_DELETED:
            return await self.apply_subscription(
                context, subscription, user_id,
                event_type="subscription_deleted",
                deleted=True,
                details={"canceled_at": subscription.get("canceled_at")},
            )
        return await self.apply_subscription(context, subscription, user_id)
