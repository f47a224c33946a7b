import logging
from typing import Any, Dict, Mapping, Optional

from billing_webhooks.core.exceptions import PersistenceFailureError
from billing_webhooks.core.observability import ObservabilitySink
from billing_webhooks.services.billing_service import BillingUpdateStatus, update_billing_status
from billing_webhooks.services.plans import PlanCatalog
from billing_webhooks.services.provider_client import StripeProviderClient
from billing_webhooks.webhooks.envelope import resolve_reference_id
from billing_webhooks.webhooks.registry import WebhookContext, WebhookHandler
from billing_webhooks.webhooks.results import (
    Failed,
    HandlerResult,
    Processed,
    Skipped,
    STALE_EVENT,
    USER_NOT_FOUND,
)
from billing_webhooks.webhooks.user_resolution import resolve_user_id

logger = logging.getLogger(__name__)

ENTITLED_STATUSES = frozenset({"active", "trialing"})
FAILURE_STATUSES = frozenset({"past_due", "unpaid", "incomplete", "incomplete_expired"})


def is_entitled_status(status: Any) -> bool:
    return status in ENTITLED_STATUSES


def is_failure_status(status: Any) -> bool:
    return status in FAILURE_STATUSES


class BaseSubscriptionHandler(WebhookHandler):
    """
    Shared plumbing for handlers that turn a provider subscription into
    billing state: user resolution and the entitlement write.
    """

    def __init__(
        self,
        provider_client: StripeProviderClient,
        plan_catalog: PlanCatalog,
        sink: ObservabilitySink,
        metadata_key: str = "user_id",
        max_retries: int = 3,
    ):
        self.provider_client = provider_client
        self.plan_catalog = plan_catalog
        self.sink = sink
        self.metadata_key = metadata_key
        self.max_retries = max_retries

    async def resolve_user(self, context: WebhookContext, metadata: Any, customer: Any) -> Optional[str]:
        return await resolve_user_id(
            context.session,
            self.sink,
            metadata=metadata,
            customer=customer,
            metadata_key=self.metadata_key,
            event_type=context.event_type,
        )

    async def apply_subscription(
        self,
        context: WebhookContext,
        subscription: Mapping[str, Any],
        user_id: str,
        event_type: Optional[str] = None,
        deleted: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> HandlerResult:
        status = subscription.get("status")
        entitled = not deleted and is_entitled_status(status)
        if event_type is None:
            event_type = "subscription_updated" if entitled else "subscription_downgraded"

        try:
            result = await update_billing_status(
                context.session,
                user_id=user_id,
                is_entitled=entitled,
                plan=self.plan_catalog.plan_for_subscription(subscription, entitled),
                customer_id=resolve_reference_id(subscription.get("customer")),
                subscription_id=resolve_reference_id(subscription) if entitled else None,
                event_id=context.event_id,
                event_created_at=context.envelope.created_at,
                event_type=event_type,
                details={"subscription_status": status, **(details or {})},
                max_retries=self.max_retries,
            )
        except PersistenceFailureError as e:
            # the caller reports it
            logger.warning(f"Billing update failed for user {user_id} (event: {context.event_id}): {e.message}")
            return Failed(e)

        if result.status is BillingUpdateStatus.USER_NOT_FOUND:
            self.sink.report_warning("User for billing event not found", context={
                "user_id": user_id,
                "event": context.event_type,
                "event_id": context.event_id,
            })
            return Skipped(USER_NOT_FOUND)
        if result.status is BillingUpdateStatus.STALE:
            return Skipped(STALE_EVENT)

        logger.info(
            f"Applied {event_type} for user {user_id}: entitled={entitled} "
            f"version={result.billing_version} (event: {context.event_id})"
        )
        return Processed(user_id=user_id)
