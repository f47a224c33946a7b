"""
Invoice payment events.

invoice.payment_succeeded confirms or restores entitlement for the invoice's
subscription. Anything unexpected on this path is reported and skipped: a
missed upgrade is corrected by the next subscription.updated event and must
not put the provider into a retry loop.

invoice.payment_failed is always written to the audit channel. The user is
only downgraded once the provider itself has moved the subscription into a
failure status; while it still reports active the provider is inside its own
retry window and nothing changes yet.
"""
from typing import Any, Mapping, Optional

from billing_webhooks.webhooks.envelope import resolve_reference_id
from billing_webhooks.webhooks.handlers.base_handler import (
    BaseSubscriptionHandler,
    is_entitled_status,
    is_failure_status,
)
from billing_webhooks.webhooks.registry import WebhookContext
from billing_webhooks.webhooks.results import (
    CANNOT_IDENTIFY_USER_FOR_PAYMENT_FAILURE,
    ERROR_PROCESSING_PAYMENT_SUCCESS,
    INVOICE_HAS_NO_SUBSCRIPTION,
    NO_USER_ID_FOR_SUBSCRIPTION,
    SUBSCRIPTION_NOT_ACTIVE,
    SUBSCRIPTION_NOT_IN_FAILURE_STATUS,
    Failed,
    HandlerResult,
    Skipped,
    UNHANDLED_EVENT_TYPE,
)

PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"


def extract_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    """
    The subscription reference lives on invoice.subscription in older API
    versions and under parent.subscription_details in newer ones.
    """
    subscription_id = resolve_reference_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping):
            return resolve_reference_id(details.get("subscription"))
    return None


class PaymentHandler(BaseSubscriptionHandler):
    event_types = (PAYMENT_SUCCEEDED, PAYMENT_FAILED)

    async def handle(self, context: WebhookContext) -> HandlerResult:
        invoice = context.envelope.object
        if context.event_type == PAYMENT_SUCCEEDED:
            return await self.handle_payment_succeeded(context, invoice)
        if context.event_type == PAYMENT_FAILED:
            return await self.handle_payment_failed(context, invoice)
        return Skipped(UNHANDLED_EVENT_TYPE)

    async def handle_payment_succeeded(self, context: WebhookContext, invoice: Mapping[str, Any]) -> HandlerResult:
        subscription_id = extract_subscription_id(invoice)
        if not subscription_id:
            return Skipped(INVOICE_HAS_NO_SUBSCRIPTION)

        # a failed write must not abort the outer transaction: the claim still commits as skipped
        savepoint = await context.session.begin_nested()
        try:
            result = await self._restore_entitlement(context, invoice, subscription_id)
            if isinstance(result, Failed):
                raise result.error
        except Exception as e:
            await savepoint.rollback()
            self.sink.report_error("Error handling payment success webhook", e, {
                "invoice_id": invoice.get("id"),
                "event": context.event_type,
                "event_id": context.event_id,
            })
            return Skipped(ERROR_PROCESSING_PAYMENT_SUCCESS)

        await savepoint.commit()
        return result

    async def _restore_entitlement(self, context: WebhookContext, invoice: Mapping[str, Any],
                                   subscription_id: str) -> HandlerResult:
        subscription = await self.provider_client.retrieve_subscription(subscription_id)
        user_id = await self.resolve_user(context, subscription.get("metadata"), subscription.get("customer"))
        if not user_id:
            return Skipped(NO_USER_ID_FOR_SUBSCRIPTION)
        if not is_entitled_status(subscription.get("status")):
            # subscription.updated carries the downgrade
            return Skipped(SUBSCRIPTION_NOT_ACTIVE)

        return await self.apply_subscription(
            context, subscription, user_id,
            event_type="payment_succeeded",
            details={"invoice_id": invoice.get("id"), "attempt_count": invoice.get("attempt_count")},
        )

    async def handle_payment_failed(self, context: WebhookContext, invoice: Mapping[str, Any]) -> HandlerResult:
        self.sink.report_audit("Payment failed for invoice", {
            "invoice_id": invoice.get("id"),
            "amount_due": invoice.get("amount_due"),
            "attempt_count": invoice.get("attempt_count"),
            "event": context.event_type,
            "event_id": context.event_id,
        })

        subscription_id = extract_subscription_id(invoice)
        if not subscription_id:
            return Skipped(INVOICE_HAS_NO_SUBSCRIPTION)

        subscription = await self.provider_client.retrieve_subscription(subscription_id)
        user_id = await self.resolve_user(context, subscription.get("metadata"), subscription.get("customer"))
        if not user_id:
            return Skipped(CANNOT_IDENTIFY_USER_FOR_PAYMENT_FAILURE)

        status = subscription.get("status")
        if not is_failure_status(status):
            return Skipped(SUBSCRIPTION_NOT_IN_FAILURE_STATUS)

        return await self.apply_subscription(
            context, subscription, user_id,
            event_type="payment_failed",
            details={
                "invoice_id": invoice.get("id"),
                "amount_due": invoice.get("amount_due"),
                "attempt_count": invoice.get("attempt_count"),
            },
        )
