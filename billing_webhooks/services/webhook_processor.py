import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_webhooks.core.config import Settings
from billing_webhooks.core.observability import ObservabilitySink
from billing_webhooks.db.models.processing_record import ProcessingOutcome, ProcessingRecord
from billing_webhooks.services.cache_invalidator import BillingCacheInvalidator
from billing_webhooks.services.plans import PlanCatalog
from billing_webhooks.services.provider_client import StripeProviderClient
from billing_webhooks.webhooks.envelope import WebhookEnvelope
from billing_webhooks.webhooks.handlers import CheckoutHandler, PaymentHandler, SubscriptionHandler
from billing_webhooks.webhooks.registry import HandlerRegistry, WebhookContext
from billing_webhooks.webhooks.results import Failed, HandlerResult, Processed, Skipped

logger = logging.getLogger(__name__)

# dialects with INSERT ... ON CONFLICT DO NOTHING
INSERT_BUILDERS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


class OutcomeKind(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class WebhookOutcome:
    kind: OutcomeKind
    event_id: str
    reason: Optional[str] = None
    error: Optional[BaseException] = None


class WebhookProcessor:
    """
    Applies each provider event at most once.

    Claiming the event id (insert into processing_records) and the handler's
    billing writes share one transaction: the event is recorded as handled
    if and only if its effects were committed. A failed handler rolls the
    claim back too, so a redelivery starts from scratch. Concurrent
    deliveries of one id are serialised by the unique constraint; the loser
    sees the conflict and takes the duplicate path.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        registry: HandlerRegistry,
        cache_invalidator: BillingCacheInvalidator,
        sink: ObservabilitySink,
    ):
        self.session_factory = session_factory
        self.registry = registry
        self.cache_invalidator = cache_invalidator
        self.sink = sink

    async def process(self, envelope: WebhookEnvelope) -> WebhookOutcome:
        event_id = envelope.external_event_id
        logger.info(f"Received webhook: {envelope.event_type} (id: {event_id})")

        async with self.session_factory() as session:
            try:
                if not await self._claim_event(session, envelope):
                    await session.rollback()
                    logger.info(f"Webhook {event_id} already processed, skipping")
                    return WebhookOutcome(OutcomeKind.DUPLICATE, event_id)

                result = await self.registry.dispatch(WebhookContext(envelope=envelope, session=session))
                if isinstance(result, Failed):
                    await session.rollback()
                    self.sink.report_error("Stripe webhook processing failed", result.error, {
                        "event": envelope.event_type,
                        "event_id": event_id,
                        "object_id": envelope.object_id,
                    })
                    return WebhookOutcome(OutcomeKind.FAILED, event_id, error=result.error)

                await self._mark_processed(session, envelope, result)
                await session.commit()
            except Exception as e:
                await session.rollback()
                self.sink.report_error("Stripe webhook processing failed", e, {
                    "event": envelope.event_type,
                    "event_id": event_id,
                    "object_id": envelope.object_id,
                })
                return WebhookOutcome(OutcomeKind.FAILED, event_id, error=e)

        if isinstance(result, Skipped):
            logger.info(f"Webhook {event_id} skipped: {result.reason}")
            return WebhookOutcome(OutcomeKind.SKIPPED, event_id, reason=result.reason)

        if result.user_id:
            await self._invalidate_cache(result.user_id)
        return WebhookOutcome(OutcomeKind.PROCESSED, event_id)

    async def _claim_event(self, session: AsyncSession, envelope: WebhookEnvelope) -> bool:
        """Insert the processing record; False when the id is already taken."""
        dialect = session.get_bind().dialect.name
        build_insert = INSERT_BUILDERS.get(dialect)
        if build_insert is None:
            raise RuntimeError(f"Unsupported database dialect for webhook idempotency: {dialect}")

        statement = (
            build_insert(ProcessingRecord)
            .values(
                external_event_id=envelope.external_event_id,
                event_type=envelope.event_type,
                object_id=envelope.object_id,
                payload=envelope.object,
                provider_created_at=envelope.created_at,
                received_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["external_event_id"])
            .returning(ProcessingRecord.id)
        )
        result = await session.execute(statement)
        return result.scalar_one_or_none() is not None

    async def _mark_processed(self, session: AsyncSession, envelope: WebhookEnvelope, result: HandlerResult) -> None:
        if isinstance(result, Processed):
            outcome, reason, user_id = ProcessingOutcome.PROCESSED, None, result.user_id
        else:
            outcome, reason, user_id = ProcessingOutcome.SKIPPED, result.reason, None
        await session.execute(
            update(ProcessingRecord)
            .where(ProcessingRecord.external_event_id == envelope.external_event_id)
            .values(processed_at=datetime.now(timezone.utc), outcome=outcome, reason=reason, user_id=user_id)
        )

    async def _invalidate_cache(self, user_id: str) -> None:
        try:
            await self.cache_invalidator.invalidate(user_id)
        except Exception as e:
            self.sink.report_warning("Billing cache invalidation failed", e, {"user_id": user_id})


def build_registry(
    provider_client: StripeProviderClient,
    sink: ObservabilitySink,
    settings: Settings,
) -> HandlerRegistry:
    handler_args = dict(
        provider_client=provider_client,
        plan_catalog=PlanCatalog(settings.STRIPE_PRICE_PLANS),
        sink=sink,
        metadata_key=settings.USER_ID_METADATA_KEY,
        max_retries=settings.BILLING_UPDATE_MAX_RETRIES,
    )
    return HandlerRegistry([
        SubscriptionHandler(**handler_args),
        PaymentHandler(**handler_args),
        CheckoutHandler(**handler_args),
    ])
