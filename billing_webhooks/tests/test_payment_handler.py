import pytest

from billing_webhooks.core.exceptions import PersistenceFailureError, UpstreamProviderError
from billing_webhooks.db.models import ProcessingRecord
from billing_webhooks.webhooks.envelope import from_timestamp
from billing_webhooks.webhooks.handlers import PaymentHandler
from billing_webhooks.webhooks.handlers.payment_handler import extract_subscription_id
from billing_webhooks.webhooks.registry import WebhookContext
from billing_webhooks.webhooks.results import (
    CANNOT_IDENTIFY_USER_FOR_PAYMENT_FAILURE,
    ERROR_PROCESSING_PAYMENT_SUCCESS,
    INVOICE_HAS_NO_SUBSCRIPTION,
    NO_USER_ID_FOR_SUBSCRIPTION,
    SUBSCRIPTION_NOT_ACTIVE,
    SUBSCRIPTION_NOT_IN_FAILURE_STATUS,
    Processed,
    Skipped,
)
from billing_webhooks.tests.factories import (
    EVENT_CREATED,
    FakeProviderClient,
    load_audit_log,
    load_processing_records,
    load_user,
    make_envelope,
    make_invoice,
    make_subscription,
)


def make_handler(plan_catalog, sink, *subscriptions, error=None):
    client = FakeProviderClient({s["id"]: s for s in subscriptions}, error=error)
    return PaymentHandler(provider_client=client, plan_catalog=plan_catalog, sink=sink)


async def run(handler, session_factory, envelope):
    async with session_factory() as session:
        result = await handler.handle(WebhookContext(envelope=envelope, session=session))
        await session.commit()
    return result


async def grant(session_factory, plan_catalog, sink):
    handler = make_handler(plan_catalog, sink, make_subscription(status="active"))
    await run(handler, session_factory, make_envelope("invoice.payment_succeeded", make_invoice(), event_id="evt_0"))


def test_extract_subscription_id_from_parent_details():
    invoice = make_invoice(subscription=None, parent={"subscription_details": {"subscription": "sub_7"}})
    assert extract_subscription_id(invoice) == "sub_7"
    assert extract_subscription_id(make_invoice(subscription={"id": "sub_8"})) == "sub_8"
    assert extract_subscription_id(make_invoice(subscription=None)) is None


class TestPaymentSucceeded:
    async def test_active_subscription_grants_entitlement(self, db_session_factory, seeded_users, plan_catalog, sink):
        handler = make_handler(plan_catalog, sink, make_subscription(status="active"))

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_succeeded", make_invoice()))

        assert result == Processed(user_id="user_1")
        user = await load_user(db_session_factory, "user_1")
        assert user.is_entitled is True
        assert user.provider_subscription_id == "sub_1"
        entries = await load_audit_log(db_session_factory)
        assert entries[0].event_type == "payment_succeeded"
        assert entries[0].details["invoice_id"] == "in_1"

    async def test_one_time_payment_is_skipped(self, db_session_factory, seeded_users, plan_catalog, sink):
        handler = make_handler(plan_catalog, sink)

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_succeeded", make_invoice(subscription=None)))

        assert result == Skipped(INVOICE_HAS_NO_SUBSCRIPTION)
        assert handler.provider_client.retrieved == []

    async def test_inactive_subscription_is_left_to_subscription_events(self, db_session_factory, seeded_users, plan_catalog, sink):
        handler = make_handler(plan_catalog, sink, make_subscription(status="past_due"))

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_succeeded", make_invoice()))

        assert result == Skipped(SUBSCRIPTION_NOT_ACTIVE)
        user = await load_user(db_session_factory, "user_1")
        assert user.billing_version == 0

    async def test_unidentifiable_user(self, db_session_factory, seeded_users, plan_catalog, sink):
        handler = make_handler(plan_catalog, sink, make_subscription(user_id=None, customer="cus_unknown"))

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_succeeded", make_invoice()))

        assert result == Skipped(NO_USER_ID_FOR_SUBSCRIPTION)

    async def test_provider_error_is_reported_and_skipped(self, db_session_factory, seeded_users, plan_catalog, sink):
        handler = make_handler(plan_catalog, sink, error=UpstreamProviderError())

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_succeeded", make_invoice()))

        assert result == Skipped(ERROR_PROCESSING_PAYMENT_SUCCESS)
        message, error, context = sink.errors[0]
        assert isinstance(error, UpstreamProviderError)
        assert context["invoice_id"] == "in_1"


class TestPaymentFailed:
    async def test_provider_retry_window_keeps_entitlement(self, db_session_factory, seeded_users, plan_catalog, sink):
        await grant(db_session_factory, plan_catalog, sink)
        handler = make_handler(plan_catalog, sink, make_subscription(status="active"))

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_failed", make_invoice(), event_id="evt_1"))

        assert result == Skipped(SUBSCRIPTION_NOT_IN_FAILURE_STATUS)
        user = await load_user(db_session_factory, "user_1")
        assert user.is_entitled is True
        assert user.billing_version == 1
        message, context = sink.audits[0]
        assert message == "Payment failed for invoice"
        assert context["invoice_id"] == "in_1"
        assert context["amount_due"] == 2000

    async def test_past_due_subscription_revokes(self, db_session_factory, seeded_users, plan_catalog, sink):
        await grant(db_session_factory, plan_catalog, sink)
        handler = make_handler(plan_catalog, sink, make_subscription(status="past_due"))

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_failed", make_invoice(), event_id="evt_1"))

        assert result == Processed(user_id="user_1")
        user = await load_user(db_session_factory, "user_1")
        assert user.is_entitled is False
        assert user.plan == "free"
        assert user.provider_subscription_id is None
        entries = await load_audit_log(db_session_factory)
        assert entries[-1].event_type == "payment_failed"

    async def test_invoice_without_subscription_is_still_audited(self, db_session_factory, seeded_users, plan_catalog, sink):
        handler = make_handler(plan_catalog, sink)

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_failed", make_invoice(subscription=None)))

        assert result == Skipped(INVOICE_HAS_NO_SUBSCRIPTION)
        assert len(sink.audits) == 1

    async def test_unidentifiable_user(self, db_session_factory, seeded_users, plan_catalog, sink):
        handler = make_handler(plan_catalog, sink, make_subscription(status="unpaid", user_id=None, customer=None))

        result = await run(handler, db_session_factory, make_envelope("invoice.payment_failed", make_invoice()))

        assert result == Skipped(CANNOT_IDENTIFY_USER_FOR_PAYMENT_FAILURE)

    async def test_provider_error_propagates(self, db_session_factory, seeded_users, plan_catalog, sink):
        handler = make_handler(plan_catalog, sink, error=UpstreamProviderError())

        with pytest.raises(UpstreamProviderError):
            await run(handler, db_session_factory, make_envelope("invoice.payment_failed", make_invoice()))


async def test_store_error_on_payment_success_is_skipped_and_isolated(db_session_factory, seeded_users, plan_catalog, sink):
    # cus_1 already belongs to user_1, so linking it to user_2 violates the unique index
    handler = make_handler(plan_catalog, sink, make_subscription(user_id="user_2", customer="cus_1"))

    async with db_session_factory() as session:
        session.add(ProcessingRecord(
            external_event_id="evt_ps", event_type="invoice.payment_succeeded",
            provider_created_at=from_timestamp(EVENT_CREATED), received_at=from_timestamp(EVENT_CREATED),
        ))
        await session.flush()
        result = await handler.handle(WebhookContext(
            envelope=make_envelope("invoice.payment_succeeded", make_invoice(), event_id="evt_ps"), session=session))
        # the surrounding transaction is still usable
        await session.commit()

    assert result == Skipped(ERROR_PROCESSING_PAYMENT_SUCCESS)
    assert len(sink.errors) == 1
    assert isinstance(sink.errors[0][1], PersistenceFailureError)
    user = await load_user(db_session_factory, "user_2")
    assert user.is_entitled is False
    assert user.provider_customer_id is None
    assert [r.external_event_id for r in await load_processing_records(db_session_factory)] == ["evt_ps"]
