import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from billing_webhooks.core.config import settings
from billing_webhooks.core.exceptions import WebhookError
from billing_webhooks.core.logging import configure_logging
from billing_webhooks.core.observability import observability_sink
from billing_webhooks.db import session
from billing_webhooks.redis import close_redis, redis_client
from billing_webhooks.api.v1 import routes_health, routes_webhook
from billing_webhooks.services.cache_invalidator import BillingCacheInvalidator
from billing_webhooks.services.provider_client import StripeProviderClient
from billing_webhooks.services.webhook_processor import WebhookProcessor, build_registry
from billing_webhooks.webhooks.responses import error_response

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENV})")
    if settings.ENV == 'development':
        await session.init_db()
    yield
    logger.info("Shutting down")
    await close_redis()
    await session.engine.dispose()


def create_app():
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Stripe webhook ingestion and billing state reconciliation",
        lifespan=lifespan
    )

    provider_client = StripeProviderClient(
        api_key=settings.STRIPE_SECRET_KEY,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )
    app.state.provider_client = provider_client
    app.state.webhook_processor = WebhookProcessor(
        session_factory=session.async_session_factory,
        registry=build_registry(provider_client, observability_sink, settings),
        cache_invalidator=BillingCacheInvalidator(redis_client, prefix=settings.BILLING_CACHE_PREFIX),
        sink=observability_sink,
    )

    app.include_router(
        routes_health.router,
        prefix="/api/v1"
    )

    app.include_router(
        routes_webhook.router,
        prefix="/api/v1/webhooks",
        tags=["webhooks"]
    )

    @app.exception_handler(WebhookError)
    async def webhook_error_handler(request: Request, ex: WebhookError):
        if ex.status_code >= 500:
            observability_sink.report_error("Webhook request rejected", ex, {"path": request.url.path})
        else:
            logger.warning(f"Webhook request rejected: {ex.message}")
        return error_response(ex)

    return app


app = create_app()
