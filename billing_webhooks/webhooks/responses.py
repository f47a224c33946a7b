from fastapi.responses import JSONResponse

from billing_webhooks.core.exceptions import WebhookError
from billing_webhooks.services.webhook_processor import OutcomeKind, WebhookOutcome

NO_STORE_HEADERS = {"Cache-Control": "no-store"}

GENERIC_FAILURE_MESSAGE = "Webhook processing failed"


def compose_response(outcome: WebhookOutcome) -> JSONResponse:
    """
    Provider retry contract: 2xx acknowledges, 5xx asks for redelivery.
    Internal error text never leaves the service.
    """
    if outcome.kind is OutcomeKind.FAILED:
        return JSONResponse(status_code=500, content={"error": GENERIC_FAILURE_MESSAGE}, headers=NO_STORE_HEADERS)
    return JSONResponse(status_code=200, content={"received": True}, headers=NO_STORE_HEADERS)


def error_response(error: WebhookError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content={"error": error.message}, headers=NO_STORE_HEADERS)
