import traceback


class WebhookError(Exception):
    def __init__(self, message: str, status_code: int = 400, stack_trace: bool = False):
        self.message = message
        self.status_code = status_code
        self.stack_trace = traceback.format_exc() if stack_trace else None
        super().__init__(self.message)


class MissingSignatureError(WebhookError):
    def __init__(self):
        super().__init__("Missing signature", status_code=400)


class InvalidSignatureError(WebhookError):
    def __init__(self):
        super().__init__("Invalid signature", status_code=400)


class InvalidPayloadError(WebhookError):
    def __init__(self, message: str = "Invalid payload"):
        super().__init__(message, status_code=400)


class WebhookConfigurationError(WebhookError):
    def __init__(self, message: str = "Webhook secret not configured"):
        super().__init__(message, status_code=500)


class UpstreamProviderError(WebhookError):
    """A call to the payment provider failed."""

    def __init__(self, message: str = "Payment provider request failed"):
        super().__init__(message, status_code=502)


class PersistenceFailureError(WebhookError):
    """Writing billing state failed. Retry-worthy."""

    def __init__(self, message: str = "Failed to update billing status"):
        super().__init__(message, status_code=500)
