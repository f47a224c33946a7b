import logging
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("billing_webhooks.audit")


class ObservabilitySink:
    """
    Logging backed error / audit reporting.

    report_error is for genuine faults, report_audit for business events
    that operators should see (payment failures) but that are not incidents.
    Never put provider customer ids into the context.
    """

    def report_error(self, message: str, error: Optional[BaseException] = None,
                     context: Optional[Mapping[str, Any]] = None) -> None:
        logger.error("%s %s", message, _format_context(context),
                     exc_info=_exc_info(error))

    def report_warning(self, message: str, error: Optional[BaseException] = None,
                       context: Optional[Mapping[str, Any]] = None) -> None:
        logger.warning("%s %s", message, _format_context(context),
                       exc_info=_exc_info(error))

    def report_audit(self, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        audit_logger.warning("%s %s", message, _format_context(context))

    def log_fallback(self, message: str, context: Optional[Mapping[str, Any]] = None) -> None:
        logger.info("fallback: %s %s", message, _format_context(context))


def _format_context(context: Optional[Mapping[str, Any]]) -> str:
    if not context:
        return ""
    return " ".join(f"{key}={value}" for key, value in sorted(context.items()))


def _exc_info(error: Optional[BaseException]):
    if error is None:
        return None
    return (type(error), error, error.__traceback__)


observability_sink = ObservabilitySink()
