from dataclasses import dataclass
from typing import Optional, Union


# skip reasons
UNHANDLED_EVENT_TYPE = "unhandled_event_type"
CANNOT_IDENTIFY_USER = "cannot_identify_user"
USER_NOT_FOUND = "user_not_found"
STALE_EVENT = "stale_event"
INVOICE_HAS_NO_SUBSCRIPTION = "invoice_has_no_subscription"
NO_USER_ID_FOR_SUBSCRIPTION = "no_user_id_in_subscription_metadata"
SUBSCRIPTION_NOT_ACTIVE = "subscription_not_active"
ERROR_PROCESSING_PAYMENT_SUCCESS = "error_processing_payment_success"
CANNOT_IDENTIFY_USER_FOR_PAYMENT_FAILURE = "cannot_identify_user_for_payment_failure"
SUBSCRIPTION_NOT_IN_FAILURE_STATUS = "subscription_not_in_failure_status"
CHECKOUT_HAS_NO_SUBSCRIPTION = "checkout_has_no_subscription"


@dataclass(frozen=True)
class Processed:
    """Effect applied. user_id is the user whose caches must be dropped."""
    user_id: Optional[str] = None


@dataclass(frozen=True)
class Skipped:
    """No effect, not an error. The event is still acknowledged and recorded."""
    reason: str


@dataclass(frozen=True)
class Failed:
    """Effect not applied; the transaction is rolled back so the provider retries."""
    error: BaseException


HandlerResult = Union[Processed, Skipped, Failed]
