import logging
from typing import Any, Mapping, Optional

from billing_webhooks.webhooks.envelope import resolve_reference_id

logger = logging.getLogger(__name__)

FREE_PLAN = "free"
DEFAULT_PAID_PLAN = "pro"


def get_price_id(subscription: Mapping[str, Any]) -> Optional[str]:
    """Price id of the first subscription item, if any."""
    items = subscription.get("items")
    data = items.get("data") if isinstance(items, Mapping) else None
    if not data:
        return None
    first = data[0]
    if not isinstance(first, Mapping):
        return None
    return resolve_reference_id(first.get("price"))


class PlanCatalog:
    def __init__(self, price_plans: Optional[Mapping[str, str]] = None):
        self.price_plans = dict(price_plans or {})

    def plan_for_price(self, price_id: Optional[str]) -> str:
        if not price_id:
            logger.warning("No price id on subscription, defaulting to %s", DEFAULT_PAID_PLAN)
            return DEFAULT_PAID_PLAN
        plan = self.price_plans.get(price_id)
        if plan is None:
            logger.warning("Unknown price id %s, defaulting to %s", price_id, DEFAULT_PAID_PLAN)
            return DEFAULT_PAID_PLAN
        return plan

    def plan_for_subscription(self, subscription: Mapping[str, Any], is_entitled: bool) -> str:
        if not is_entitled:
            return FREE_PLAN
        return self.plan_for_price(get_price_id(subscription))
