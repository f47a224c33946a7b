import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_webhooks.core.exceptions import PersistenceFailureError
from billing_webhooks.db.models.billing_audit_log import BillingAuditLog
from billing_webhooks.db.models.user import User
from billing_webhooks.services.plans import DEFAULT_PAID_PLAN, FREE_PLAN
from billing_webhooks.webhooks.envelope import as_utc

logger = logging.getLogger(__name__)

BASE_RETRY_DELAY = 0.05

# leave the stored subscription id untouched
UNSET: Any = object()


class BillingUpdateStatus(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    USER_NOT_FOUND = "user_not_found"


@dataclass(frozen=True)
class BillingUpdateResult:
    status: BillingUpdateStatus
    billing_version: Optional[int] = None

    @property
    def applied(self) -> bool:
        return self.status is BillingUpdateStatus.APPLIED


def _snapshot(user: User) -> Dict[str, Any]:
    return {
        "is_entitled": user.is_entitled,
        "plan": user.plan,
        "provider_customer_id": user.provider_customer_id,
        "provider_subscription_id": user.provider_subscription_id,
    }


async def update_billing_status(
    db_session: AsyncSession,
    user_id: str,
    is_entitled: bool,
    plan: Optional[str] = None,
    customer_id: Optional[str] = None,
    subscription_id: Any = UNSET,
    event_id: Optional[str] = None,
    event_created_at: Optional[datetime] = None,
    event_type: str = "subscription_updated",
    source: str = "webhook",
    details: Optional[Dict[str, Any]] = None,
    max_retries: int = 3,
) -> BillingUpdateResult:
    """
    Apply an entitlement change to a user inside the caller's transaction.

    Events older than the last applied one are ignored. Concurrent writers are
    detected through billing_version (optimistic lock) and retried with fresh
    data. Raises PersistenceFailureError when the store fails or contention
    does not clear, which the caller should treat as retry-worthy.
    """
    effective_plan = plan or (DEFAULT_PAID_PLAN if is_entitled else FREE_PLAN)
    try:
        for attempt in range(max_retries + 1):
            if attempt > 0:
                backoff = BASE_RETRY_DELAY * (2 ** (attempt - 1))
                await asyncio.sleep(backoff + random.random() * backoff * 0.5)

            get_user_result = await db_session.execute(select(User).where(User.user_id == user_id))
            user = get_user_result.scalar_one_or_none()
            if user is None:
                return BillingUpdateResult(BillingUpdateStatus.USER_NOT_FOUND)

            last_event_at = as_utc(user.last_billing_event_at)
            if event_created_at is not None and last_event_at is not None and event_created_at < last_event_at:
                logger.info(f"Skipping stale billing event {event_id} for user {user_id}")
                return BillingUpdateResult(BillingUpdateStatus.STALE, user.billing_version)

            previous_state = _snapshot(user)
            current_version = user.billing_version
            values: Dict[str, Any] = {
                "is_entitled": is_entitled,
                "plan": effective_plan,
                "billing_version": current_version + 1,
                "billing_updated_at": datetime.now(timezone.utc),
            }
            if customer_id:
                values["provider_customer_id"] = customer_id
            if subscription_id is not UNSET:
                values["provider_subscription_id"] = subscription_id
            if event_created_at is not None:
                values["last_billing_event_at"] = event_created_at

            update_result = await db_session.execute(
                update(User)
                .where(User.id == user.id)
                .where(User.billing_version == current_version)
                .values(**values)
            )
            if update_result.rowcount == 1:
                new_state = {
                    "is_entitled": is_entitled,
                    "plan": effective_plan,
                    "provider_customer_id": values.get("provider_customer_id", previous_state["provider_customer_id"]),
                    "provider_subscription_id": values.get("provider_subscription_id", previous_state["provider_subscription_id"]),
                }
                db_session.add(BillingAuditLog(
                    user_id=user.id,
                    event_type=event_type,
                    previous_state=previous_state,
                    new_state=new_state,
                    provider_event_id=event_id,
                    source=source,
                    details={**(details or {}), "billing_version": current_version + 1, "attempt": attempt + 1},
                ))
                await db_session.flush()
                return BillingUpdateResult(BillingUpdateStatus.APPLIED, current_version + 1)

            # Version conflict -- someone else updated first
            # Expire the cached object so next read gets fresh data
            db_session.expire(user)
    except SQLAlchemyError as e:
        logger.error(f"Failed to update billing status for user {user_id}: {e}", exc_info=True)
        raise PersistenceFailureError() from e

    logger.warning(f"Optimistic lock failed after {max_retries + 1} attempts for user {user_id}")
    raise PersistenceFailureError("Concurrent update conflict - max retries exceeded")
