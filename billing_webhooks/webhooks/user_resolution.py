from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_webhooks.core.observability import ObservabilitySink
from billing_webhooks.db.models.user import User
from billing_webhooks.webhooks.envelope import resolve_reference_id


async def get_user_id_by_customer(session: AsyncSession, customer_id: str) -> Optional[str]:
    result = await session.execute(
        select(User.user_id).where(User.provider_customer_id == customer_id).limit(1)
    )
    return result.scalar_one_or_none()


def user_id_from_metadata(metadata: Any, key: str) -> Optional[str]:
    if not isinstance(metadata, Mapping):
        return None
    value = metadata.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


async def resolve_user_id(
    session: AsyncSession,
    sink: ObservabilitySink,
    metadata: Any,
    customer: Any,
    metadata_key: str,
    event_type: str,
    fallback_to_customer: bool = True,
) -> Optional[str]:
    """
    Two-tier lookup: the id embedded in the provider object's metadata,
    then the user owning the provider customer id.
    """
    user_id = user_id_from_metadata(metadata, metadata_key)
    if user_id or not fallback_to_customer:
        return user_id

    customer_id = resolve_reference_id(customer)
    if not customer_id:
        return None

    sink.log_fallback("No user id in metadata, looking up by customer", {"event": event_type})
    return await get_user_id_by_customer(session, customer_id)
