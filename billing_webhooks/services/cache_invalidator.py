import logging
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class BillingCacheInvalidator:
    """
    Drops the read-side billing caches of a user after a committed change.
    Best effort: a Redis outage is logged and never fails the webhook.
    """

    def __init__(self, redis: Redis, prefix: str = "billing"):
        self.redis = redis
        self.prefix = prefix

    def keys_for(self, user_id: str) -> list:
        return [
            f"{self.prefix}:{{{user_id}}}:status",
            f"{self.prefix}:{{{user_id}}}:entitlements",
        ]

    async def invalidate(self, user_id: str) -> None:
        keys = self.keys_for(user_id)
        try:
            await self.redis.delete(*keys)
            logger.info(f"Invalidated billing cache for user {user_id}")
        except RedisError as e:
            logger.warning(f"Billing cache invalidation failed for user {user_id}: {e}")
