"""Cache invalidation hook.

Read paths elsewhere cache query results in one Redis hash per table
(field = serialized filter). After every billing write we drop the hash of
the written table and of the tables whose cached views embed it.

Invalidation never fails a write: Redis errors are logged and dropped.
"""

import logging

import redis

logger = logging.getLogger(__name__)

RELATED_CACHES = {
    "billing_customers": ["billing_customers"],
    "subscriptions": ["subscriptions", "payments"],
    "payments": ["payments", "subscriptions"],
}


class CacheInvalidator:
    def __init__(self, client=None):
        self.client = client

    @classmethod
    def from_url(cls, url):
        """Build from REDIS_URL. No URL -> invalidation disabled."""
        if not url:
            logger.info("REDIS_URL not set; cache invalidation disabled")
            return cls(None)
        return cls(redis.Redis.from_url(url))

    def clear_related_caches(self, table_name):
        """Delete the cache hash of table_name and of every related table."""
        if self.client is None:
            return
        tables = RELATED_CACHES.get(table_name, [table_name])
        try:
            self.client.delete(*tables)
        except redis.RedisError as e:
            logger.error(f"Cache invalidation failed for {table_name}: {e}")
