"""
Webhook Idempotency Ledger (Redis)
==================================
Records which gateway events have already been processed so a retried
delivery is acknowledged without re-running the reconciler.

- SET key holder NX EX ttl  -> try_acquire
- compare-and-delete script -> release
- SET key completed EX ttl  -> mark_completed

pip install redis
"""

from typing import Optional

import redis.asyncio as redis
import structlog

from storage.repositories import IIdempotencyStore

logger = structlog.get_logger().bind(component="idempotency")

_COMPLETED_PREFIX = "completed:"

# Only the holder that claimed the key may release it.
_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


class RedisIdempotencyAdapter(IIdempotencyStore):

    def __init__(
        self,
        client: "redis.Redis",
        ttl_seconds: int = 86400 * 7,
        lock_ttl_seconds: int = 30,
        namespace: str = "webhook:event:",
    ):
        self._redis = client
        self._ttl = ttl_seconds
        self._lock_ttl = lock_ttl_seconds
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, ttl_seconds: int = 86400 * 7) -> "RedisIdempotencyAdapter":
        return cls(redis.from_url(url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, key: str) -> str:
        return f"{self._namespace}{key}"

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        # Lock expiry frees the key if the holder crashes mid-processing.
        acquired = await self._redis.set(self._key(key), holder_id, nx=True, ex=self._lock_ttl)
        return bool(acquired)

    async def release(self, key: str, holder_id: str) -> bool:
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(key), holder_id)
        return bool(released)

    async def mark_completed(self, key: str, result: str = "success") -> bool:
        await self._redis.set(self._key(key), f"{_COMPLETED_PREFIX}{result}", ex=self._ttl)
        return True

    async def is_completed(self, key: str) -> bool:
        value: Optional[str] = await self._redis.get(self._key(key))
        return value is not None and value.startswith(_COMPLETED_PREFIX)

    async def close(self):
        await self._redis.aclose()
