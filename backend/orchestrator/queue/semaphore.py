"""Distributed concurrency semaphore using Redis."""

from redis.asyncio import Redis

from orchestrator.queue.schemas import JobKind

# One job at a time per worker role
ROLE_CONCURRENCY = 1


class RedisSemaphore:
    """Distributed semaphore for concurrency control using Redis sets + TTL."""

    def __init__(self, redis: Redis, key: str, max_concurrent: int, ttl: int = 3600):
        self.redis = redis
        self.key = key
        self.max_concurrent = max_concurrent
        self.ttl = ttl  # Lease timeout (prevents deadlock on crash)

    @property
    def _slots_key(self) -> str:
        return f"{self.key}:slots"

    async def acquire(self, holder: str) -> bool:
        """Try to acquire a slot. Returns True if acquired, False if at limit."""
        await self.cleanup_stale()
        if await self.redis.scard(self._slots_key) >= self.max_concurrent:
            return False

        if await self.redis.sadd(self._slots_key, holder):
            await self.redis.setex(f"{self.key}:slot:{holder}", self.ttl, "1")
            return True
        return False

    async def release(self, holder: str) -> None:
        await self.redis.srem(self._slots_key, holder)
        await self.redis.delete(f"{self.key}:slot:{holder}")

    async def heartbeat(self, holder: str) -> None:
        """Extend the lease for a long-running job."""
        await self.redis.expire(f"{self.key}:slot:{holder}", self.ttl)

    async def count(self) -> int:
        return await self.redis.scard(self._slots_key)

    async def cleanup_stale(self) -> int:
        """Drop slots whose lease key expired (holder crashed)."""
        cleaned = 0
        for holder in await self.redis.smembers(self._slots_key):
            if not await self.redis.exists(f"{self.key}:slot:{holder}"):
                await self.redis.srem(self._slots_key, holder)
                cleaned += 1
        return cleaned


def role_semaphore(redis: Redis, kind: JobKind, ttl: int = 3600) -> RedisSemaphore:
    """Cluster-wide single-concurrency guard for one worker role."""
    return RedisSemaphore(redis, f"concurrency:role:{kind.value}", ROLE_CONCURRENCY, ttl=ttl)
