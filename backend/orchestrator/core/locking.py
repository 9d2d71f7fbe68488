"""Per-key distributed locks on Redis.

Used to serialize sandbox creation per session and to keep a single cleanup
pass running across processes. A lock value is ``{owner}:{acquired_at}``;
only the owner may extend or release it, and the TTL bounds how long a
crashed holder can block others.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import redis.asyncio as redis
import structlog

logger = structlog.get_logger(__name__)


class LockTimeoutError(TimeoutError):
    """Raised when a lock cannot be acquired within the wait bound."""

    def __init__(self, key: str, waited: float):
        self.key = key
        self.waited = waited
        super().__init__(f"Could not acquire lock '{key}' within {waited:g}s")


class RedisLock:
    """Owner-tagged SET NX EX lock."""

    LOCK_PREFIX = "orchestrator:lock:"
    DEFAULT_TTL = 300

    RELEASE_SCRIPT = """
local current = redis.call("GET", KEYS[1])
if current and string.sub(current, 1, string.len(ARGV[1])) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

    def __init__(self, redis_client: redis.Redis, poll_interval: float = 0.1):
        self.redis = redis_client
        self.poll_interval = poll_interval
        self._release_script = redis_client.register_script(self.RELEASE_SCRIPT)

    def _key(self, name: str) -> str:
        return f"{self.LOCK_PREFIX}{name}"

    async def acquire(self, name: str, owner: str, ttl: int | None = None) -> bool:
        """Attempt to take the lock once.

        Returns:
            True if acquired (or already held by ``owner``), False otherwise
        """
        key = self._key(name)
        ttl = ttl or self.DEFAULT_TTL

        value = f"{owner}:{datetime.now(UTC).isoformat()}"
        if await self.redis.set(key, value, nx=True, ex=ttl):
            return True

        current = await self.redis.get(key)
        if current and current.startswith(f"{owner}:"):
            await self.redis.expire(key, ttl)
            return True

        return False

    async def release(self, name: str, owner: str) -> bool:
        """Delete the lock only if ``owner`` still holds it.

        The compare and the delete run as one script so an expired lock that
        another owner has since taken is left alone.
        """
        deleted = await self._release_script(keys=[self._key(name)], args=[f"{owner}:"])
        return bool(deleted)

    async def holder(self, name: str) -> str | None:
        """Return the current owner of the lock, if any."""
        current = await self.redis.get(self._key(name))
        if not current:
            return None
        return current.split(":", 1)[0]

    @asynccontextmanager
    async def hold(
        self,
        name: str,
        owner: str | None = None,
        ttl: int | None = None,
        wait_timeout: float = 30.0,
    ) -> AsyncGenerator[str, None]:
        """Wait for the lock, yield the owner token, release on exit.

        Raises:
            LockTimeoutError: if the lock is still held after ``wait_timeout``
        """
        owner = owner or uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        start = loop.time()

        while not await self.acquire(name, owner, ttl):
            waited = loop.time() - start
            if waited >= wait_timeout:
                logger.warning("lock_wait_timeout", lock=name, waited=round(waited, 2))
                raise LockTimeoutError(name, waited)
            await asyncio.sleep(self.poll_interval)

        try:
            yield owner
        finally:
            await self.release(name, owner)

    @asynccontextmanager
    async def try_hold(
        self,
        name: str,
        owner: str | None = None,
        ttl: int | None = None,
    ) -> AsyncGenerator[bool, None]:
        """Single attempt; yields whether the lock was taken."""
        owner = owner or uuid.uuid4().hex
        acquired = await self.acquire(name, owner, ttl)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(name, owner)
