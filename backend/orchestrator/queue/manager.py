"""QueueManager: per-kind FIFO of pending job ids on a Redis sorted set."""

from redis.asyncio import Redis

from orchestrator.queue.schemas import JobKind


class QueueManager:
    """Pending jobs of one kind, ordered by an INCR counter used as score.

    The job row in the database is the source of truth; the queue only holds
    ids waiting for a worker. Removing an id (on cancel) is always safe.
    """

    def __init__(self, redis: Redis, kind: JobKind):
        self.redis = redis
        self.kind = kind
        self.queue_key = f"queue:{kind.value}:pending"
        self.counter_key = f"queue:{kind.value}:counter"

    async def enqueue(self, job_id: str) -> int:
        """Append a job; returns its 1-indexed position."""
        counter = await self.redis.incr(self.counter_key)
        await self.redis.zadd(self.queue_key, {job_id: counter})
        return await self.get_position(job_id)

    async def dequeue(self) -> str | None:
        """Pop the oldest job id, or None if the queue is empty."""
        result = await self.redis.zpopmin(self.queue_key, count=1)
        if not result:
            return None

        job_id, _score = result[0]
        return job_id

    async def get_position(self, job_id: str) -> int:
        """1-indexed position, 0 if not queued."""
        rank = await self.redis.zrank(self.queue_key, job_id)
        return rank + 1 if rank is not None else 0

    async def get_length(self) -> int:
        return await self.redis.zcard(self.queue_key)

    async def remove(self, job_id: str) -> bool:
        return bool(await self.redis.zrem(self.queue_key, job_id))
