"""Tests for the per-kind Redis pending queue and the role semaphore."""

import pytest

from orchestrator.queue.manager import QueueManager
from orchestrator.queue.schemas import JobKind
from orchestrator.queue.semaphore import role_semaphore

pytestmark = pytest.mark.unit


@pytest.fixture
def build_queue(redis):
    return QueueManager(redis, JobKind.BUILD)


async def test_fifo_order(build_queue):
    """Jobs come out in the order they went in."""
    for job_id in ("job-1", "job-2", "job-3"):
        await build_queue.enqueue(job_id)

    assert [await build_queue.dequeue() for _ in range(3)] == ["job-1", "job-2", "job-3"]
    assert await build_queue.dequeue() is None


async def test_positions_and_length(build_queue):
    """Positions are 1-indexed; unknown jobs report 0."""
    assert await build_queue.enqueue("job-1") == 1
    assert await build_queue.enqueue("job-2") == 2

    assert await build_queue.get_length() == 2
    assert await build_queue.get_position("job-2") == 2
    assert await build_queue.get_position("job-9") == 0


async def test_remove(build_queue):
    """Removing a queued job is reported; removing again is harmless."""
    await build_queue.enqueue("job-1")

    assert await build_queue.remove("job-1") is True
    assert await build_queue.remove("job-1") is False
    assert await build_queue.get_length() == 0


async def test_kinds_are_separate_queues(redis):
    """Build and deploy jobs never share a queue."""
    await QueueManager(redis, JobKind.BUILD).enqueue("build-1")
    await QueueManager(redis, JobKind.DEPLOY).enqueue("deploy-1")

    assert await QueueManager(redis, JobKind.DEPLOY).dequeue() == "deploy-1"
    assert await QueueManager(redis, JobKind.SUBMIT).dequeue() is None


async def test_role_semaphore_allows_one_holder(redis):
    """Each worker role processes a single job at a time."""
    semaphore = role_semaphore(redis, JobKind.BUILD, ttl=60)

    assert await semaphore.acquire("job-1") is True
    assert await semaphore.acquire("job-2") is False
    assert await role_semaphore(redis, JobKind.SUBMIT).acquire("job-3") is True

    await semaphore.release("job-1")
    assert await semaphore.acquire("job-2") is True


async def test_role_semaphore_reclaims_expired_lease(redis):
    """A crashed holder's slot is freed once its lease key expires."""
    semaphore = role_semaphore(redis, JobKind.DEPLOY, ttl=60)
    await semaphore.acquire("job-crashed")
    await redis.delete(f"{semaphore.key}:slot:job-crashed")

    assert await semaphore.acquire("job-next") is True
    assert await semaphore.count() == 1
