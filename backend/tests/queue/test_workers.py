"""Tests for the build, submit and deploy workers and the worker pool.

Workers run against the fake agent; each test enqueues a job through the
coordinator and drives a single ``process_next`` (or the pool) to completion.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import update

from orchestrator.db.base import utcnow
from orchestrator.db.models.job import Job
from orchestrator.integrations.github import PullRequest
from orchestrator.queue.schemas import JobKind, JobStatus, TaskInput, TaskStatus
from orchestrator.queue.semaphore import role_semaphore
from orchestrator.queue.worker import WorkerPool
from orchestrator.queue.workers import BuildWorker, DeployWorker, SubmitWorker
from orchestrator.sandbox.types import SandboxStatus

pytestmark = pytest.mark.unit


def _tasks(*titles: str) -> list[TaskInput]:
    return [TaskInput(title=title, external_id=f"T-{i}") for i, title in enumerate(titles)]


async def _enqueue_build(coordinator, *titles: str, payload: dict | None = None):
    return await coordinator.enqueue(JobKind.BUILD, "sess-1", "proj-1", payload=payload, tasks=_tasks(*titles))


# =============================================================================
# BuildWorker
# =============================================================================


async def test_build_runs_tasks_in_order(coordinator, agent, running_sandbox):
    """Every task runs in stored order; the start commit is checkpointed first."""
    job = await _enqueue_build(coordinator, "Add login page", "Add logout", "Write tests")

    assert await BuildWorker(coordinator).process_next() is True

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.COMPLETED
    assert view.result == {"tasks_completed": 3, "tasks_total": 3}
    assert view.start_commit == agent.head
    assert all(task.status == TaskStatus.DONE for task in view.tasks)
    assert [body["task"]["id"] for body in agent.bodies("/api/build")] == ["T-0", "T-1", "T-2"]
    assert agent.paths().index("/api/git/head") < agent.paths().index("/api/build")


async def test_build_does_not_queue_submit(coordinator, running_sandbox):
    """A successful build stops there; submit needs an explicit request."""
    await _enqueue_build(coordinator, "Add login page")

    await BuildWorker(coordinator).process_next()

    assert await coordinator.queue(JobKind.SUBMIT).get_length() == 0


async def test_restarted_build_keeps_existing_checkpoint(coordinator, agent, running_sandbox):
    """A job that inherited a start commit does not re-read HEAD."""
    job = await coordinator.enqueue(
        JobKind.BUILD, "sess-1", "proj-1", tasks=_tasks("a"), start_commit="c0ffee1"
    )

    await BuildWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.start_commit == "c0ffee1"
    assert "/api/git/head" not in agent.paths()


async def test_build_task_error_fails_job(coordinator, agent, running_sandbox):
    """An agent error event fails the task and the job; later tasks stay todo."""
    agent.reply("/api/build", ("error", {"message": "tsc: 3 type errors"}))
    job = await _enqueue_build(coordinator, "a", "b")

    await BuildWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert view.error == "tsc: 3 type errors"
    assert [task.status for task in view.tasks] == [TaskStatus.ERROR, TaskStatus.TODO]
    assert view.tasks[0].error == "tsc: 3 type errors"


async def test_build_unsuccessful_done_fails_job(coordinator, agent, running_sandbox):
    """done with success=false is a failure, not a completion."""
    agent.reply("/api/build", ("done", {"success": False, "error": "tests failed"}))
    job = await _enqueue_build(coordinator, "a")

    await BuildWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert view.error == "tests failed"


async def test_build_without_sandbox_fails(coordinator):
    """No running sandbox: the job fails with an unavailable error."""
    job = await _enqueue_build(coordinator, "a")

    await BuildWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert "unavailable" in view.error


async def test_vanished_runtime_is_marked_error_at_pickup(coordinator, manager, runtime, agent, running_sandbox):
    """A running row whose container is gone is not trusted: marked error, job failed, nothing sent."""
    runtime.resources.clear()
    job = await _enqueue_build(coordinator, "a")

    await BuildWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert "unavailable" in view.error
    assert (await manager.get_sandbox("sess-1")).status == SandboxStatus.ERROR
    assert "/api/build" not in agent.paths()


async def test_concurrent_destroy_during_build(coordinator, manager, agent, running_sandbox):
    """Destroying the sandbox mid-task fails the job with the unavailable error."""

    async def destroy_mid_task(request):
        await manager.destroy_sandbox("sess-1")
        # Connection drops before the agent can send a terminal event
        return agent.event_stream(("tool_call", {"name": "edit_file"}))

    agent.stream_hooks["/api/build"] = destroy_mid_task
    job = await _enqueue_build(coordinator, "a", "b")

    assert await BuildWorker(coordinator).process_next() is True

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert "unavailable" in view.error
    assert [task.status for task in view.tasks] == [TaskStatus.ERROR, TaskStatus.TODO]
    assert await manager.get_sandbox("sess-1") is None


async def test_step_timeout_fails_job(coordinator, agent, running_sandbox, settings):
    """A task exceeding task_step_timeout fails instead of hanging."""
    settings.task_step_timeout = 0.05

    async def hang(request):
        await asyncio.sleep(5)

    agent.stream_hooks["/api/build"] = hang
    job = await _enqueue_build(coordinator, "slow task")

    await asyncio.wait_for(BuildWorker(coordinator).process_next(), timeout=2)

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert "timed out" in view.error


async def test_cancel_during_build_is_not_overwritten(coordinator, agent, running_sandbox):
    """A job cancelled while its last task finishes stays cancelled."""
    job = await _enqueue_build(coordinator, "a")

    async def cancel_then_succeed(request):
        await coordinator.cancel(job.id)
        return agent.event_stream(("done", {"success": True}))

    agent.stream_hooks["/api/build"] = cancel_then_succeed

    await BuildWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.CANCELLED
    assert view.result is None


async def test_cancel_during_first_task_stops_build(coordinator, agent, running_sandbox):
    """Cancelling mid-build runs no further tasks and keeps every task cancelled."""
    job = await _enqueue_build(coordinator, "a", "b", "c")
    calls = []

    async def cancel_on_first(request):
        calls.append(request)
        if len(calls) == 1:
            await coordinator.cancel(job.id)
        return agent.event_stream(("done", {"success": True}))

    agent.stream_hooks["/api/build"] = cancel_on_first

    await BuildWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.CANCELLED
    assert len(agent.bodies("/api/build")) == 1
    assert [task.status for task in view.tasks] == [TaskStatus.CANCELLED] * 3


async def test_build_notifies_recipient(coordinator, running_sandbox):
    """Completion is announced to the payload's notify recipient."""
    notifier = AsyncMock()
    job = await _enqueue_build(coordinator, "a", payload={"notify": "founder@example.com"})

    await BuildWorker(coordinator, notifier=notifier).process_next()

    recipient, template, data = notifier.notify.call_args[0]
    assert recipient == "founder@example.com"
    assert template == "build_job_completed"
    assert data["job_id"] == job.id


async def test_notifier_failure_does_not_fail_job(coordinator, running_sandbox):
    """Notifications are fire-and-forget."""
    notifier = AsyncMock()
    notifier.notify.side_effect = RuntimeError("smtp down")
    job = await _enqueue_build(coordinator, "a", payload={"notify": "founder@example.com"})

    await BuildWorker(coordinator, notifier=notifier).process_next()

    assert (await coordinator.get_job(job.id)).status == JobStatus.COMPLETED


async def test_build_uses_installation_token(coordinator, agent, running_sandbox):
    """With an installation id the worker fetches a VCS token for the agent."""
    vcs = AsyncMock()
    vcs.get_installation_token.return_value = "ghs_fresh"
    await _enqueue_build(coordinator, "a", payload={"installation_id": 42})

    await BuildWorker(coordinator, vcs=vcs).process_next()

    vcs.get_installation_token.assert_awaited_once_with("42")
    assert agent.bodies("/api/build")[0]["githubToken"] == "ghs_fresh"


# =============================================================================
# Pickup rules
# =============================================================================


async def test_empty_queue(coordinator):
    """Nothing queued: nothing processed."""
    assert await BuildWorker(coordinator).process_next() is False


async def test_inconsistent_job_is_skipped(coordinator, agent, running_sandbox):
    """A job whose fields contradict its status is not executed."""
    job = await _enqueue_build(coordinator, "a")
    await coordinator.state_machine.transition(job.id, JobStatus.RUNNING)
    async with coordinator.session_factory() as session:
        await session.execute(update(Job).where(Job.id == job.id).values(status="pending", completed_at=utcnow()))
        await session.commit()

    await BuildWorker(coordinator).process_next()

    assert "/api/build" not in agent.paths()
    view = await coordinator.get_job(job.id)
    assert view.stored_status == JobStatus.PENDING
    assert view.status == JobStatus.FAILED


async def test_cancelled_job_left_in_queue_is_skipped(coordinator, agent, running_sandbox):
    """Only pending jobs are picked up."""
    job = await _enqueue_build(coordinator, "a")
    await coordinator.state_machine.transition(job.id, JobStatus.CANCELLED)

    assert await BuildWorker(coordinator).process_next() is True
    assert "/api/build" not in agent.paths()


async def test_busy_role_reenqueues(coordinator, redis, agent, running_sandbox):
    """A role already processing a job elsewhere leaves the next job queued."""
    await role_semaphore(redis, JobKind.BUILD, ttl=60).acquire("job-elsewhere")
    job = await _enqueue_build(coordinator, "a")

    assert await BuildWorker(coordinator).process_next() is False

    assert await coordinator.queue(JobKind.BUILD).get_position(job.id) == 1
    assert (await coordinator.get_job(job.id)).status == JobStatus.PENDING


# =============================================================================
# SubmitWorker
# =============================================================================


async def test_submit_records_pull_request_from_stream(coordinator, agent, running_sandbox):
    """The agent's pr_completed event provides the PR URL and number."""
    job = await coordinator.enqueue(JobKind.SUBMIT, "sess-1", "proj-1", payload={"title": "Login page"})

    await SubmitWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.COMPLETED
    assert view.result == {"pr_url": "https://github.com/acme/shop/pull/17", "pr_number": 17}
    assert view.current_step == "creating_pr"
    assert agent.bodies("/api/submit")[0]["title"] == "Login page"


async def test_submit_opens_pull_request_via_vcs(coordinator, agent, running_sandbox):
    """When the agent only commits, the worker opens the PR itself."""
    agent.reply("/api/submit", ("review_started", {}), ("commit_started", {}), ("done", {"success": True}))
    vcs = AsyncMock()
    vcs.get_installation_token.return_value = "ghs_fresh"
    vcs.open_pull_request.return_value = PullRequest(
        number=5, url="https://github.com/acme/shop/pull/5", state="open"
    )
    job = await coordinator.enqueue(
        JobKind.SUBMIT,
        "sess-1",
        "proj-1",
        payload={"title": "Login", "repo": "acme/shop", "branch": "session/sess-1", "installation_id": 42},
    )

    await SubmitWorker(coordinator, vcs=vcs).process_next()

    view = await coordinator.get_job(job.id)
    assert view.result == {"pr_url": "https://github.com/acme/shop/pull/5", "pr_number": 5}
    vcs.open_pull_request.assert_awaited_once_with(
        "42", "acme", "shop", title="Login", head="session/sess-1", base="main"
    )


async def test_submit_reopens_existing_pull_request(coordinator, agent, running_sandbox):
    """A session with a PR number updates that PR instead of opening another."""
    agent.reply("/api/submit", ("done", {"success": True}))
    vcs = AsyncMock()
    vcs.get_installation_token.return_value = "ghs_fresh"
    vcs.update_pull_request_state.return_value = PullRequest(
        number=9, url="https://github.com/acme/shop/pull/9", state="open"
    )
    await coordinator.enqueue(
        JobKind.SUBMIT,
        "sess-1",
        "proj-1",
        payload={"repo": "acme/shop", "branch": "b", "installation_id": 42, "pr_number": 9},
    )

    await SubmitWorker(coordinator, vcs=vcs).process_next()

    vcs.update_pull_request_state.assert_awaited_once_with("42", "acme", "shop", 9, "open")
    vcs.open_pull_request.assert_not_awaited()


async def test_submit_without_pull_request_fails(coordinator, agent, running_sandbox):
    """No PR from the agent and no VCS client to open one: failed."""
    agent.reply("/api/submit", ("done", {"success": True}))
    job = await coordinator.enqueue(JobKind.SUBMIT, "sess-1", "proj-1")

    await SubmitWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert view.error == "Submit finished without a pull request"


# =============================================================================
# DeployWorker
# =============================================================================


async def test_deploy_collects_service_urls(coordinator, agent, running_sandbox):
    """Service URLs from the deploy stream end up in the result."""
    agent.reply(
        "/api/deploy",
        ("step_started", {"name": "build_images"}),
        ("service_deployed", {"key": "web", "url": "https://web.acme.app"}),
        ("service_exists", {"key": "api", "url": "https://api.acme.app"}),
        ("done", {"success": True}),
    )
    job = await coordinator.enqueue(JobKind.DEPLOY, "sess-1", "proj-1")

    await DeployWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.COMPLETED
    assert view.result == {"service_urls": ["https://web.acme.app", "https://api.acme.app"]}
    assert view.current_step == "build_images"


async def test_deploy_error_event_fails_job(coordinator, agent, running_sandbox):
    """A deploy error event is fatal."""
    agent.reply("/api/deploy", ("error", {"message": "quota exceeded"}))
    job = await coordinator.enqueue(JobKind.DEPLOY, "sess-1", "proj-1")

    await DeployWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert view.error == "quota exceeded"


async def test_deploy_waits_for_ready_agent(coordinator, agent, running_sandbox, settings):
    """An agent that never becomes ready fails the deploy before streaming."""
    settings.deploy_ready_timeout = 0.05
    agent.health = {"alive": True, "ready": False}
    job = await coordinator.enqueue(JobKind.DEPLOY, "sess-1", "proj-1")

    await DeployWorker(coordinator).process_next()

    view = await coordinator.get_job(job.id)
    assert view.status == JobStatus.FAILED
    assert "did not become ready" in view.error
    assert "/api/deploy" not in agent.paths()


# =============================================================================
# WorkerPool
# =============================================================================


async def test_pool_runs_roles_concurrently(coordinator, running_sandbox):
    """Build and deploy roles each pick up their own job."""
    build = await _enqueue_build(coordinator, "a")
    deploy = await coordinator.enqueue(JobKind.DEPLOY, "sess-1", "proj-1")
    pool = WorkerPool([BuildWorker(coordinator), DeployWorker(coordinator)], poll_interval=0.01)

    pool.start()
    try:
        for _ in range(200):
            statuses = {(await coordinator.get_job(job_id)).status for job_id in (build.id, deploy.id)}
            if statuses == {JobStatus.COMPLETED}:
                break
            await asyncio.sleep(0.01)
    finally:
        await pool.stop()

    assert statuses == {JobStatus.COMPLETED}
