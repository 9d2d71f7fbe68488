"""Submit worker: review and commit in the sandbox, then open or update the PR.

Payload keys: ``title``, ``base_branch``, ``branch`` (PR head), ``repo``
(``owner/name``), ``installation_id``, and ``pr_number`` when the session
already has a pull request.
"""

from typing import Any

import structlog

from orchestrator.core.exceptions import OperationFailedError
from orchestrator.integrations.github import PullRequest, parse_pr_number
from orchestrator.queue.schemas import JobKind, JobView
from orchestrator.queue.worker import BaseWorker
from orchestrator.sandbox.sse import AgentEvent

logger = structlog.get_logger(__name__)

STEP_EVENTS = {
    "review_started": "reviewing",
    "commit_started": "committing",
    "pr_started": "creating_pr",
}


class SubmitWorker(BaseWorker):
    kind = JobKind.SUBMIT

    async def handle(self, job: JobView) -> dict[str, Any]:
        payload = job.payload
        title = payload.get("title") or "Update from sandbox session"
        base_branch = payload.get("base_branch") or "main"

        client = self.sandboxes.client(job.session_id)
        credential = await self.credential(job)
        pr_url: str | None = None

        async def on_event(event: AgentEvent) -> None:
            nonlocal pr_url
            step = STEP_EVENTS.get(event.type)
            if step:
                await self.state_machine.set_step(job.id, step)
            elif event.type == "pr_completed" and isinstance(event.data, dict):
                pr_url = event.data.get("prUrl") or pr_url

        stream = await client.stream_submit(title, base_branch, credential)
        await self.step(
            "submit",
            self.consume(stream, on_event=on_event, failure="Submit failed"),
            self.settings.stream_timeout,
        )

        if pr_url is None:
            pr = await self._open_or_update(job, title, base_branch)
            pr_url = pr.url

        pr_number = parse_pr_number(pr_url)
        logger.info("submit_pull_request_ready", pr_url=pr_url, pr_number=pr_number)
        return {"pr_url": pr_url, "pr_number": pr_number}

    async def _open_or_update(self, job: JobView, title: str, base_branch: str) -> PullRequest:
        payload = job.payload
        repo = payload.get("repo")
        branch = payload.get("branch")
        installation_id = payload.get("installation_id")
        if self.vcs is None or not (repo and branch and installation_id):
            raise OperationFailedError("Submit finished without a pull request")

        owner, name = repo.split("/", 1)
        await self.state_machine.set_step(job.id, "creating_pr")
        existing = payload.get("pr_number")
        if existing:
            return await self.vcs.update_pull_request_state(str(installation_id), owner, name, int(existing), "open")
        return await self.vcs.open_pull_request(
            str(installation_id),
            owner,
            name,
            title=title,
            head=branch,
            base=base_branch,
        )
