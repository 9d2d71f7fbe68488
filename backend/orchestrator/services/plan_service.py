"""PlanService: relay the agent's plan stream and queue the resulting build.

The agent writes its ticket list to a JSON file inside the sandbox and names it
in the terminal ``done`` event. Once the stream succeeds, the tickets are read
back through the sandbox client and become the ordered tasks of a new build job.
"""

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from orchestrator.core.exceptions import OperationFailedError
from orchestrator.queue.coordinator import JobCoordinator
from orchestrator.queue.schemas import JobKind, TaskInput
from orchestrator.sandbox.client import SandboxClient
from orchestrator.sandbox.sse import AgentEvent

logger = structlog.get_logger(__name__)

BUILD_QUEUED_EVENT = "build_queued"


def parse_tickets(raw: str) -> list[TaskInput]:
    """Tickets file -> ordered task inputs.

    Accepts ``{"tickets": [...]}`` or a bare list. Tickets without a title are
    dropped.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise OperationFailedError(f"Tickets file is not valid JSON: {e}") from e

    tickets = data.get("tickets", []) if isinstance(data, dict) else data
    if not isinstance(tickets, list):
        raise OperationFailedError("Tickets file has no ticket list")

    tasks = []
    for ticket in tickets:
        if not isinstance(ticket, dict) or not ticket.get("title"):
            continue
        effort = ticket.get("estimatedEffort")
        tasks.append(
            TaskInput(
                title=str(ticket["title"]),
                description=str(ticket.get("description") or ""),
                external_id=str(ticket["id"]) if ticket.get("id") is not None else None,
                type=ticket.get("type"),
                category=ticket.get("category"),
                estimated_effort=int(effort) if isinstance(effort, (int, float)) else None,
            )
        )
    return tasks


class PlanService:
    def __init__(self, coordinator: JobCoordinator):
        self.coordinator = coordinator

    def client(self, session_id: str) -> SandboxClient:
        return self.coordinator.sandboxes.client(session_id)

    async def run_plan(
        self,
        session_id: str,
        project_id: str,
        prompt: str,
        *,
        resume: str | None = None,
        build_payload: dict[str, Any] | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Yield plan events; after a successful plan, queue the build.

        The build job is announced with a trailing ``build_queued`` event.
        Closing this generator early closes the upstream agent stream.
        """
        await self.coordinator.sandboxes.require_live_sandbox(session_id)
        client = self.client(session_id)
        stream = await client.stream_plan(prompt, resume=resume)
        done: AgentEvent | None = None

        async with stream:
            async for event in stream:
                yield event
                if event.type == "done":
                    done = event

        if done is None or not isinstance(done.data, dict):
            return
        if done.data.get("status", "success") != "success" or not done.data.get("ticketsFile"):
            logger.info("plan_finished_without_tickets", session_id=session_id)
            return

        tasks = await self.load_tasks(client, done.data["ticketsFile"])
        job = await self.coordinator.enqueue(
            JobKind.BUILD,
            session_id,
            project_id,
            payload=build_payload or {},
            tasks=tasks,
        )
        logger.info("plan_build_queued", session_id=session_id, job_id=job.id, tasks=len(tasks))
        yield AgentEvent(type=BUILD_QUEUED_EVENT, data={"jobId": job.id, "tasks": len(tasks)})

    async def load_tasks(self, client: SandboxClient, tickets_file: str) -> list[TaskInput]:
        raw = await client.read_text(tickets_file)
        tasks = parse_tickets(raw)
        if not tasks:
            raise OperationFailedError(f"No tickets found in {tickets_file}")
        return tasks
