"""Deploy worker: wait for the agent, stream the deployment, collect service URLs."""

from typing import Any

import structlog

from orchestrator.core.exceptions import SandboxUnavailableError
from orchestrator.queue.schemas import JobKind, JobView
from orchestrator.queue.worker import BaseWorker
from orchestrator.sandbox.sse import AgentEvent

logger = structlog.get_logger(__name__)

SERVICE_EVENTS = frozenset({"service_deployed", "service_exists"})


class DeployWorker(BaseWorker):
    kind = JobKind.DEPLOY

    async def handle(self, job: JobView) -> dict[str, Any]:
        client = self.sandboxes.client(job.session_id)

        await self.state_machine.set_step(job.id, "waiting_for_agent")
        if not await client.wait_for_ready(timeout=self.settings.deploy_ready_timeout):
            raise SandboxUnavailableError(job.session_id, "agent did not become ready")

        service_urls: list[str] = []

        async def on_event(event: AgentEvent) -> None:
            data = event.data if isinstance(event.data, dict) else {}
            if event.type == "step_started" and data.get("name"):
                await self.state_machine.set_step(job.id, str(data["name"]))
            elif event.type in SERVICE_EVENTS and data.get("url"):
                service_urls.append(data["url"])
                logger.info("deploy_service_url", url=data["url"])

        stream = await client.stream_deploy()
        await self.step(
            "deploy",
            self.consume(stream, on_event=on_event, failure="Deployment failed"),
            self.settings.stream_timeout,
        )
        return {"service_urls": service_urls}
