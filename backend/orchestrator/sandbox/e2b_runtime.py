"""E2B runtime adapter.

An E2B sandbox built from ``settings.e2b_template`` boots the agent itself;
the orchestrator reaches it over the public host E2B assigns to the agent port.
Stopping pauses the sandbox, starting reconnects (which resumes it).
"""

import structlog
from e2b_code_interpreter import AsyncSandbox

from orchestrator.core.config import Settings
from orchestrator.core.exceptions import ProvisioningError, RuntimeResourceNotFound
from orchestrator.sandbox.types import RuntimeHandle, RuntimeSpec

logger = structlog.get_logger(__name__)

# Sandbox lifetime ceiling; idle cleanup normally destroys it well before this
SANDBOX_TIMEOUT_SECONDS = 24 * 60 * 60


class E2BContainerRuntime:
    name = "e2b"

    def __init__(self, settings: Settings):
        self.settings = settings

    def _handle(self, sandbox: AsyncSandbox, preview_port: int | None) -> RuntimeHandle:
        preview_url = f"https://{sandbox.get_host(preview_port)}" if preview_port else None
        return RuntimeHandle(
            address=f"https://{sandbox.get_host(self.settings.agent_port)}",
            resource_ref=sandbox.sandbox_id,
            preview_url=preview_url,
        )

    async def create(self, spec: RuntimeSpec) -> RuntimeHandle:
        try:
            sandbox = await AsyncSandbox.create(
                template=self.settings.e2b_template,
                timeout=SANDBOX_TIMEOUT_SECONDS,
                metadata=spec.labels,
                envs=spec.env,
                api_key=self.settings.e2b_api_key,
            )
        except Exception as e:
            raise ProvisioningError(f"Failed to start E2B sandbox {spec.name}: {e}") from e

        logger.info("e2b_sandbox_created", name=spec.name, sandbox_id=sandbox.sandbox_id)
        return self._handle(sandbox, spec.preview_port)

    async def destroy(self, resource_ref: str) -> None:
        killed = await AsyncSandbox.kill(resource_ref, api_key=self.settings.e2b_api_key)
        if not killed:
            raise RuntimeResourceNotFound(resource_ref)
        logger.info("e2b_sandbox_killed", sandbox_id=resource_ref)

    async def _connect(self, resource_ref: str) -> AsyncSandbox:
        try:
            return await AsyncSandbox.connect(resource_ref, api_key=self.settings.e2b_api_key)
        except Exception as e:
            raise RuntimeResourceNotFound(resource_ref) from e

    async def stop(self, resource_ref: str) -> None:
        sandbox = await self._connect(resource_ref)
        await sandbox.beta_pause()

    async def start(self, resource_ref: str) -> RuntimeHandle:
        sandbox = await self._connect(resource_ref)
        await sandbox.set_timeout(SANDBOX_TIMEOUT_SECONDS)
        return self._handle(sandbox, self.settings.preview_port)

    async def is_running(self, resource_ref: str) -> bool:
        try:
            sandbox = await self._connect(resource_ref)
        except RuntimeResourceNotFound:
            return False
        return await sandbox.is_running()
