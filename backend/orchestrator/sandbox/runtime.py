"""Container runtime adapter contract.

The manager is written against ``ContainerRuntime`` only; Docker and E2B
implementations live in their own modules and are chosen from settings.
"""

from typing import Protocol

from orchestrator.core.config import Settings
from orchestrator.sandbox.types import RuntimeHandle, RuntimeSpec


class ContainerRuntime(Protocol):
    name: str

    async def create(self, spec: RuntimeSpec) -> RuntimeHandle:
        """Create and start an environment. Raises on failure."""
        ...

    async def destroy(self, resource_ref: str) -> None:
        """Remove the environment and its volumes.

        Raises RuntimeResourceNotFound if it no longer exists.
        """
        ...

    async def stop(self, resource_ref: str) -> None: ...

    async def start(self, resource_ref: str) -> RuntimeHandle:
        """Start a stopped environment and return its (possibly new) handle."""
        ...

    async def is_running(self, resource_ref: str) -> bool: ...


def build_runtime(settings: Settings) -> ContainerRuntime:
    """Instantiate the runtime adapter named by ``settings.sandbox_runtime``."""
    if settings.sandbox_runtime == "docker":
        from orchestrator.sandbox.docker_runtime import DockerContainerRuntime

        return DockerContainerRuntime(settings)
    if settings.sandbox_runtime == "e2b":
        from orchestrator.sandbox.e2b_runtime import E2BContainerRuntime

        return E2BContainerRuntime(settings)
    raise ValueError(f"Unknown sandbox runtime: {settings.sandbox_runtime}")
