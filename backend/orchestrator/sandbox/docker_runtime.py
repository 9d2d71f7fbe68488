"""Docker runtime adapter.

Containers join ``settings.sandbox_network`` so the orchestrator reaches the
agent by container name. Preview traffic is routed either through Traefik
labels (https host per session) or through a random host port mapped to the
preview port.
"""

import asyncio
import random

import docker
import structlog
from docker.errors import APIError, NotFound

from orchestrator.core.config import Settings
from orchestrator.core.exceptions import ProvisioningError, RuntimeResourceNotFound
from orchestrator.sandbox.types import RuntimeHandle, RuntimeSpec

logger = structlog.get_logger(__name__)

PORT_ALLOCATION_ATTEMPTS = 5


class DockerContainerRuntime:
    """Creates and tears down sandbox containers with the Docker SDK.

    The SDK is blocking, so each call runs in a worker thread.
    """

    name = "docker"

    def __init__(self, settings: Settings, client: docker.DockerClient | None = None):
        self.settings = settings
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _address(self, container_name: str, agent_port: int) -> str:
        return f"http://{container_name}:{agent_port}"

    def _traefik_labels(self, spec: RuntimeSpec) -> dict[str, str]:
        router = spec.name.replace("_", "-")
        return {
            "traefik.enable": "true",
            f"traefik.http.routers.{router}.rule": f"Host(`{spec.preview_host}`)",
            f"traefik.http.routers.{router}.entrypoints": "websecure",
            f"traefik.http.routers.{router}.tls.certresolver": "letsencrypt",
            f"traefik.http.services.{router}.loadbalancer.server.port": str(spec.preview_port),
            "traefik.docker.network": self.settings.sandbox_network,
        }

    def _run(self, spec: RuntimeSpec, host_port: int | None):
        labels = dict(spec.labels)
        ports = {}
        if spec.preview_port is not None:
            if host_port is not None:
                ports[f"{spec.preview_port}/tcp"] = host_port
            elif spec.preview_host:
                labels.update(self._traefik_labels(spec))

        return self.client.containers.run(
            spec.image,
            name=spec.name,
            detach=True,
            environment=spec.env,
            labels=labels,
            ports=ports,
            network=self.settings.sandbox_network,
            mem_limit=self.settings.memory_limit,
            cpu_shares=self.settings.cpu_shares,
            pids_limit=self.settings.pids_limit,
            restart_policy={"Name": "no"},
        )

    async def create(self, spec: RuntimeSpec) -> RuntimeHandle:
        use_host_port = spec.preview_port is not None and not self.settings.traefik_enabled

        last_error: Exception | None = None
        for _ in range(PORT_ALLOCATION_ATTEMPTS if use_host_port else 1):
            host_port = (
                random.randint(self.settings.port_range_start, self.settings.port_range_end)
                if use_host_port
                else None
            )
            try:
                container = await asyncio.to_thread(self._run, spec, host_port)
            except APIError as e:
                last_error = e
                if use_host_port and "port is already allocated" in str(e):
                    logger.warning("docker_port_conflict", container=spec.name, host_port=host_port)
                    await self._remove_quietly(spec.name)
                    continue
                break
            else:
                if host_port is not None:
                    preview_url = f"http://localhost:{host_port}"
                elif spec.preview_host:
                    preview_url = f"https://{spec.preview_host}"
                else:
                    preview_url = None

                logger.info(
                    "docker_container_created",
                    container=spec.name,
                    container_id=container.id[:12],
                    host_port=host_port,
                )
                return RuntimeHandle(
                    address=self._address(spec.name, spec.agent_port),
                    resource_ref=spec.name,
                    preview_url=preview_url,
                    host_port=host_port,
                    refs={"container_id": container.id},
                )

        raise ProvisioningError(f"Failed to create container {spec.name}: {last_error}") from last_error

    async def _remove_quietly(self, name: str) -> None:
        try:
            await self.destroy(name)
        except RuntimeResourceNotFound:
            pass

    def _destroy(self, resource_ref: str) -> None:
        try:
            container = self.client.containers.get(resource_ref)
        except NotFound as e:
            raise RuntimeResourceNotFound(resource_ref) from e
        try:
            container.stop(timeout=5)
        except APIError as e:
            logger.warning("docker_stop_failed", container=resource_ref, error=str(e))
        try:
            container.remove(force=True, v=True)
        except NotFound as e:
            raise RuntimeResourceNotFound(resource_ref) from e

    async def destroy(self, resource_ref: str) -> None:
        await asyncio.to_thread(self._destroy, resource_ref)
        logger.info("docker_container_removed", container=resource_ref)

    def _stop(self, resource_ref: str) -> None:
        try:
            self.client.containers.get(resource_ref).stop(timeout=10)
        except NotFound as e:
            raise RuntimeResourceNotFound(resource_ref) from e

    async def stop(self, resource_ref: str) -> None:
        await asyncio.to_thread(self._stop, resource_ref)

    def _start(self, resource_ref: str):
        try:
            container = self.client.containers.get(resource_ref)
        except NotFound as e:
            raise RuntimeResourceNotFound(resource_ref) from e
        container.start()
        container.reload()
        return container

    async def start(self, resource_ref: str) -> RuntimeHandle:
        container = await asyncio.to_thread(self._start, resource_ref)

        host_port = None
        bindings = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
        mapped = bindings.get(f"{self.settings.preview_port}/tcp")
        if mapped:
            host_port = int(mapped[0]["HostPort"])

        return RuntimeHandle(
            address=self._address(resource_ref, self.settings.agent_port),
            resource_ref=resource_ref,
            preview_url=f"http://localhost:{host_port}" if host_port else None,
            host_port=host_port,
            refs={"container_id": container.id},
        )

    def _is_running(self, resource_ref: str) -> bool:
        try:
            container = self.client.containers.get(resource_ref)
        except NotFound:
            return False
        return container.status == "running"

    async def is_running(self, resource_ref: str) -> bool:
        return await asyncio.to_thread(self._is_running, resource_ref)
