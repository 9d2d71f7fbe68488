"""SandboxManager: creates, reuses, stops and destroys per-session sandboxes.

Creation is serialized per session with a Redis lock, so concurrent
``create_sandbox`` calls for one session converge on a single sandbox.
Destruction is idempotent: a runtime that reports the resource already gone
counts as success, and a second concurrent destroy is a no-op.
"""

from datetime import timedelta

import httpx
import structlog

from orchestrator.core.config import Settings, get_settings
from orchestrator.core.credentials import resolve_model_api_key
from orchestrator.core.exceptions import (
    OperationFailedError,
    ProvisioningError,
    RuntimeResourceNotFound,
    SandboxUnavailableError,
)
from orchestrator.core.locking import LockTimeoutError, RedisLock
from orchestrator.db.base import utcnow
from orchestrator.sandbox.client import SandboxClient, wait_for_agent
from orchestrator.sandbox.databases import PreviewDatabaseProvisioner
from orchestrator.sandbox.naming import container_name, preview_database_name, preview_host
from orchestrator.sandbox.registry import SandboxRegistry
from orchestrator.sandbox.runtime import ContainerRuntime
from orchestrator.sandbox.types import (
    DestroyResult,
    RuntimeSpec,
    Sandbox,
    SandboxSpec,
    SandboxStatus,
    ServicesMode,
)

logger = structlog.get_logger(__name__)


class SandboxManager:
    def __init__(
        self,
        registry: SandboxRegistry,
        runtime: ContainerRuntime,
        lock: RedisLock,
        http_client: httpx.AsyncClient,
        settings: Settings | None = None,
        databases: PreviewDatabaseProvisioner | None = None,
        agent_poll_interval: float = 1.0,
    ):
        self.registry = registry
        self.runtime = runtime
        self.lock = lock
        self.http = http_client
        self.settings = settings or get_settings()
        self.databases = databases
        self.agent_poll_interval = agent_poll_interval

    def client(self, session_id: str) -> SandboxClient:
        """Per-session client sharing this manager's registry and HTTP pool."""
        return SandboxClient(session_id, self.registry, self.http, self.settings)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_sandbox(self, session_id: str) -> Sandbox | None:
        return await self.registry.get(session_id)

    async def list_project_sandboxes(self, project_id: str) -> list[Sandbox]:
        return await self.registry.list_project(project_id)

    async def get_live_sandbox(self, session_id: str) -> Sandbox | None:
        """Registry read plus liveness check.

        A ``running`` row whose runtime or agent is gone is marked ``error``
        and reported as absent.
        """
        sandbox = await self.registry.get(session_id)
        if sandbox is None or sandbox.status != SandboxStatus.RUNNING:
            return None
        if await self._is_live(sandbox):
            return sandbox
        await self.registry.mark_error(sandbox.id, "runtime or agent no longer reachable")
        logger.warning("sandbox_drift_detected", session_id=session_id, sandbox_id=sandbox.id)
        return None

    async def require_live_sandbox(self, session_id: str) -> Sandbox:
        """Like ``get_live_sandbox`` but raises when there is nothing live.

        Raises:
            SandboxUnavailableError: no running sandbox, or it failed the liveness check
        """
        sandbox = await self.get_live_sandbox(session_id)
        if sandbox is None:
            raise SandboxUnavailableError(session_id, "sandbox is not running or failed its liveness check")
        return sandbox

    async def _is_live(self, sandbox: Sandbox) -> bool:
        if not sandbox.resource_ref or not sandbox.address:
            return False
        try:
            if not await self.runtime.is_running(sandbox.resource_ref):
                return False
            response = await self.http.get(f"{sandbox.address}/health", timeout=self.settings.health_timeout)
        except httpx.HTTPError:
            return False
        return response.status_code < 400

    async def touch(self, session_id: str) -> None:
        await self.registry.touch(session_id)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_sandbox(self, spec: SandboxSpec) -> Sandbox:
        """Return the session's running sandbox, creating or restarting it as needed.

        A caller that outwaits the create lock gets the in-flight
        ``provisioning`` row back rather than an error.

        Raises:
            ProvisioningError: boot or health check failed; nothing is left behind
        """
        log = logger.bind(session_id=spec.session_id, project_id=spec.project_id)
        try:
            async with self.lock.hold(
                f"sandbox:create:{spec.session_id}",
                ttl=self.settings.create_lock_ttl,
                wait_timeout=self.settings.create_lock_wait,
            ):
                existing = await self.registry.get(spec.session_id)
                if existing is not None:
                    reused = await self._reuse(existing, spec)
                    if reused is not None:
                        log.info("sandbox_reused", sandbox_id=reused.id, status=reused.status.value)
                        return reused
                return await self._provision(spec)
        except LockTimeoutError as e:
            # Another caller is still booting this session; hand back its row
            current = await self.registry.get(spec.session_id)
            if current is not None and current.status in (SandboxStatus.PROVISIONING, SandboxStatus.RUNNING):
                log.info("sandbox_create_in_progress", sandbox_id=current.id, status=current.status.value)
                return current
            raise ProvisioningError(f"Sandbox creation for session {spec.session_id} is already in progress") from e

    async def _reuse(self, existing: Sandbox, spec: SandboxSpec) -> Sandbox | None:
        """Reuse the existing row if possible; otherwise retire it and return None."""
        if existing.status == SandboxStatus.RUNNING:
            if await self._is_live(existing):
                return existing
            logger.warning("sandbox_drift_detected", session_id=existing.session_id, sandbox_id=existing.id)
            await self.registry.mark_error(existing.id, "runtime or agent no longer reachable")

        elif existing.status == SandboxStatus.PROVISIONING:
            age = (utcnow() - existing.created_at).total_seconds()
            if age < self.settings.boot_timeout:
                return existing
            await self.registry.mark_error(existing.id, "provisioning never completed")

        elif existing.status == SandboxStatus.STOPPED:
            try:
                return await self._restart(existing, spec.branch, spec.credential)
            except Exception as e:
                logger.warning(
                    "sandbox_restart_failed_recreating",
                    session_id=existing.session_id,
                    sandbox_id=existing.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self.registry.mark_error(existing.id, f"restart failed: {e}")

        await self._retire(existing)
        return None

    async def _retire(self, sandbox: Sandbox) -> None:
        """Best-effort teardown of a row that will be replaced."""
        if sandbox.resource_ref:
            try:
                await self.runtime.destroy(sandbox.resource_ref)
            except RuntimeResourceNotFound:
                pass
            except Exception as e:
                logger.warning(
                    "sandbox_retire_destroy_failed",
                    session_id=sandbox.session_id,
                    sandbox_id=sandbox.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
        await self.registry.mark_destroyed(sandbox.id)

    def _runtime_spec(self, spec: SandboxSpec, name: str, database_url: str | None) -> RuntimeSpec:
        api_key, _source = resolve_model_api_key(self.settings, spec.org_model_api_key, session_id=spec.session_id)
        full = spec.services_mode == ServicesMode.FULL

        env = {
            "SESSION_ID": spec.session_id,
            "PROJECT_ID": spec.project_id,
            "REPO_URL": spec.repo_url,
            "REPO_BRANCH": spec.branch,
            "SERVICES_MODE": spec.services_mode.value,
            "AGENT_PORT": str(self.settings.agent_port),
            "ANTHROPIC_API_KEY": api_key,
            "AGENT_MODEL": self.settings.default_model,
            "AGENT_MAX_TURNS": str(self.settings.agent_max_turns),
            "GIT_AUTHOR_EMAIL": self.settings.sandbox_git_email,
        }
        if spec.credential:
            env["GITHUB_TOKEN"] = spec.credential
        if full:
            env["PREVIEW_PORT"] = str(self.settings.preview_port)
        if database_url:
            env["DATABASE_URL"] = database_url
        env.update(spec.env)

        return RuntimeSpec(
            name=name,
            image=self.settings.sandbox_image,
            env=env,
            labels={
                "orchestrator.type": "sandbox",
                "orchestrator.project": spec.project_id,
                "orchestrator.session": spec.session_id,
                "orchestrator.mode": spec.services_mode.value,
                "orchestrator.branch": spec.branch,
            },
            agent_port=self.settings.agent_port,
            preview_port=self.settings.preview_port if full else None,
            preview_host=(
                preview_host(spec.project_id, spec.session_id, self.settings.preview_domain)
                if full and self.settings.traefik_enabled
                else None
            ),
        )

    async def _provision(self, spec: SandboxSpec) -> Sandbox:
        log = logger.bind(session_id=spec.session_id, project_id=spec.project_id)
        name = container_name(spec.project_id, spec.session_id)
        db_name = preview_database_name(spec.project_id, spec.session_id) if self.databases else None

        record = await self.registry.insert_provisioning(spec, self.runtime.name, name, preview_database=db_name)
        log.info("sandbox_provisioning", sandbox_id=record.id, name=name, mode=spec.services_mode.value)

        handle = None
        try:
            database_url = await self.databases.create(db_name) if self.databases else None
            handle = await self.runtime.create(self._runtime_spec(spec, name, database_url))
            await wait_for_agent(
                self.http,
                handle.address,
                timeout=self.settings.boot_timeout,
                interval=self.agent_poll_interval,
                request_timeout=self.settings.health_timeout,
            )
        except Exception as e:
            log.error("sandbox_provision_failed", sandbox_id=record.id, error=str(e), exc_info=True)
            await self._cleanup_partial(record, handle.resource_ref if handle else name)
            await self.registry.mark_error(record.id, str(e) or type(e).__name__)
            raise ProvisioningError(f"Failed to provision sandbox for session {spec.session_id}: {e}") from e

        await self.registry.mark_running(record.id, handle, branch=spec.branch)
        log.info("sandbox_running", sandbox_id=record.id, address=handle.address, preview_url=handle.preview_url)
        return await self.registry.get_by_id(record.id)

    async def _cleanup_partial(self, record: Sandbox, resource_ref: str) -> None:
        try:
            await self.runtime.destroy(resource_ref)
        except RuntimeResourceNotFound:
            pass
        except Exception as e:
            logger.warning("sandbox_partial_cleanup_failed", sandbox_id=record.id, error=str(e))
        await self._drop_database(record)

    async def _drop_database(self, sandbox: Sandbox) -> None:
        if not (self.databases and sandbox.preview_database):
            return
        try:
            await self.databases.drop(sandbox.preview_database)
        except Exception as e:
            logger.warning(
                "preview_database_drop_failed",
                session_id=sandbox.session_id,
                database=sandbox.preview_database,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Stop / restart
    # ------------------------------------------------------------------

    async def _restart(self, sandbox: Sandbox, branch: str | None, credential: str | None) -> Sandbox:
        handle = await self.runtime.start(sandbox.resource_ref)
        await wait_for_agent(
            self.http,
            handle.address,
            timeout=self.settings.boot_timeout,
            interval=self.agent_poll_interval,
            request_timeout=self.settings.health_timeout,
        )
        await self.registry.mark_running(sandbox.id, handle, branch=branch)
        logger.info("sandbox_restarted", session_id=sandbox.session_id, sandbox_id=sandbox.id)

        target = branch or sandbox.branch
        if target:
            result = await self.client(sandbox.session_id).pull(target, credential)
            if not result.success:
                logger.warning(
                    "sandbox_pull_after_restart_failed",
                    session_id=sandbox.session_id,
                    branch=target,
                    error=result.error,
                )
        return await self.registry.get_by_id(sandbox.id)

    async def stop_sandbox(self, session_id: str) -> Sandbox | None:
        """Stop the runtime but keep its resources; status becomes ``stopped``."""
        sandbox = await self.registry.get(session_id)
        if sandbox is None or sandbox.status != SandboxStatus.RUNNING:
            return sandbox
        try:
            await self.runtime.stop(sandbox.resource_ref)
        except RuntimeResourceNotFound:
            await self.registry.mark_error(sandbox.id, "runtime resource gone")
            return await self.registry.get_by_id(sandbox.id)
        await self.registry.mark_stopped(sandbox.id)
        logger.info("sandbox_stopped", session_id=session_id, sandbox_id=sandbox.id)
        return await self.registry.get_by_id(sandbox.id)

    async def restart_sandbox(
        self,
        session_id: str,
        branch: str | None = None,
        credential: str | None = None,
    ) -> Sandbox:
        """Start a stopped sandbox again and pull ``branch``.

        Raises:
            SandboxUnavailableError: no stopped or running sandbox for the session
            ProvisioningError: the runtime could not start it
        """
        async with self.lock.hold(
            f"sandbox:create:{session_id}",
            ttl=self.settings.create_lock_ttl,
            wait_timeout=self.settings.create_lock_wait,
        ):
            sandbox = await self.registry.get(session_id)
            if sandbox is None or sandbox.status not in (SandboxStatus.STOPPED, SandboxStatus.RUNNING):
                raise SandboxUnavailableError(session_id, "no sandbox to restart")
            try:
                return await self._restart(sandbox, branch, credential)
            except (RuntimeResourceNotFound, httpx.HTTPError) as e:
                await self.registry.mark_error(sandbox.id, f"restart failed: {e}")
                raise ProvisioningError(f"Failed to restart sandbox for session {session_id}: {e}") from e

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------

    async def destroy_sandbox(self, session_id: str) -> bool:
        """Tear down the session's sandbox and tombstone its row.

        Returns True if this call destroyed it, False if there was nothing to
        destroy (including losing a race with a concurrent destroy).

        Raises:
            OperationFailedError: the runtime refused; the row is left as is
        """
        sandbox = await self.registry.get(session_id)
        if sandbox is None:
            logger.debug("sandbox_destroy_noop", session_id=session_id)
            return False

        if sandbox.resource_ref:
            try:
                await self.runtime.destroy(sandbox.resource_ref)
            except RuntimeResourceNotFound:
                logger.info("sandbox_already_gone", session_id=session_id, sandbox_id=sandbox.id)
            except Exception as e:
                logger.error(
                    "sandbox_destroy_failed",
                    session_id=session_id,
                    sandbox_id=sandbox.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise OperationFailedError(f"Failed to destroy sandbox for session {session_id}: {e}") from e

        destroyed = await self.registry.mark_destroyed(sandbox.id)
        if destroyed:
            await self._drop_database(sandbox)
            logger.info("sandbox_destroyed", session_id=session_id, sandbox_id=sandbox.id)
        return destroyed

    async def destroy_all_project_sandboxes(self, project_id: str) -> DestroyResult:
        """Destroy every sandbox of a project; per-item failures are counted, never raised."""
        result = DestroyResult()
        for sandbox in await self.registry.list_project(project_id):
            try:
                await self.destroy_sandbox(sandbox.session_id)
            except Exception as e:
                result.failed += 1
                result.errors[sandbox.session_id] = str(e)
                logger.warning(
                    "project_sandbox_destroy_failed",
                    project_id=project_id,
                    session_id=sandbox.session_id,
                    error=str(e),
                )
            else:
                result.destroyed += 1

        logger.info(
            "project_sandboxes_destroyed",
            project_id=project_id,
            destroyed=result.destroyed,
            failed=result.failed,
        )
        return result

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self) -> int:
        """Mark rows whose runtime resource has vanished as ``error``.

        Returns the number of rows corrected.
        """
        corrected = 0
        stale_before = utcnow() - timedelta(seconds=self.settings.boot_timeout * 2)

        for sandbox in await self.registry.list_by_status(SandboxStatus.PROVISIONING, SandboxStatus.RUNNING):
            try:
                if sandbox.status == SandboxStatus.PROVISIONING:
                    if sandbox.created_at < stale_before:
                        await self.registry.mark_error(sandbox.id, "provisioning never completed")
                        corrected += 1
                    continue

                if not sandbox.resource_ref or not await self.runtime.is_running(sandbox.resource_ref):
                    await self.registry.mark_error(sandbox.id, "runtime resource gone")
                    corrected += 1
                    logger.warning("sandbox_reconciled_to_error", session_id=sandbox.session_id, sandbox_id=sandbox.id)
            except Exception as e:
                logger.warning("sandbox_reconcile_failed", sandbox_id=sandbox.id, error=str(e))

        return corrected
