"""Process wiring shared by the API and the standalone worker process.

Components are constructed once per process and injected everywhere; the only
shared state is the database session factory, the Redis client and the HTTP
connection pool passed in here.
"""

from dataclasses import dataclass

import httpx
import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.core.config import Settings
from orchestrator.core.locking import RedisLock
from orchestrator.integrations.github import GitHubClient
from orchestrator.integrations.notifier import LogNotifier
from orchestrator.queue.coordinator import JobCoordinator
from orchestrator.queue.scheduler import CleanupScheduler
from orchestrator.queue.worker import WorkerPool
from orchestrator.queue.workers import BuildWorker, DeployWorker, SubmitWorker
from orchestrator.sandbox.cleanup import IdleSandboxCleaner
from orchestrator.sandbox.databases import PreviewDatabaseProvisioner
from orchestrator.sandbox.manager import SandboxManager
from orchestrator.sandbox.registry import SandboxRegistry
from orchestrator.sandbox.runtime import ContainerRuntime, build_runtime
from orchestrator.services.plan_service import PlanService

logger = structlog.get_logger(__name__)


@dataclass
class Components:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    redis: Redis
    http: httpx.AsyncClient
    registry: SandboxRegistry
    sandbox_manager: SandboxManager
    coordinator: JobCoordinator
    plan_service: PlanService
    github: GitHubClient | None = None
    databases: PreviewDatabaseProvisioner | None = None
    pool: WorkerPool | None = None
    scheduler: CleanupScheduler | None = None

    def build_background(self) -> None:
        """Worker pool (one task per job kind) plus the cleanup scheduler."""
        notifier = LogNotifier()
        workers = [
            worker_cls(self.coordinator, vcs=self.github, notifier=notifier)
            for worker_cls in (BuildWorker, SubmitWorker, DeployWorker)
        ]
        self.pool = WorkerPool(workers, poll_interval=self.settings.worker_poll_interval)
        cleaner = IdleSandboxCleaner(self.sandbox_manager, self.registry, self.settings)
        self.scheduler = CleanupScheduler(
            cleaner,
            RedisLock(self.redis),
            interval_seconds=self.settings.cleanup_interval_minutes * 60,
        )

    async def close(self) -> None:
        if self.databases is not None:
            await self.databases.close()
        await self.http.aclose()


def build_components(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis: Redis,
    runtime: ContainerRuntime | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Components:
    http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(settings.file_op_timeout))
    registry = SandboxRegistry(session_factory)
    databases = PreviewDatabaseProvisioner.from_settings(settings)
    manager = SandboxManager(
        registry,
        runtime or build_runtime(settings),
        RedisLock(redis),
        http,
        settings,
        databases=databases,
    )
    coordinator = JobCoordinator(session_factory, redis, manager, settings)
    github = GitHubClient(settings, http) if settings.github_app_id else None

    logger.info(
        "components_built",
        runtime=manager.runtime.name,
        preview_databases=databases is not None,
        github=github is not None,
    )
    return Components(
        settings=settings,
        session_factory=session_factory,
        redis=redis,
        http=http,
        registry=registry,
        sandbox_manager=manager,
        coordinator=coordinator,
        plan_service=PlanService(coordinator),
        github=github,
        databases=databases,
    )
