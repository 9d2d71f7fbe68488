"""Per-sandbox preview Postgres databases.

Each sandbox may get its own database, created on boot and dropped on
destroy. Names come from ``naming.preview_database_name`` and are already
restricted to ``[a-z0-9_]``.
"""

import structlog
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from orchestrator.core.config import Settings

logger = structlog.get_logger(__name__)


class PreviewDatabaseProvisioner:
    def __init__(self, admin_url: str, host_url: str):
        self.admin_url = admin_url
        self.host_url = host_url
        self._engine: AsyncEngine | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PreviewDatabaseProvisioner | None":
        if not settings.preview_database_enabled:
            return None
        return cls(settings.preview_postgres_admin_url, settings.preview_postgres_host_url)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.admin_url, isolation_level="AUTOCOMMIT")
        return self._engine

    def url_for(self, name: str) -> str:
        """Connection URL handed to the sandbox."""
        return make_url(self.host_url).set(database=name).render_as_string(hide_password=False)

    async def create(self, name: str) -> str:
        async with self.engine.connect() as conn:
            exists = await conn.scalar(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": name},
            )
            if not exists:
                await conn.execute(text(f'CREATE DATABASE "{name}"'))
                logger.info("preview_database_created", database=name)
        return self.url_for(name)

    async def drop(self, name: str) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text(f'DROP DATABASE IF EXISTS "{name}" WITH (FORCE)'))
        logger.info("preview_database_dropped", database=name)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
