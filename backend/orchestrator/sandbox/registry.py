"""SandboxRegistry: durable session -> sandbox state, backed by the ``sandboxes`` table.

Every status change is a conditional single-row UPDATE so concurrent writers
(request paths, workers, cleanup) cannot resurrect a destroyed row.
"""

from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.db.base import as_utc, utcnow
from orchestrator.db.models.sandbox import SandboxRecord
from orchestrator.sandbox.types import (
    RuntimeHandle,
    Sandbox,
    SandboxSpec,
    SandboxStatus,
    ServicesMode,
)


def to_sandbox(row: SandboxRecord) -> Sandbox:
    return Sandbox(
        id=row.id,
        session_id=row.session_id,
        project_id=row.project_id,
        status=SandboxStatus(row.status),
        services_mode=ServicesMode(row.services_mode),
        runtime=row.runtime,
        branch=row.branch,
        address=row.address,
        preview_url=row.preview_url,
        resource_ref=row.resource_ref,
        resource_refs=row.resource_refs or {},
        preview_database=row.preview_database,
        error_message=row.error_message,
        created_at=as_utc(row.created_at),
        last_activity_at=as_utc(row.last_activity_at),
        destroyed_at=as_utc(row.destroyed_at),
    )


class SandboxRegistry:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, session_id: str) -> Sandbox | None:
        """Current (non-destroyed) sandbox for a session, or None."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SandboxRecord)
                .where(
                    SandboxRecord.session_id == session_id,
                    SandboxRecord.status != SandboxStatus.DESTROYED.value,
                )
                .order_by(SandboxRecord.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return to_sandbox(row) if row else None

    async def get_by_id(self, sandbox_id: str) -> Sandbox | None:
        async with self.session_factory() as session:
            row = await session.get(SandboxRecord, sandbox_id)
            return to_sandbox(row) if row else None

    async def history(self, session_id: str) -> list[Sandbox]:
        """All rows for a session including tombstones, newest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SandboxRecord)
                .where(SandboxRecord.session_id == session_id)
                .order_by(SandboxRecord.created_at.desc())
            )
            return [to_sandbox(row) for row in result.scalars()]

    async def insert_provisioning(
        self,
        spec: SandboxSpec,
        runtime: str,
        resource_ref: str,
        preview_database: str | None = None,
    ) -> Sandbox:
        now = utcnow()
        row = SandboxRecord(
            session_id=spec.session_id,
            project_id=spec.project_id,
            status=SandboxStatus.PROVISIONING.value,
            services_mode=spec.services_mode.value,
            runtime=runtime,
            branch=spec.branch,
            resource_ref=resource_ref,
            resource_refs={},
            preview_database=preview_database,
            created_at=now,
            updated_at=now,
            last_activity_at=now,
        )
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
            return to_sandbox(row)

    async def _update(self, sandbox_id: str, *conditions, **values) -> bool:
        values.setdefault("updated_at", utcnow())
        async with self.session_factory() as session:
            result = await session.execute(
                update(SandboxRecord)
                .where(SandboxRecord.id == sandbox_id, *conditions)
                .values(**values)
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_running(self, sandbox_id: str, handle: RuntimeHandle, branch: str | None = None) -> bool:
        values = dict(
            status=SandboxStatus.RUNNING.value,
            address=handle.address,
            resource_ref=handle.resource_ref,
            resource_refs=handle.refs,
            host_port=str(handle.host_port) if handle.host_port else None,
            error_message=None,
            last_activity_at=utcnow(),
        )
        if handle.preview_url:
            values["preview_url"] = handle.preview_url
        if branch:
            values["branch"] = branch
        return await self._update(
            sandbox_id,
            SandboxRecord.status != SandboxStatus.DESTROYED.value,
            **values,
        )

    async def mark_error(self, sandbox_id: str, message: str) -> bool:
        return await self._update(
            sandbox_id,
            SandboxRecord.status != SandboxStatus.DESTROYED.value,
            status=SandboxStatus.ERROR.value,
            error_message=message,
            address=None,
        )

    async def mark_stopped(self, sandbox_id: str) -> bool:
        return await self._update(
            sandbox_id,
            SandboxRecord.status == SandboxStatus.RUNNING.value,
            status=SandboxStatus.STOPPED.value,
            address=None,
        )

    async def mark_destroyed(self, sandbox_id: str) -> bool:
        """Tombstone a row. Returns False if it was already destroyed."""
        now = utcnow()
        return await self._update(
            sandbox_id,
            SandboxRecord.status != SandboxStatus.DESTROYED.value,
            status=SandboxStatus.DESTROYED.value,
            address=None,
            destroyed_at=now,
            updated_at=now,
        )

    async def touch(self, session_id: str, now: datetime | None = None) -> None:
        """Advance last_activity_at for the session's running sandbox; never moves it back."""
        now = now or utcnow()
        async with self.session_factory() as session:
            await session.execute(
                update(SandboxRecord)
                .where(
                    SandboxRecord.session_id == session_id,
                    SandboxRecord.status == SandboxStatus.RUNNING.value,
                    or_(
                        SandboxRecord.last_activity_at.is_(None),
                        SandboxRecord.last_activity_at < now,
                    ),
                )
                .values(last_activity_at=now)
            )
            await session.commit()

    async def list_project(self, project_id: str, include_destroyed: bool = False) -> list[Sandbox]:
        query = select(SandboxRecord).where(SandboxRecord.project_id == project_id)
        if not include_destroyed:
            query = query.where(SandboxRecord.status != SandboxStatus.DESTROYED.value)
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(SandboxRecord.created_at))
            return [to_sandbox(row) for row in result.scalars()]

    async def list_by_status(self, *statuses: SandboxStatus) -> list[Sandbox]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SandboxRecord).where(SandboxRecord.status.in_([s.value for s in statuses]))
            )
            return [to_sandbox(row) for row in result.scalars()]

    async def list_idle(self, cutoff: datetime) -> list[Sandbox]:
        """Running sandboxes whose last activity is older than ``cutoff``."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SandboxRecord).where(
                    SandboxRecord.status == SandboxStatus.RUNNING.value,
                    or_(
                        SandboxRecord.last_activity_at < cutoff,
                        and_(
                            SandboxRecord.last_activity_at.is_(None),
                            SandboxRecord.created_at < cutoff,
                        ),
                    ),
                )
            )
            return [to_sandbox(row) for row in result.scalars()]
