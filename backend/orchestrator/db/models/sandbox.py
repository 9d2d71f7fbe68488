"""SandboxRecord model: the registry row for one session's sandbox.

At most one non-destroyed row exists per session_id. Destroyed rows are kept
as tombstones (status='destroyed', destroyed_at set) for audit.
"""

import uuid

from sqlalchemy import JSON, Column, DateTime, Index, String, Text, text

from orchestrator.db.base import Base, utcnow


class SandboxRecord(Base):
    __tablename__ = "sandboxes"
    __table_args__ = (
        Index(
            "uq_sandboxes_live_session",
            "session_id",
            unique=True,
            postgresql_where=text("status <> 'destroyed'"),
            sqlite_where=text("status <> 'destroyed'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(255), nullable=False, index=True)
    project_id = Column(String(255), nullable=False, index=True)

    # provisioning | running | stopped | error | destroyed
    status = Column(String(50), nullable=False, default="provisioning", index=True)
    services_mode = Column(String(50), nullable=False, default="full")  # full | agent-only
    runtime = Column(String(50), nullable=False, default="docker")
    branch = Column(String(255), nullable=True)

    # Where the agent listens and where the preview is served
    address = Column(Text, nullable=True)
    preview_url = Column(Text, nullable=True)
    host_port = Column(String(10), nullable=True)

    # Runtime handle (container name / E2B sandbox id) plus any auxiliary refs
    resource_ref = Column(String(255), nullable=True)
    resource_refs = Column(JSON, nullable=False, default=dict)
    preview_database = Column(String(255), nullable=True)

    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    last_activity_at = Column(DateTime(timezone=True), nullable=True, index=True)
    destroyed_at = Column(DateTime(timezone=True), nullable=True)
