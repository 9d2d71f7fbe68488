"""Job model: one unit of build / submit / deploy work against a session's sandbox."""

import uuid

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from orchestrator.db.base import Base, utcnow


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(255), nullable=False, index=True)
    project_id = Column(String(255), nullable=False, index=True)

    kind = Column(String(20), nullable=False)  # build | submit | deploy
    status = Column(String(20), nullable=False, default="pending", index=True)
    current_step = Column(Text, nullable=True)

    # Commit the sandbox was at when the job started; restart reverts here
    start_commit = Column(String(64), nullable=True)

    payload = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    # Restart chain
    restart_count = Column(Integer, nullable=False, default=0)
    restarted_from_id = Column(String(36), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def __init__(self, **kwargs: object) -> None:
        # Column defaults only fire on INSERT; keep in-memory instances consistent
        kwargs.setdefault("status", "pending")
        kwargs.setdefault("payload", {})
        kwargs.setdefault("restart_count", 0)
        super().__init__(**kwargs)
