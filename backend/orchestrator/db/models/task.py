"""Task model: an ordered unit of work inside a build job."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from orchestrator.db.base import Base, utcnow


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)

    external_id = Column(String(255), nullable=True)  # ticket id from the plan, e.g. "T-003"
    title = Column(Text, nullable=False)
    description = Column(Text, nullable=False, default="")
    type = Column(String(50), nullable=True)
    category = Column(String(100), nullable=True)
    estimated_effort = Column(Integer, nullable=True)

    position = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="todo")  # todo | in_progress | done | error | cancelled
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __init__(self, **kwargs: object) -> None:
        kwargs.setdefault("status", "todo")
        kwargs.setdefault("description", "")
        super().__init__(**kwargs)
