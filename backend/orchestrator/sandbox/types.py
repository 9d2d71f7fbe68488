"""Sandbox value types shared by the registry, manager, client and API."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SandboxStatus(str, Enum):
    """Sandbox lifecycle states."""

    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    DESTROYED = "destroyed"


class ServicesMode(str, Enum):
    """Whether the sandbox runs a preview dev server next to the agent."""

    FULL = "full"
    AGENT_ONLY = "agent-only"


class SandboxSpec(BaseModel):
    """Request to create (or reuse) the sandbox for a session."""

    session_id: str
    project_id: str
    repo_url: str
    branch: str = "main"
    credential: str | None = None  # VCS token used for clone/pull inside the sandbox
    services_mode: ServicesMode = ServicesMode.FULL
    org_model_api_key: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class RuntimeSpec(BaseModel):
    """What the runtime adapter needs to boot one environment."""

    name: str
    image: str
    env: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    agent_port: int
    preview_port: int | None = None
    preview_host: str | None = None


class RuntimeHandle(BaseModel):
    """What the runtime adapter returns once an environment exists."""

    address: str
    resource_ref: str
    preview_url: str | None = None
    host_port: int | None = None
    refs: dict[str, Any] = Field(default_factory=dict)


class Sandbox(BaseModel):
    """Read model of a registry row."""

    id: str
    session_id: str
    project_id: str
    status: SandboxStatus
    services_mode: ServicesMode
    runtime: str
    branch: str | None = None
    address: str | None = None
    preview_url: str | None = None
    resource_ref: str | None = None
    resource_refs: dict[str, Any] = Field(default_factory=dict)
    preview_database: str | None = None
    error_message: str | None = None
    created_at: datetime
    last_activity_at: datetime | None = None
    destroyed_at: datetime | None = None


class FileEntry(BaseModel):
    name: str
    path: str
    type: str = "file"  # file | directory
    size: int | None = None
    children: list["FileEntry"] | None = None


class AgentHealth(BaseModel):
    """Health report from the agent inside a reachable sandbox."""

    alive: bool
    ready: bool = False
    processing: bool = False
    uptime: float | None = None
    memory: dict[str, Any] | None = None


class GitRevertResult(BaseModel):
    success: bool
    commit_sha: str | None = None
    error: str | None = None


class GitPullResult(BaseModel):
    success: bool
    changed: bool = False
    commits_pulled: int = 0
    error: str | None = None


class DestroyResult(BaseModel):
    """Aggregate outcome of a batch destroy."""

    destroyed: int = 0
    failed: int = 0
    errors: dict[str, str] = Field(default_factory=dict)  # session_id -> error
