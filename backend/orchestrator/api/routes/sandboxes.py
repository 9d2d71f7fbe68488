"""Sandbox lifecycle, file/git proxy and plan streaming routes."""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from orchestrator.api.deps import get_plan_service, get_sandbox_manager
from orchestrator.core.exceptions import NotFoundError
from orchestrator.sandbox.client import SandboxClient
from orchestrator.sandbox.manager import SandboxManager
from orchestrator.sandbox.types import (
    AgentHealth,
    DestroyResult,
    FileEntry,
    GitRevertResult,
    Sandbox,
    SandboxSpec,
)
from orchestrator.services.plan_service import PlanService

logger = structlog.get_logger(__name__)

router = APIRouter()


class WriteFileRequest(BaseModel):
    content: str


class RevertRequest(BaseModel):
    commit_sha: str = Field(..., min_length=7)
    credential: str | None = None


class PlanRequest(BaseModel):
    project_id: str
    prompt: str = Field(..., min_length=1)
    resume: str | None = None
    build_payload: dict[str, Any] = Field(default_factory=dict)


class AgentHealthResponse(BaseModel):
    reachable: bool
    health: AgentHealth | None = None


async def _require_sandbox(manager: SandboxManager, session_id: str) -> Sandbox:
    sandbox = await manager.get_sandbox(session_id)
    if sandbox is None:
        raise NotFoundError(f"No sandbox for session {session_id}")
    return sandbox


async def _live_client(manager: SandboxManager, session_id: str) -> SandboxClient:
    await manager.require_live_sandbox(session_id)
    return manager.client(session_id)


# ----------------------------------------------------------------------
# Lifecycle
# ----------------------------------------------------------------------


@router.post("/sandboxes", response_model=Sandbox)
async def create_sandbox(spec: SandboxSpec, manager: SandboxManager = Depends(get_sandbox_manager)):
    """Create the session's sandbox, or return the one already running."""
    return await manager.create_sandbox(spec)


@router.get("/sandboxes/{session_id}", response_model=Sandbox)
async def get_sandbox(session_id: str, manager: SandboxManager = Depends(get_sandbox_manager)):
    return await _require_sandbox(manager, session_id)


@router.delete("/sandboxes/{session_id}")
async def destroy_sandbox(session_id: str, manager: SandboxManager = Depends(get_sandbox_manager)):
    """Idempotent: destroying a missing sandbox reports ``destroyed: false``."""
    return {"destroyed": await manager.destroy_sandbox(session_id)}


@router.post("/sandboxes/{session_id}/stop", response_model=Sandbox)
async def stop_sandbox(session_id: str, manager: SandboxManager = Depends(get_sandbox_manager)):
    sandbox = await manager.stop_sandbox(session_id)
    if sandbox is None:
        raise NotFoundError(f"No running sandbox for session {session_id}")
    return sandbox


@router.get("/sandboxes/{session_id}/health", response_model=AgentHealthResponse)
async def sandbox_health(session_id: str, manager: SandboxManager = Depends(get_sandbox_manager)):
    health = await manager.client(session_id).get_agent_health()
    return AgentHealthResponse(reachable=health is not None, health=health)


@router.get("/projects/{project_id}/sandboxes", response_model=list[Sandbox])
async def list_project_sandboxes(project_id: str, manager: SandboxManager = Depends(get_sandbox_manager)):
    return await manager.list_project_sandboxes(project_id)


@router.delete("/projects/{project_id}/sandboxes", response_model=DestroyResult)
async def destroy_project_sandboxes(project_id: str, manager: SandboxManager = Depends(get_sandbox_manager)):
    return await manager.destroy_all_project_sandboxes(project_id)


# ----------------------------------------------------------------------
# Files and git
# ----------------------------------------------------------------------


@router.get("/sandboxes/{session_id}/files", response_model=list[FileEntry])
async def list_files(session_id: str, manager: SandboxManager = Depends(get_sandbox_manager)):
    client = await _live_client(manager, session_id)
    return await client.list_files()


@router.get("/sandboxes/{session_id}/files/{path:path}")
async def read_file(session_id: str, path: str, manager: SandboxManager = Depends(get_sandbox_manager)):
    client = await _live_client(manager, session_id)
    content = await client.read_file(path)
    return Response(content=content, media_type="application/octet-stream")


@router.put("/sandboxes/{session_id}/files/{path:path}", status_code=204)
async def write_file(
    session_id: str,
    path: str,
    body: WriteFileRequest,
    manager: SandboxManager = Depends(get_sandbox_manager),
):
    client = await _live_client(manager, session_id)
    await client.write_file(path, body.content)
    return Response(status_code=204)


@router.post("/sandboxes/{session_id}/revert", response_model=GitRevertResult)
async def revert(session_id: str, body: RevertRequest, manager: SandboxManager = Depends(get_sandbox_manager)):
    """Hard-reset the sandbox to ``commit_sha`` and force-push.

    A failed revert is reported with ``success: false``; the sandbox keeps its
    previous state.
    """
    client = await _live_client(manager, session_id)
    return await client.revert(body.commit_sha, body.credential)


# ----------------------------------------------------------------------
# Plan streaming
# ----------------------------------------------------------------------


@router.post("/sandboxes/{session_id}/plan")
async def stream_plan(
    session_id: str,
    body: PlanRequest,
    request: Request,
    plans: PlanService = Depends(get_plan_service),
):
    """Relay the agent's plan events as SSE.

    The first event is awaited before responding, so an unavailable sandbox
    surfaces as an HTTP error rather than inside the stream. A client
    disconnect closes the upstream agent stream.
    """
    events = plans.run_plan(
        session_id,
        body.project_id,
        body.prompt,
        resume=body.resume,
        build_payload=body.build_payload,
    )
    try:
        first = await events.__anext__()
    except StopAsyncIteration:
        first = None

    async def event_generator():
        try:
            if first is None:
                return
            yield first.to_sse()
            async for event in events:
                if await request.is_disconnected():
                    logger.info("plan_stream_client_disconnected", session_id=session_id)
                    return
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
