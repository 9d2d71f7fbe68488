"""Dependencies resolving the components wired onto ``app.state`` at startup."""

from fastapi import Request

from orchestrator.queue.coordinator import JobCoordinator
from orchestrator.sandbox.manager import SandboxManager
from orchestrator.services.plan_service import PlanService


def get_sandbox_manager(request: Request) -> SandboxManager:
    return request.app.state.sandbox_manager


def get_coordinator(request: Request) -> JobCoordinator:
    return request.app.state.coordinator


def get_plan_service(request: Request) -> PlanService:
    return request.app.state.plan_service
