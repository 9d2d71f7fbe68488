from fastapi import APIRouter, Depends

from orchestrator.api.routes import health, jobs, sandboxes
from orchestrator.core.auth import require_service_token

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(sandboxes.router, tags=["sandboxes"], dependencies=[Depends(require_service_token)])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"], dependencies=[Depends(require_service_token)])
