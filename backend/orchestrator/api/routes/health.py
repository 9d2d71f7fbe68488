import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Liveness. Returns 503 while the process is shutting down."""
    if getattr(request.app.state, "shutting_down", False):
        return JSONResponse(
            status_code=503,
            content={"status": "shutting_down", "service": "sandbox-orchestrator"},
        )
    return {"status": "healthy", "service": "sandbox-orchestrator"}


@router.get("/ready")
async def readiness_check(request: Request):
    """Readiness check - verifies the database and Redis are reachable."""
    checks = {"database": False, "redis": False}

    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("readiness_database_failed", error=str(e))

    try:
        await request.app.state.redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.error("readiness_redis_failed", error=str(e))

    all_healthy = all(checks.values())
    status_code = 200 if all_healthy else 503

    return JSONResponse(
        status_code=status_code,
        content={"status": "ready" if all_healthy else "degraded", "checks": checks},
    )
