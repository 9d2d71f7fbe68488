"""Sandbox orchestrator: FastAPI application entry point."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other orchestrator imports: structlog
# caches the processor chain on first use.
from orchestrator.core.config import get_settings as _get_settings_early
from orchestrator.core.logging import configure_structlog

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else _early_settings.log_level,
    json_logs=not _early_settings.debug,
)

import structlog  # noqa: E402
from fastapi import FastAPI, HTTPException, Request  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from orchestrator.api.routes import api_router  # noqa: E402
from orchestrator.bootstrap import build_components  # noqa: E402
from orchestrator.core.config import get_settings  # noqa: E402
from orchestrator.core.exceptions import (  # noqa: E402
    InvalidJobTransitionError,
    NotFoundError,
    OperationFailedError,
    OrchestratorError,
    ProvisioningError,
    RestartLimitExceededError,
    SandboxUnavailableError,
)
from orchestrator.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis  # noqa: E402
from orchestrator.middleware.correlation import get_correlation_id, setup_correlation_middleware  # noqa: E402

logger = structlog.get_logger(__name__)

# Most specific first
ERROR_STATUS: list[tuple[type[OrchestratorError], int]] = [
    (NotFoundError, 404),
    (SandboxUnavailableError, 409),
    (InvalidJobTransitionError, 409),
    (RestartLimitExceededError, 409),
    (ProvisioningError, 502),
    (OperationFailedError, 502),
]


def status_for(exc: OrchestratorError) -> int:
    for exc_type, status_code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db(create_tables=settings.debug)
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    components = build_components(settings, get_session_factory(), get_redis())
    app.state.session_factory = components.session_factory
    app.state.redis = components.redis
    app.state.sandbox_manager = components.sandbox_manager
    app.state.coordinator = components.coordinator
    app.state.plan_service = components.plan_service

    scheduler_task = None
    if settings.run_workers_in_api:
        components.build_background()
        components.pool.start()
        scheduler_task = asyncio.create_task(components.scheduler.run())
        logger.info("workers_started_in_api")

    yield

    logger.info("shutdown_begin")
    if components.pool is not None:
        await components.pool.stop()
    if scheduler_task is not None:
        components.scheduler.stop()
        await scheduler_task
    await components.close()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def orchestrator_exception_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    """Map the orchestrator error taxonomy onto HTTP status codes."""
    status_code = status_for(exc)
    debug_id = str(uuid.uuid4())

    log = logger.error if status_code >= 500 else logger.info
    log(
        "orchestrator_error",
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
    )

    content = {"detail": str(exc), "error_type": type(exc).__name__, "debug_id": debug_id}
    if status_code == 500:
        content["detail"] = "Internal server error"
    return JSONResponse(status_code=status_code, content=content)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """HTTPException with debug_id tracking."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: log with traceback, return a generic 500."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(OrchestratorError)(orchestrator_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)


def create_app(lifespan_handler=lifespan) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Per-session sandbox lifecycle and job pipeline",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan_handler,
    )

    setup_correlation_middleware(app)
    install_exception_handlers(app)
    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "orchestrator.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug,
    )
