"""Standalone worker process: job worker roles plus the idle-sandbox cleanup scheduler.

Run with ``python -m orchestrator.worker_main``.
"""

import asyncio
import signal

import structlog

from orchestrator.bootstrap import build_components
from orchestrator.core.config import get_settings
from orchestrator.core.logging import configure_structlog
from orchestrator.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis

logger = structlog.get_logger(__name__)


async def run() -> None:
    settings = get_settings()
    await init_db(create_tables=False)
    await init_redis()

    components = build_components(settings, get_session_factory(), get_redis())
    components.build_background()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    components.pool.start()
    scheduler_task = asyncio.create_task(components.scheduler.run())
    logger.info("worker_process_started", roles=[w.kind.value for w in components.pool.workers])

    await stop.wait()

    logger.info("worker_process_stopping")
    components.scheduler.stop()
    await components.pool.stop()
    await scheduler_task
    await components.close()
    await close_redis()
    await close_db()
    logger.info("worker_process_stopped")


def main() -> None:
    settings = get_settings()
    configure_structlog(log_level=settings.log_level, json_logs=not settings.debug)
    asyncio.run(run())


if __name__ == "__main__":
    main()
