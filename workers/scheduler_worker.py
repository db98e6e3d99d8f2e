"""
Scheduler worker: runs the opportunity alert and reminder loops without the API.

Deploy one of these per environment, or several with SCHEDULER_LOCK_ENABLED
so that only the lock holder ticks.
"""
import asyncio
import signal

from quotebid.core.config import settings
from quotebid.core.logging import configure_structlog, get_structlog_logger
from quotebid.db.session import dispose_engine, get_session_factory
from quotebid.services import build_services
from quotebid.services.redis import close_redis_pool, init_redis_pool

configure_structlog()
logger = get_structlog_logger()


async def worker_main() -> None:
    """
    Start both polling loops and block until SIGINT or SIGTERM.
    """
    logger.info(
        "scheduler_worker.starting",
        environment=settings.environment,
        lock_enabled=settings.scheduler_lock_enabled,
    )

    if settings.scheduler_lock_enabled:
        await init_redis_pool()

    services = build_services(get_session_factory())
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: stop.set())

    services.start_loops()
    try:
        await stop.wait()
    finally:
        logger.info("scheduler_worker.stopping", loops=services.loop_status())
        await services.stop_loops()
        if settings.scheduler_lock_enabled:
            await close_redis_pool()
        await dispose_engine()

    logger.info("scheduler_worker.stopped")


if __name__ == "__main__":
    asyncio.run(worker_main())
