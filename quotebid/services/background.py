from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from quotebid.core.config import settings
from quotebid.core.logging import get_structlog_logger
from quotebid.services.redis import RedisLock, get_redis_client

logger = get_structlog_logger(__name__)

TickFn = Callable[[], Awaitable[object]]


class PollingJob:
    """One scheduled tick with its counters and the optional Redis tick lock.

    A tick that raises is logged and counted; the scheduler keeps firing.
    """

    def __init__(
        self,
        name: str,
        tick: TickFn,
        *,
        interval: float,
        use_lock: Optional[bool] = None,
        lock_ttl: Optional[int] = None,
    ):
        self.name = name
        self.tick = tick
        self.interval = interval
        self.use_lock = settings.scheduler_lock_enabled if use_lock is None else use_lock
        self.lock_ttl = lock_ttl or settings.scheduler_lock_ttl_seconds

        self.ticks = 0
        self.failures = 0
        self.in_flight: Optional[asyncio.Task] = None

    async def run(self) -> None:
        self.ticks += 1
        self.in_flight = asyncio.current_task()
        try:
            if self.use_lock:
                await self._locked_tick()
            else:
                await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error("polling_job.tick_failed", job=self.name, error=str(e), exc_info=True)
        finally:
            self.in_flight = None

    async def _locked_tick(self) -> None:
        client = await get_redis_client()
        async with RedisLock(client, f"scheduler:{self.name}", timeout=self.lock_ttl) as lock:
            if not lock.acquired:
                logger.debug("polling_job.tick_skipped_locked", job=self.name)
                return
            await self.tick()


class PollingScheduler:
    """Fixed-interval background ticks on an APScheduler ``AsyncIOScheduler``.

    Every job runs at most one instance at a time and coalesces missed runs.
    """

    def __init__(self, misfire_grace_time: int = 60):
        self.scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_time,
            },
            timezone="UTC",
        )
        self.jobs: Dict[str, PollingJob] = {}

    def add_job(
        self,
        name: str,
        tick: TickFn,
        *,
        interval: float,
        initial_delay: float = 0,
        use_lock: Optional[bool] = None,
    ) -> PollingJob:
        job = PollingJob(name, tick, interval=interval, use_lock=use_lock)
        self.jobs[name] = job
        self.scheduler.add_job(
            job.run,
            trigger=IntervalTrigger(seconds=interval),
            id=name,
            name=name,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=initial_delay),
            replace_existing=True,
        )
        logger.info(
            "polling_scheduler.job_added",
            job=name,
            interval=interval,
            initial_delay=initial_delay,
            locked=job.use_lock,
        )
        return job

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("polling_scheduler.started", jobs=sorted(self.jobs))

    async def shutdown(self, timeout: float = 5) -> None:
        """Stop firing new ticks, let in-flight ticks finish, then shut down."""
        if not self.scheduler.running:
            return
        self.scheduler.pause()
        pending = [job.in_flight for job in self.jobs.values() if job.in_flight is not None]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout)
            for task in still_running:
                task.cancel()
        self.scheduler.shutdown(wait=False)
        logger.info(
            "polling_scheduler.stopped",
            ticks={name: job.ticks for name, job in self.jobs.items()},
            failures={name: job.failures for name, job in self.jobs.items()},
        )

    def status(self) -> Dict[str, dict]:
        status = {}
        for name, job in self.jobs.items():
            scheduled = self.scheduler.get_job(name)
            next_run = scheduled.next_run_time if scheduled is not None else None
            status[name] = {
                "running": self.scheduler.running and next_run is not None,
                "ticks": job.ticks,
                "failures": job.failures,
                "interval_seconds": job.interval,
                "next_run_time": next_run.isoformat() if next_run else None,
            }
        return status
