"""
Background jobs for periodic maintenance.
Each job is an asyncio task owned by the Scheduler, which the application
starts on startup and stops on shutdown.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from hemobank.core.config import settings
from hemobank.database import utcnow
from hemobank.services.notification_service import notification_service
from hemobank.services.stock_monitor import stock_monitor
from hemobank.services.unit_store import unit_store

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Runs `func` every `interval` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        run_on_start: bool = True,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_on_start = run_on_start
        self.running = False
        self.task: Optional[asyncio.Task] = None
        self.last_run: Optional[datetime] = None
        self.last_result: Any = None
        self.last_error: Optional[str] = None
        self.run_count = 0
        self.next_run: Optional[datetime] = None

    def start(self) -> None:
        if self.running:
            logger.info(f"Job {self.name} is already running")
            return
        self.running = True
        self.task = asyncio.get_running_loop().create_task(self._loop(), name=f"job:{self.name}")
        logger.info(f"Started job {self.name} (interval={self.interval}s)")

    async def _loop(self) -> None:
        try:
            if self.run_on_start:
                await self.run_once()
            while self.running:
                self.next_run = utcnow() + timedelta(seconds=self.interval)
                await asyncio.sleep(self.interval)
                await self.run_once()
        except asyncio.CancelledError:
            logger.info(f"Job {self.name} cancelled")
            raise

    async def run_once(self) -> Any:
        """Run the job now. Errors are recorded and logged, never raised."""
        self.last_run = utcnow()
        self.run_count += 1
        try:
            self.last_result = await self.func()
            self.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"Job {self.name} failed: {e}", exc_info=True)
            return None
        return self.last_result

    async def stop(self) -> None:
        self.running = False
        self.next_run = None
        if self.task and not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        self.task = None
        logger.info(f"Job {self.name} stopped")

    def status(self) -> dict:
        return {
            "name": self.name,
            "running": self.running,
            "interval": self.interval,
            "last_run": self.last_run,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "next_run": self.next_run,
        }


class Scheduler:
    def __init__(self):
        self.jobs: dict[str, PeriodicJob] = {}

    def add(self, job: PeriodicJob) -> PeriodicJob:
        self.jobs[job.name] = job
        return job

    def get(self, name: str) -> Optional[PeriodicJob]:
        return self.jobs.get(name)

    def start(self) -> None:
        for job in self.jobs.values():
            job.start()

    async def stop(self) -> None:
        await asyncio.gather(*(job.stop() for job in self.jobs.values()), return_exceptions=True)

    def status(self) -> list[dict]:
        return [job.status() for job in self.jobs.values()]


def build_scheduler(session_factory: async_sessionmaker) -> Scheduler:
    """Stock monitor, expiry sweep and notification cleanup on their configured intervals."""

    async def check_stock():
        report = await stock_monitor.run_sweep(session_factory)
        return report.to_dict()

    async def expire_units():
        async with session_factory() as db:
            return await unit_store.sweep_expired(db)

    async def cleanup_notifications():
        async with session_factory() as db:
            return await notification_service.cleanup_expired(db)

    scheduler = Scheduler()
    scheduler.add(PeriodicJob("stock_monitor", settings.STOCK_MONITOR_INTERVAL, check_stock))
    scheduler.add(PeriodicJob("expiry_sweep", settings.EXPIRY_SWEEP_INTERVAL, expire_units))
    scheduler.add(PeriodicJob("notification_cleanup", settings.NOTIFICATION_CLEANUP_INTERVAL, cleanup_notifications))
    return scheduler
