"""Fixed-interval runner for the reconciliation jobs.

Each job gets its own timer task. A tick starts the job without waiting
for the previous tick, and a per-job guard skips a tick while an earlier
run of the same job is still in flight.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta

from sqlmodel import Session

from guestgate import database
from guestgate.config import Settings
from guestgate.controller.base import BaseController
from guestgate.notify.notifier import Notifier
from guestgate.scheduler.jobs import (
    DEFAULT_REMINDER_THROTTLE,
    DEFAULT_RETENTION,
    JobResult,
    SchedulerState,
    cache_dpi_stats,
    run_cleanup,
    send_expiry_reminders,
    sync_authorization_mismatches,
    sync_connection_events,
)

logger = logging.getLogger(__name__)

JOB_NAMES = ("connections", "dpi", "authorizations", "cleanup", "reminders")

DEFAULT_INTERVALS: dict[str, float] = {
    "connections": 60,
    "dpi": 300,
    "authorizations": 300,
    "cleanup": 300,
    "reminders": 300,
}

# Upper bound on one job run, so a hung controller cannot pin the guard
DEFAULT_JOB_TIMEOUT = 120.0

SKIPPED_MESSAGE = "Skipped - already running"


class UnknownJobError(ValueError):
    pass


class ReconciliationScheduler:
    """Runs the reconciliation jobs on timers and on demand."""

    def __init__(
        self,
        controller: BaseController | None,
        notifier: Notifier,
        intervals: dict[str, float] | None = None,
        retention: timedelta = DEFAULT_RETENTION,
        reminder_throttle: timedelta = DEFAULT_REMINDER_THROTTLE,
        dpi_top_apps_limit: int = 10,
        job_timeout: float = DEFAULT_JOB_TIMEOUT,
        session_factory: Callable[[], Session] | None = None,
    ) -> None:
        self.controller = controller
        self.notifier = notifier
        self.intervals = {**DEFAULT_INTERVALS, **(intervals or {})}
        self.retention = retention
        self.reminder_throttle = reminder_throttle
        self.dpi_top_apps_limit = dpi_top_apps_limit
        self.job_timeout = job_timeout
        self.state = SchedulerState()
        self._session_factory = session_factory
        self._running_jobs: set[str] = set()
        self._timers: list[asyncio.Task[None]] = []
        self._runs: set[asyncio.Task[JobResult]] = set()
        self._running = False

    @classmethod
    def from_settings(
        cls,
        cfg: Settings,
        controller: BaseController | None,
        notifier: Notifier,
    ) -> "ReconciliationScheduler":
        return cls(
            controller=controller,
            notifier=notifier,
            intervals={
                "connections": cfg.connection_sync_interval,
                "dpi": cfg.dpi_cache_interval,
                "authorizations": cfg.auth_sync_interval,
                "cleanup": cfg.cleanup_interval,
                "reminders": cfg.cleanup_interval,
            },
            retention=timedelta(days=cfg.retention_days),
            reminder_throttle=timedelta(seconds=cfg.expiry_reminder_throttle),
            dpi_top_apps_limit=cfg.dpi_top_apps_limit,
        )

    @property
    def running(self) -> bool:
        return self._running

    def is_job_running(self, name: str) -> bool:
        return name in self._running_jobs

    def _open_session(self) -> Session:
        if self._session_factory is not None:
            return self._session_factory()
        return Session(database.engine)

    def _job(self, name: str, session: Session) -> Awaitable[JobResult]:
        controller = self.controller
        if name == "cleanup":
            return run_cleanup(session, controller, self.retention)
        if name == "reminders":
            return send_expiry_reminders(
                session, self.notifier, self.state, self.reminder_throttle
            )
        if controller is None:
            return _no_controller(name)
        if name == "connections":
            return sync_connection_events(session, controller, self.state)
        if name == "dpi":
            return cache_dpi_stats(session, controller, self.dpi_top_apps_limit)
        if name == "authorizations":
            return sync_authorization_mismatches(session, controller)
        raise UnknownJobError(name)

    async def run_job(self, name: str) -> JobResult:
        """Run one job now, unless a previous run of it is still in flight."""
        if name not in JOB_NAMES:
            raise UnknownJobError(name)
        if name in self._running_jobs:
            logger.info("Job %s still running, skipping this run", name)
            return JobResult(success=True, message=SKIPPED_MESSAGE, details={"job": name})

        self._running_jobs.add(name)
        try:
            with self._open_session() as session:
                result = await asyncio.wait_for(self._job(name, session), self.job_timeout)
        except TimeoutError:
            logger.error("Job %s timed out after %.0fs", name, self.job_timeout)
            result = JobResult(success=False, message=f"Job {name} timed out")
        except Exception as e:
            logger.exception("Job %s crashed", name)
            result = JobResult(success=False, message=f"Job {name} failed: {e}")
        finally:
            self._running_jobs.discard(name)

        _log_result(name, result)
        return result

    async def run_all(self) -> dict[str, JobResult]:
        """Run every job once, in order."""
        return {name: await self.run_job(name) for name in JOB_NAMES}

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for name in JOB_NAMES:
            interval = self.intervals[name]
            if interval <= 0:
                logger.info("Job %s disabled (interval=%s)", name, interval)
                continue
            self._timers.append(asyncio.create_task(self._timer(name, interval)))
        logger.info(
            "Scheduler started: %s",
            ", ".join(f"{n}={self.intervals[n]}s" for n in JOB_NAMES if self.intervals[n] > 0),
        )

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._timers, *self._runs]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timers.clear()
        self._runs.clear()
        logger.info("Scheduler stopped")

    async def _timer(self, name: str, interval: float) -> None:
        while self._running:
            await asyncio.sleep(interval)
            if not self._running:
                break
            run = asyncio.create_task(self.run_job(name))
            self._runs.add(run)
            run.add_done_callback(self._runs.discard)


async def _no_controller(name: str) -> JobResult:
    return JobResult(
        success=True,
        message="Skipped - no network controller configured",
        details={"job": name},
    )


def _log_result(name: str, result: JobResult) -> None:
    if result.success:
        logger.info("Job %s: %s %s", name, result.message, result.details or "")
    else:
        logger.error("Job %s: %s %s", name, result.message, result.details or "")
