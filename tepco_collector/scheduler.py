"""Cron-style scheduling of the collection jobs.

Each task runs in its own asyncio task that sleeps until the next fire time
computed by an APScheduler CronTrigger. A failing run is logged and the task
waits for its next fire time; runs of the same task never overlap.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger("tepco-collector.scheduler")

TaskFunc = Callable[[], Awaitable[object]]


class ScheduledTask:
    """A named job and the cron expression it runs on."""

    def __init__(self, name: str, cron_expr: str, func: TaskFunc, tz: ZoneInfo):
        self.name = name
        self.cron_expr = cron_expr
        self.func = func
        self.trigger = CronTrigger.from_crontab(cron_expr, timezone=tz)
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None

    def next_fire_time(self, now: datetime) -> Optional[datetime]:
        return self.trigger.get_next_fire_time(self.last_run, now)


class Scheduler:
    """Runs registered tasks on their cron schedules until stopped."""

    def __init__(self, tz: str = "Asia/Tokyo"):
        self.tz = ZoneInfo(tz)
        self.tasks: Dict[str, ScheduledTask] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def running(self) -> bool:
        return bool(self._running)

    def add_task(self, name: str, cron_expr: str, func: TaskFunc) -> ScheduledTask:
        """Register a task.

        Raises:
            ValueError: If the cron expression is invalid or the name is taken
        """
        if name in self.tasks:
            raise ValueError(f"Task already registered: {name}")
        task = ScheduledTask(name, cron_expr, func, self.tz)
        self.tasks[name] = task
        self._locks[name] = asyncio.Lock()
        return task

    def start(self):
        """Start a loop for every registered task. Must be called inside a running event loop."""
        for name, task in self.tasks.items():
            if name in self._running:
                continue
            self._running[name] = asyncio.create_task(self._run_task(task), name=f"scheduler-{name}")
            logger.info(f"Scheduled {name}: '{task.cron_expr}' ({self.tz.key})")

    async def stop(self):
        """Cancel all task loops and wait for them to finish."""
        tasks = list(self._running.values())
        self._running.clear()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if tasks:
            logger.info("Scheduler stopped")

    async def run_now(self, name: str):
        """Run a task immediately, outside its schedule.

        Raises:
            KeyError: If no task has that name
        """
        return await self._execute(self.tasks[name])

    async def _run_task(self, task: ScheduledTask):
        while True:
            now = datetime.now(self.tz)
            task.next_run = task.next_fire_time(now)
            if task.next_run is None:
                logger.info(f"{task.name} has no further fire times")
                return

            delay = (task.next_run - now).total_seconds()
            logger.debug(f"{task.name} next run at {task.next_run.isoformat()}")
            await asyncio.sleep(max(delay, 0))
            task.last_run = task.next_run
            await self._execute(task)

    async def _execute(self, task: ScheduledTask):
        async with self._locks[task.name]:
            logger.info(f"Running scheduled task: {task.name}")
            try:
                return await task.func()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Scheduled task {task.name} failed: {e}")
                return None


def register_jobs(scheduler: Scheduler, jobs, settings) -> Scheduler:
    """Register the daily, token check, weekly and cleanup jobs."""
    scheduler.add_task("daily_collection", settings.daily_collection_cron, jobs.collect_yesterday)
    scheduler.add_task("token_check", settings.token_check_cron, jobs.check_token)
    scheduler.add_task("weekly_reconciliation", settings.reconciliation_cron, jobs.weekly_reconciliation)
    scheduler.add_task("log_cleanup", settings.log_retention_cron, jobs.cleanup_old_logs)
    return scheduler
