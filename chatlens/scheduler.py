"""Task scheduler — per-task timers and the one-run-per-task guard."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from config import settings
from chatlens.exceptions import ScheduleError
from chatlens.models import Once, Recurring, ScheduleSpec, Task
from chatlens.stores import TaskStore

logger = logging.getLogger(__name__)

WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def describe_schedule(schedule: ScheduleSpec | None) -> str:
    if isinstance(schedule, Once):
        return f"once at {schedule.instant.strftime('%Y-%m-%d %H:%M')}"
    if isinstance(schedule, Recurring):
        return f"cron '{schedule.cron_expression}'"
    return "manual"


def crontab_day_of_week(value: str) -> str:
    """Rewrite crontab weekday numbers (0 and 7 are Sunday) as names.

    APScheduler numbers weekdays from Monday, so passing crontab numbers
    through would shift every schedule by a day.
    """
    parts = []
    for part in value.split(","):
        expr, slash, step = part.partition("/")
        bounds = expr.split("-")
        if not all(b.isdigit() and int(b) <= 7 for b in bounds):
            parts.append(part)
            continue
        names = [WEEKDAY_NAMES[int(b) % 7] for b in bounds]
        # Sunday opens a crontab range but closes an APScheduler one
        if len(names) == 2 and names[0] == "sun" and names[1] != "sun":
            parts.append("sun")
            names[0] = "mon"
        parts.append("-".join(names) + slash + step)
    return ",".join(parts)


def build_trigger(schedule: ScheduleSpec, tz: tzinfo) -> BaseTrigger:
    """Turn a schedule spec into an APScheduler trigger.

    Raises:
        ScheduleError: If the cron expression is invalid or the schedule type is unknown.
    """
    if isinstance(schedule, Recurring):
        fields = schedule.cron_expression.split()
        if len(fields) != 5:
            raise ScheduleError(
                f"Invalid cron expression '{schedule.cron_expression}': expected 5 fields, got {len(fields)}"
            )
        minute, hour, day, month, day_of_week = fields
        try:
            return CronTrigger(
                minute=minute, hour=hour, day=day, month=month,
                day_of_week=crontab_day_of_week(day_of_week), timezone=tz,
            )
        except ValueError as e:
            raise ScheduleError(f"Invalid cron expression '{schedule.cron_expression}': {e}") from e
    if isinstance(schedule, Once):
        return DateTrigger(run_date=schedule.instant, timezone=tz)
    raise ScheduleError(f"Unsupported schedule: {schedule!r}")


@dataclass
class ScheduledTask:
    """Registry entry for one task's timer."""

    task_id: int
    name: str
    schedule: ScheduleSpec
    trigger: BaseTrigger
    registered_at: datetime
    next_run: datetime | None = None
    timer: asyncio.Task | None = None


@dataclass
class Scheduler:
    """Owns the task registry and the per-task run locks.

    ``run_task(task_id)`` is the blocking pipeline entry point; it runs in
    a worker thread so timers keep ticking while a task runs. Must be used
    from inside a running event loop.
    """

    run_task: Callable[[int], Any]
    tz: tzinfo = field(default_factory=lambda: settings.tz)
    _registered: dict[int, ScheduledTask] = field(default_factory=dict)
    _locks: dict[int, asyncio.Lock] = field(default_factory=dict)
    _background: set[asyncio.Task] = field(default_factory=set)
    _heartbeat_task: asyncio.Task | None = None

    # --- Registry ---

    def register(self, task: Task) -> bool:
        """(Re)register a task's timer. Returns False if nothing was scheduled.

        Raises:
            ScheduleError: If the task's schedule cannot become a trigger.
        """
        self.unregister(task.id)

        if not task.enabled or task.schedule is None:
            logger.info("Task %s has no active schedule, not registering", task.id)
            return False

        schedule = task.schedule
        if isinstance(schedule, Once) and schedule.instant.tzinfo is None:
            schedule = Once(schedule.instant.replace(tzinfo=self.tz))

        trigger = build_trigger(schedule, self.tz)
        now = datetime.now(self.tz)
        if isinstance(schedule, Once) and schedule.instant <= now:
            logger.warning(
                "Task %s one-shot time %s has already passed, not registering",
                task.id, schedule.instant.isoformat(),
            )
            return False

        entry = ScheduledTask(
            task_id=task.id,
            name=task.name,
            schedule=schedule,
            trigger=trigger,
            registered_at=now,
        )
        entry.timer = asyncio.create_task(self._timer_loop(entry))
        self._registered[task.id] = entry
        logger.info("Registered task %s (%s): %s", task.id, task.name, describe_schedule(schedule))
        return True

    def unregister(self, task_id: int) -> bool:
        entry = self._registered.pop(task_id, None)
        if entry is None:
            return False
        if entry.timer and entry.timer is not asyncio.current_task():
            entry.timer.cancel()
        logger.info("Unregistered task %s", task_id)
        return True

    # --- Running ---

    def is_running(self, task_id: int) -> bool:
        lock = self._locks.get(task_id)
        return lock is not None and lock.locked()

    def running_count(self) -> int:
        return sum(1 for lock in self._locks.values() if lock.locked())

    async def try_run(self, task_id: int) -> bool:
        """Run a task unless it is already running.

        A fire for a running task is dropped, not queued. Returns True if
        this call executed the pipeline.
        """
        lock = self._locks.setdefault(task_id, asyncio.Lock())
        if lock.locked():
            logger.warning("Task %s is already running, dropping this trigger", task_id)
            return False

        async with lock:
            others = self.running_count() - 1
            if others > 0:
                logger.warning(
                    "Task %s starting while %d other task run(s) are active "
                    "(shared provider rate limits)",
                    task_id, others,
                )
            logger.info("Task %s: run started", task_id)
            try:
                await asyncio.to_thread(self.run_task, task_id)
            except Exception as e:
                logger.error("Task %s run failed: %s", task_id, e)
            else:
                logger.info("Task %s: run finished", task_id)
            return True

    def trigger(self, task_id: int) -> asyncio.Task:
        """Manually fire a task in the background."""
        return self._spawn(self.try_run(task_id))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _timer_loop(self, entry: ScheduledTask) -> None:
        previous: datetime | None = None
        while True:
            now = datetime.now(self.tz)
            if previous is not None and now <= previous:
                now = previous + timedelta(microseconds=1)
            entry.next_run = entry.trigger.get_next_fire_time(None, now)
            if entry.next_run is None:
                break

            wait_seconds = (entry.next_run - datetime.now(self.tz)).total_seconds()
            logger.info(
                "Task %s: next run at %s (in %.0f minutes)",
                entry.task_id, entry.next_run.strftime("%Y-%m-%d %H:%M"), wait_seconds / 60,
            )
            await asyncio.sleep(max(wait_seconds, 0))
            previous = entry.next_run
            self._spawn(self.try_run(entry.task_id))

            if isinstance(entry.schedule, Once):
                break

        if self._registered.get(entry.task_id) is entry:
            self.unregister(entry.task_id)

    # --- Lifecycle ---

    async def start(self, task_store: TaskStore) -> int:
        """Register every enabled task and start the heartbeat.

        Returns:
            Number of tasks registered.
        """
        count = 0
        for task in task_store.get_enabled_tasks():
            try:
                if self.register(task):
                    count += 1
            except ScheduleError as e:
                logger.error("Task %s not scheduled: %s", task.id, e)
        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info("Scheduler started with %d task(s)", count)
        return count

    async def stop(self) -> None:
        tasks = [e.timer for e in self._registered.values() if e.timer]
        self._registered.clear()
        if self._heartbeat_task:
            tasks.append(self._heartbeat_task)
            self._heartbeat_task = None
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(settings.heartbeat_minutes * 60)
            logger.info(
                "Scheduler heartbeat: %d registered, %d running",
                len(self._registered), self.running_count(),
            )

    # --- Introspection ---

    def status(self, task_id: int) -> dict:
        entry = self._registered.get(task_id)
        return {
            "task_id": task_id,
            "registered": entry is not None,
            "running": self.is_running(task_id),
            "schedule": describe_schedule(entry.schedule) if entry else None,
            "next_run": entry.next_run.isoformat() if entry and entry.next_run else None,
            "registered_at": entry.registered_at.isoformat() if entry else None,
        }

    def all_status(self) -> list[dict]:
        ids = set(self._registered) | {tid for tid in self._locks if self.is_running(tid)}
        return [self.status(tid) for tid in sorted(ids)]
