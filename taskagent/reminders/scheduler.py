from __future__ import annotations

import asyncio
import datetime as _dt
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from taskagent.models.state import ReminderJob, Task, reminder_key, utc_now
from taskagent.observability import get_json_logger

FireCallback = Callable[[str, str, _dt.datetime], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Timer(Protocol):
    """Scheduling primitive: run ``callback`` once after ``delay`` seconds."""

    def after(self, delay: float, callback: Callable[[], Awaitable[None]]) -> TimerHandle: ...


class AsyncioTimer:
    """Timer on the running event loop; nothing survives a process restart."""

    def __init__(self) -> None:
        self._inflight: set[asyncio.Task[Any]] = set()

    def after(self, delay: float, callback: Callable[[], Awaitable[None]]) -> TimerHandle:
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            task = loop.create_task(callback())  # type: ignore[arg-type]
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

        return loop.call_later(max(0.0, delay), _fire)


def offset_label(hours: float) -> str:
    value = int(hours) if float(hours).is_integer() else hours
    return f"{value}h_before"


class ReminderScheduler:
    """Arms reminder timers and keeps the durable job table in step with them.

    ``jobs`` and ``fired`` are the agent state's own collections; every change made
    here is persisted with the next snapshot.
    """

    def __init__(
        self,
        timer: Timer,
        fire: FireCallback,
        jobs: list[ReminderJob],
        fired: set[str],
        *,
        clock: Callable[[], _dt.datetime] = utc_now,
    ) -> None:
        self._timer = timer
        self._fire = fire
        self._jobs = jobs
        self._fired = fired
        self._clock = clock
        self._handles: dict[str, TimerHandle] = {}
        self._logger = get_json_logger("taskagent.reminders")

    def plan(self, task: Task, intervals: Sequence[float]) -> list[ReminderJob]:
        """Jobs for every offset whose fire time is strictly in the future."""
        if task.due_date is None:
            return []
        now = self._clock()
        jobs: list[ReminderJob] = []
        for hours in intervals:
            fire_at = task.due_date - _dt.timedelta(hours=hours)
            if fire_at > now:
                jobs.append(
                    ReminderJob(task_id=task.id, offset_label=offset_label(hours), fire_at=fire_at)
                )
        return jobs

    def schedule_reminders(self, task: Task, intervals: Sequence[float]) -> list[ReminderJob]:
        """Replace the task's pending jobs with a fresh plan and arm each one."""
        self.cancel_task(task.id)
        jobs = self.plan(task, intervals)
        for job in jobs:
            self._fired.discard(job.key)
            self._jobs.append(job)
            self._arm(job)
        self._logger.info(
            "reminders scheduled",
            extra={
                "event": "reminders_scheduled",
                "task_id": task.id,
                "attributes": {"labels": [j.offset_label for j in jobs]},
            },
        )
        return jobs

    def rearm(self) -> int:
        """Re-arm persisted jobs after a restart; jobs already past are dropped."""
        now = self._clock()
        armed = 0
        for job in list(self._jobs):
            if job.key in self._fired or job.fire_at <= now:
                self._jobs.remove(job)
                self._logger.info(
                    "reminder dropped on restart",
                    extra={
                        "event": "reminder_dropped",
                        "task_id": job.task_id,
                        "attributes": {"label": job.offset_label},
                    },
                )
                continue
            self._arm(job)
            armed += 1
        return armed

    def cancel_task(self, task_id: str) -> None:
        for job in [j for j in self._jobs if j.task_id == task_id]:
            self._jobs.remove(job)
            handle = self._handles.pop(job.key, None)
            if handle is not None:
                handle.cancel()

    def forget_task(self, task_id: str) -> None:
        """Cancel the task's jobs and drop its fired keys; used once the task is deleted."""
        self.cancel_task(task_id)
        prefix = reminder_key(task_id, "")
        for key in [k for k in self._fired if k.startswith(prefix)]:
            self._fired.discard(key)

    def claim(self, task_id: str, label: str, fire_at: _dt.datetime | None = None) -> bool:
        """Mark one reminder as fired.

        Returns False when it already fired, or when ``fire_at`` no longer matches the
        job table (the due date moved or the task was deleted after arming).
        """
        key = reminder_key(task_id, label)
        if key in self._fired:
            return False
        job = next((j for j in self._jobs if j.key == key), None)
        if fire_at is not None and (job is None or job.fire_at != fire_at):
            return False
        if job is not None:
            self._jobs.remove(job)
        self._handles.pop(key, None)
        self._fired.add(key)
        return True

    def pending(self) -> list[ReminderJob]:
        return list(self._jobs)

    def _arm(self, job: ReminderJob) -> None:
        delay = (job.fire_at - self._clock()).total_seconds()

        async def _callback() -> None:
            await self._fire(job.task_id, job.offset_label, job.fire_at)

        self._handles[job.key] = self._timer.after(delay, _callback)


__all__ = [
    "AsyncioTimer",
    "FireCallback",
    "ReminderScheduler",
    "Timer",
    "TimerHandle",
    "offset_label",
]
