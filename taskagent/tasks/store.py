from __future__ import annotations

import datetime as _dt
from collections.abc import Callable

from taskagent.models.state import (
    SearchCriteria,
    Task,
    TaskDraft,
    TaskPriority,
    TaskStatus,
    TaskUpdate,
    utc_now,
)


class TaskStore:
    """In-memory task collection backed by the agent's state list.

    The list is shared with ``AgentState.tasks``; the store never persists on its own,
    the owning agent writes a snapshot after every mutation.
    """

    def __init__(
        self, tasks: list[Task], *, clock: Callable[[], _dt.datetime] = utc_now
    ) -> None:
        self._tasks = tasks
        self._clock = clock

    def create(self, draft: TaskDraft | None = None) -> Task:
        d = draft or TaskDraft()
        now = self._clock()
        task = Task(
            title=(d.title or "").strip() or "Untitled Task",
            description=d.description or "",
            priority=d.priority or TaskPriority.MEDIUM,
            status=d.status or TaskStatus.PENDING,
            due_date=d.due_date,
            created_at=now,
            updated_at=now,
            tags=list(d.tags or []),
        )
        self._tasks.append(task)
        return task

    def get(self, task_id: str) -> Task | None:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def update(self, task_id: str, updates: TaskUpdate) -> Task | None:
        current = self.get(task_id)
        if current is None:
            return None
        for field, value in updates.changes().items():
            setattr(current, field, value)
        current.updated_at = _next_timestamp(current.updated_at, self._clock())
        return current

    def delete(self, task_id: str) -> bool:
        for i, task in enumerate(self._tasks):
            if task.id == task_id:
                del self._tasks[i]
                return True
        return False

    def search(self, criteria: SearchCriteria | None = None) -> list[Task]:
        c = criteria or SearchCriteria()
        result = list(self._tasks)
        if c.status is not None:
            result = [t for t in result if t.status == c.status]
        if c.priority is not None:
            result = [t for t in result if t.priority == c.priority]
        if c.tags:
            wanted = set(c.tags)
            result = [t for t in result if wanted.intersection(t.tags)]
        if c.search:
            term = c.search.lower()
            result = [
                t for t in result if term in t.title.lower() or term in t.description.lower()
            ]
        return result

    def recent(self, *, limit: int = 10, within: _dt.timedelta = _dt.timedelta(days=7)) -> list[Task]:
        """Tasks updated inside the window, most recently updated first."""
        cutoff = self._clock() - within
        touched = [t for t in self._tasks if t.updated_at > cutoff]
        touched.sort(key=lambda t: t.updated_at, reverse=True)
        return touched[:limit]

    def count(self) -> int:
        return len(self._tasks)

    def all(self) -> list[Task]:
        return list(self._tasks)


def _next_timestamp(previous: _dt.datetime, now: _dt.datetime) -> _dt.datetime:
    # Two updates inside one clock tick must still order strictly
    if now <= previous:
        return previous + _dt.timedelta(microseconds=1)
    return now


__all__ = ["TaskStore"]
