from __future__ import annotations

import datetime as _dt
import math
from collections.abc import Sequence

from taskagent.models.state import Analytics, Task, TaskStatus


def productivity_score(total: int, completed: int) -> int:
    """Completed share as a whole percentage, rounding halves up; 0 for an empty list."""
    if total <= 0:
        return 0
    return int(math.floor(completed / total * 100 + 0.5))


def is_overdue(task: Task, now: _dt.datetime) -> bool:
    return task.due_date is not None and task.due_date < now and task.status != TaskStatus.COMPLETED


def compute_analytics(tasks: Sequence[Task], now: _dt.datetime) -> Analytics:
    total = len(tasks)
    completed = sum(1 for t in tasks if t.status == TaskStatus.COMPLETED)
    return Analytics(
        total_tasks=total,
        completed_tasks=completed,
        pending_tasks=sum(1 for t in tasks if t.status == TaskStatus.PENDING),
        overdue_tasks=sum(1 for t in tasks if is_overdue(t, now)),
        productivity_score=productivity_score(total, completed),
    )


__all__ = ["compute_analytics", "is_overdue", "productivity_score"]
