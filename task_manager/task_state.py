"""Task status transitions.

Any status may move to any other status. What the transition guarantees is
the completion timestamp: ``completed_at`` is set exactly when the task is
``DONE``.
"""

from datetime import datetime
from typing import Optional

from .models import TaskStatus


def apply_status(task, new_status: TaskStatus, now: datetime) -> None:
    task.status = new_status
    if new_status == TaskStatus.DONE:
        # re-entering DONE keeps the original completion time
        if task.completed_at is None:
            task.completed_at = now
    else:
        task.completed_at = None


def is_overdue(status: TaskStatus, due_date: Optional[datetime], now: datetime) -> bool:
    return due_date is not None and now > due_date and status != TaskStatus.DONE
