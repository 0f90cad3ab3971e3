from datetime import datetime, timedelta

from task_manager.models import Task, TaskStatus
from task_manager.task_state import apply_status, is_overdue

NOW = datetime(2026, 3, 1, 12, 0, 0)


def new_task(**kwargs) -> Task:
    kwargs.setdefault("title", "Write report")
    kwargs.setdefault("status", TaskStatus.TODO)
    return Task(**kwargs)


def test_entering_done_stamps_completion_time():
    task = new_task()
    apply_status(task, TaskStatus.DONE, NOW)
    assert task.status == TaskStatus.DONE
    assert task.completed_at == NOW


def test_reentering_done_keeps_original_completion_time():
    task = new_task()
    apply_status(task, TaskStatus.DONE, NOW)
    apply_status(task, TaskStatus.DONE, NOW + timedelta(hours=3))
    assert task.completed_at == NOW


def test_leaving_done_clears_completion_time():
    for target in (TaskStatus.TODO, TaskStatus.IN_PROGRESS):
        task = new_task()
        apply_status(task, TaskStatus.DONE, NOW)
        apply_status(task, target, NOW + timedelta(minutes=1))
        assert task.status == target
        assert task.completed_at is None


def test_any_state_reaches_any_state():
    task = new_task()
    for target in (TaskStatus.DONE, TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.DONE, TaskStatus.IN_PROGRESS):
        apply_status(task, target, NOW)
        assert task.status == target
        assert (task.completed_at is not None) == (target == TaskStatus.DONE)


def test_is_overdue():
    yesterday = NOW - timedelta(days=1)
    assert is_overdue(TaskStatus.TODO, yesterday, NOW)
    assert is_overdue(TaskStatus.IN_PROGRESS, yesterday, NOW)
    assert not is_overdue(TaskStatus.DONE, yesterday, NOW)
    assert not is_overdue(TaskStatus.TODO, None, NOW)
    assert not is_overdue(TaskStatus.TODO, NOW + timedelta(seconds=1), NOW)
    assert not is_overdue(TaskStatus.TODO, NOW, NOW)


def test_overdue_task_stops_being_overdue_when_done():
    task = new_task(due_date=NOW - timedelta(days=1))
    assert task.is_overdue(NOW)
    task.set_status(TaskStatus.DONE, NOW)
    assert not task.is_overdue(NOW)
    assert task.completed_at == NOW


def test_overdue_is_evaluated_at_read_time():
    task = new_task(due_date=NOW)
    assert not task.is_overdue(NOW - timedelta(minutes=1))
    assert task.is_overdue(NOW + timedelta(minutes=1))
