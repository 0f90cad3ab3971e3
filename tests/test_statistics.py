from datetime import datetime, timedelta

import pytest

from task_manager import crud, schemas, statistics
from task_manager.models import TaskStatus

from .conftest import make_user

NOW = datetime(2026, 5, 10, 8, 0, 0)


def add_task(db, owner, title, status=TaskStatus.TODO, due_date=None):
    return crud.create_task(db, schemas.TaskCreate(title=title, status=status, due_date=due_date), owner, now=NOW)


def test_completion_rate():
    assert statistics.completion_rate(0, 0) == 0.0
    assert statistics.completion_rate(3, 3) == 100.0
    assert statistics.completion_rate(1, 4) == pytest.approx(25.0)


def test_user_statistics_for_user_without_tasks(db, alice):
    stats = statistics.task_statistics(db, NOW, alice.id)
    assert stats.total_tasks == 0
    assert stats.completion_rate == 0.0


def test_user_statistics_all_done(db, alice):
    add_task(db, alice, "one", TaskStatus.DONE)
    add_task(db, alice, "two", TaskStatus.DONE)
    stats = statistics.task_statistics(db, NOW, alice.id)
    assert stats.total_tasks == 2
    assert stats.completed_tasks == 2
    assert stats.completion_rate == 100.0


def test_user_statistics_counts(db, alice, bob):
    yesterday = NOW - timedelta(days=1)
    add_task(db, alice, "todo overdue", TaskStatus.TODO, due_date=yesterday)
    add_task(db, alice, "in progress", TaskStatus.IN_PROGRESS, due_date=NOW + timedelta(days=1))
    add_task(db, alice, "done late", TaskStatus.DONE, due_date=yesterday)
    add_task(db, alice, "todo", TaskStatus.TODO)
    add_task(db, bob, "bob overdue", TaskStatus.TODO, due_date=yesterday)

    stats = statistics.task_statistics(db, NOW, alice.id)
    assert stats.total_tasks == 4
    assert stats.todo_tasks == 2
    assert stats.in_progress_tasks == 1
    assert stats.completed_tasks == 1
    assert stats.overdue_tasks == 1
    assert stats.completion_rate == pytest.approx(25.0)

    overall = statistics.task_statistics(db, NOW)
    assert overall.total_tasks == 5
    assert overall.overdue_tasks == 2


def test_overdue_count_follows_now(db, alice):
    add_task(db, alice, "due soon", due_date=NOW + timedelta(hours=2))
    assert statistics.task_statistics(db, NOW, alice.id).overdue_tasks == 0
    assert statistics.task_statistics(db, NOW + timedelta(hours=3), alice.id).overdue_tasks == 1


def test_user_statistics_role_counts(db, admin):
    make_user(db, "carol")
    make_user(db, "dave")
    dave = crud.get_user_by_username(db, "dave")
    crud.toggle_user_status(db, dave.id)

    stats = statistics.user_statistics(db)
    assert stats.total_users == 3
    assert stats.enabled_users == 2
    assert stats.admin_users == 1
    assert stats.regular_users == 2
