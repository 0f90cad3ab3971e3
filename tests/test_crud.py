from datetime import datetime, timedelta

import pytest

from task_manager import crud, schemas
from task_manager.exceptions import AlreadyExists, NotFound, UnauthorizedAccess, ValidationFailure
from task_manager.models import Role, Task, TaskPriority, TaskStatus

from .conftest import make_user

NOW = datetime(2026, 5, 10, 8, 0, 0)


def add_task(db, owner, title="Write report", **kwargs):
    return crud.create_task(db, schemas.TaskCreate(title=title, **kwargs), owner, now=NOW)


def test_register_same_username_twice(db, alice):
    with pytest.raises(AlreadyExists):
        crud.create_user(db, schemas.UserCreate(
            username="alice", email="other@example.com", password="whatever1",
            first_name="Alice", last_name="Again",
        ))


def test_register_same_email_twice(db, alice):
    with pytest.raises(AlreadyExists):
        crud.create_user(db, schemas.UserCreate(
            username="alice2", email="alice@example.com", password="whatever1",
            first_name="Alice", last_name="Again",
        ))


def test_new_user_defaults(db, alice):
    assert alice.role == Role.USER
    assert alice.enabled
    assert alice.hashed_password != "s3cret-pass"
    assert crud.get_user_by_username_or_email(db, "alice@example.com").id == alice.id


def test_create_task_defaults(db, alice):
    task = add_task(db, alice)
    assert task.owner_id == alice.id
    assert task.status == TaskStatus.TODO
    assert task.priority == TaskPriority.MEDIUM
    assert task.completed_at is None


def test_create_task_already_done_is_stamped(db, alice):
    task = add_task(db, alice, status=TaskStatus.DONE)
    assert task.completed_at == NOW


def test_update_by_other_user_is_denied(db, alice, bob, admin):
    task = add_task(db, alice)
    change = schemas.TaskUpdate(title="Rewritten", status=TaskStatus.IN_PROGRESS)
    with pytest.raises(UnauthorizedAccess):
        crud.update_task(db, task.id, change, bob)
    db.refresh(task)
    assert task.title == "Write report"

    updated = crud.update_task(db, task.id, change, admin)
    assert updated.title == "Rewritten"
    assert updated.status == TaskStatus.IN_PROGRESS
    assert updated.owner_id == alice.id


def test_update_missing_task(db, alice):
    with pytest.raises(NotFound):
        crud.update_task(db, 999, schemas.TaskUpdate(title="x"), alice)


def test_update_keeps_status_and_priority_when_omitted(db, alice):
    task = add_task(db, alice, status=TaskStatus.DONE, priority=TaskPriority.HIGH)
    updated = crud.update_task(db, task.id, schemas.TaskUpdate(title="Renamed"), alice, now=NOW + timedelta(days=1))
    assert updated.status == TaskStatus.DONE
    assert updated.priority == TaskPriority.HIGH
    assert updated.completed_at == NOW


def test_status_changes_maintain_completion_time(db, alice):
    task = add_task(db, alice)
    done = crud.update_task_status(db, task.id, TaskStatus.DONE, alice, now=NOW)
    assert done.completed_at == NOW
    again = crud.update_task_status(db, task.id, TaskStatus.DONE, alice, now=NOW + timedelta(hours=1))
    assert again.completed_at == NOW
    reopened = crud.update_task_status(db, task.id, TaskStatus.IN_PROGRESS, alice, now=NOW)
    assert reopened.completed_at is None


def test_delete_task(db, alice, bob):
    task = add_task(db, alice)
    with pytest.raises(UnauthorizedAccess):
        crud.delete_task(db, task.id, bob)
    crud.delete_task(db, task.id, alice)
    assert crud.get_task(db, task.id) is None
    with pytest.raises(NotFound):
        crud.delete_task(db, task.id, alice)


def test_list_tasks_is_owner_scoped_and_sorted(db, alice, bob):
    add_task(db, alice, "b", priority=TaskPriority.LOW)
    add_task(db, alice, "a", priority=TaskPriority.HIGH)
    add_task(db, alice, "c", status=TaskStatus.DONE)
    add_task(db, bob, "bob's")

    items, total = crud.list_tasks(db, sort_by="title", sort_dir="asc", owner_id=alice.id)
    assert total == 3
    assert [t.title for t in items] == ["a", "b", "c"]

    items, total = crud.list_tasks(db, page=1, size=2, sort_by="title", sort_dir="asc", owner_id=alice.id)
    assert total == 3
    assert [t.title for t in items] == ["c"]

    items, _ = crud.list_tasks(db, owner_id=alice.id, status=TaskStatus.DONE)
    assert [t.title for t in items] == ["c"]
    assert [t.title for t in crud.tasks_by_priority(db, TaskPriority.HIGH, alice.id)] == ["a"]


def test_list_tasks_rejects_unknown_sort_field(db, alice):
    with pytest.raises(ValidationFailure):
        crud.list_tasks(db, sort_by="hashed_password", owner_id=alice.id)


def test_search_is_case_insensitive_over_title_and_description(db, alice, bob):
    add_task(db, alice, "Quarterly REPORT")
    add_task(db, alice, "Groceries", description="buy milk for the report meeting")
    add_task(db, alice, "Unrelated")
    add_task(db, bob, "bob's report")

    items, total = crud.search_tasks(db, "report", owner_id=alice.id)
    assert total == 2
    assert {t.title for t in items} == {"Quarterly REPORT", "Groceries"}

    _, total_all = crud.search_tasks(db, "report")
    assert total_all == 3

    _, none = crud.search_tasks(db, "100%", owner_id=alice.id)
    assert none == 0


def test_due_window_and_overdue_queries(db, alice):
    add_task(db, alice, "past", due_date=NOW - timedelta(days=1))
    add_task(db, alice, "past but done", due_date=NOW - timedelta(days=1), status=TaskStatus.DONE)
    add_task(db, alice, "soon", due_date=NOW + timedelta(hours=5))
    add_task(db, alice, "later", due_date=NOW + timedelta(days=5))
    add_task(db, alice, "no due date")

    assert [t.title for t in crud.overdue_tasks(db, NOW, alice.id)] == ["past"]
    assert [t.title for t in crud.tasks_due_soon(db, NOW, 24, alice.id)] == ["soon"]
    window = crud.tasks_due_between(db, NOW - timedelta(days=2), NOW + timedelta(days=1), alice.id)
    assert [t.title for t in window] == ["past", "past but done", "soon"]


def test_recently_completed_ordered_newest_first(db, alice):
    old = add_task(db, alice, "old")
    new = add_task(db, alice, "new")
    ancient = add_task(db, alice, "ancient")
    crud.update_task_status(db, old.id, TaskStatus.DONE, alice, now=NOW - timedelta(days=2))
    crud.update_task_status(db, new.id, TaskStatus.DONE, alice, now=NOW - timedelta(hours=1))
    crud.update_task_status(db, ancient.id, TaskStatus.DONE, alice, now=NOW - timedelta(days=30))

    recent = crud.recently_completed_tasks(db, NOW - timedelta(days=7), alice.id)
    assert [t.title for t in recent] == ["new", "old"]
    assert [t.title for t in crud.recently_completed_tasks(db, NOW - timedelta(days=7), alice.id, limit=1)] == ["new"]


def test_update_profile_uniqueness(db, alice, bob):
    with pytest.raises(AlreadyExists):
        crud.update_user_profile(db, alice, schemas.UserUpdate(
            username="bob", email="alice@example.com", first_name="A", last_name="B",
        ))
    updated = crud.update_user_profile(db, alice, schemas.UserUpdate(
        username="alice", email="alice@example.org", first_name="Alicia", last_name="Tester",
    ))
    assert updated.email == "alice@example.org"
    assert updated.full_name == "Alicia Tester"


def test_role_and_status_changes(db, alice):
    assert crud.update_user_role(db, alice.id, Role.ADMIN).role == Role.ADMIN
    assert not crud.toggle_user_status(db, alice.id).enabled
    assert crud.toggle_user_status(db, alice.id).enabled
    with pytest.raises(NotFound):
        crud.update_user_role(db, 999, Role.ADMIN)


def test_delete_user_removes_their_tasks(db, alice, bob):
    add_task(db, alice, "mine")
    kept = add_task(db, bob, "bob's")
    crud.delete_user(db, alice.id)
    assert crud.get_user_by_id(db, alice.id) is None
    assert [t.id for t in db.query(Task).all()] == [kept.id]


def test_user_queries(db, alice, bob, admin):
    add_task(db, bob, "one", due_date=NOW + timedelta(hours=2))
    add_task(db, bob, "two")
    add_task(db, alice, "three", due_date=NOW + timedelta(hours=2), status=TaskStatus.DONE)

    assert [u.username for u in crud.most_active_users(db, limit=1)] == ["bob"]
    assert [u.username for u in crud.users_with_tasks_due_soon(db, NOW, 24)] == ["bob"]
    assert [u.username for u in crud.list_users_by_role(db, Role.ADMIN)] == ["root"]

    items, total = crud.search_users(db, "ALI")
    assert total == 1 and items[0].username == "alice"

    make_user(db, "zed")
    items, total = crud.list_users(db, size=2, sort_by="username", sort_dir="asc")
    assert total == 4
    assert [u.username for u in items] == ["alice", "bob"]
