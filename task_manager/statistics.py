"""Count-based summaries over tasks, users and SMS messages.

Overdue counts are taken against the ``now`` passed in, never stored.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .models import Role, SmsStatus, TaskStatus


def completion_rate(completed: int, total: int) -> float:
    if total == 0:
        return 0.0
    return completed / total * 100


def task_statistics(db: Session, now: datetime, owner_id: Optional[int] = None) -> schemas.TaskStatistics:
    q = db.query(models.Task.status, func.count(models.Task.id))
    if owner_id is not None:
        q = q.filter(models.Task.owner_id == owner_id)
    by_status = {status: count for status, count in q.group_by(models.Task.status).all()}

    total = sum(by_status.values())
    completed = by_status.get(TaskStatus.DONE, 0)
    return schemas.TaskStatistics(
        total_tasks=total,
        todo_tasks=by_status.get(TaskStatus.TODO, 0),
        in_progress_tasks=by_status.get(TaskStatus.IN_PROGRESS, 0),
        completed_tasks=completed,
        overdue_tasks=crud.count_overdue_tasks(db, now, owner_id),
        completion_rate=completion_rate(completed, total),
    )


def user_statistics(db: Session) -> schemas.UserStatistics:
    def count_role(role: Role) -> int:
        return db.query(models.User).filter(models.User.role == role).count()

    return schemas.UserStatistics(
        total_users=db.query(models.User).count(),
        enabled_users=db.query(models.User).filter(models.User.enabled.is_(True)).count(),
        admin_users=count_role(Role.ADMIN),
        regular_users=count_role(Role.USER),
    )


def _created_between(q, start: datetime, end: datetime):
    return q.filter(models.SmsMessage.created_at.between(start, end))


def delivery_statistics(db: Session, start: datetime, end: datetime) -> schemas.DeliveryStatistics:
    q = _created_between(db.query(models.SmsMessage.status, func.count(models.SmsMessage.id)), start, end)
    by_status = {status: count for status, count in q.group_by(models.SmsMessage.status).all()}
    total = sum(by_status.values())
    return schemas.DeliveryStatistics(
        start_date=start,
        end_date=end,
        total_messages=total,
        by_status=by_status,
        delivery_rate=completion_rate(by_status.get(SmsStatus.DELIVERED, 0), total),
    )


def operator_statistics(db: Session, start: datetime, end: datetime) -> List[schemas.OperatorStatusCount]:
    q = _created_between(
        db.query(models.SmsMessage.operator_id, models.SmsMessage.status, func.count(models.SmsMessage.id)),
        start, end,
    )
    rows = q.group_by(models.SmsMessage.operator_id, models.SmsMessage.status).order_by(
        models.SmsMessage.operator_id, models.SmsMessage.status).all()
    return [schemas.OperatorStatusCount(operator_id=op, status=status, count=count) for op, status, count in rows]
