import logging
from collections import defaultdict
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from passlib.hash import bcrypt
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from . import config, models, permissions, schemas
from .exceptions import AlreadyExists, NotFound, ValidationFailure
from .models import Role, SmsPriority, SmsStatus, TaskPriority, TaskStatus, utcnow

logger = logging.getLogger(__name__)

_password_hasher = bcrypt.using(rounds=config.BCRYPT_ROUNDS)

TASK_SORT_FIELDS = ("id", "title", "status", "priority", "due_date", "completed_at", "created_at", "updated_at")
USER_SORT_FIELDS = ("id", "username", "email", "first_name", "last_name", "role", "created_at")
SMS_SORT_FIELDS = ("id", "message_id", "operator_id", "status", "priority", "scheduled_at", "sent_at",
                   "delivered_at", "created_at")


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def _paginate(q: Query, model, page: int, size: int, sort_by: str, sort_dir: str,
              allowed: Tuple[str, ...]) -> Tuple[list, int]:
    if sort_by not in allowed:
        raise ValidationFailure(f"Cannot sort by '{sort_by}'")
    total = q.count()
    col = getattr(model, sort_by)
    if sort_dir.lower() == "desc":
        q = q.order_by(col.desc(), model.id.desc())
    else:
        q = q.order_by(col.asc(), model.id.asc())
    return q.offset(page * size).limit(size).all(), total


def _ci_contains(column, term: str):
    return func.lower(column).contains(term.lower(), autoescape=True)


def _commit_unique(db: Session, detail: str) -> None:
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AlreadyExists(detail)


# USERS

def create_user(db: Session, user: schemas.UserCreate, role: Role = Role.USER):
    if username_exists(db, user.username):
        raise AlreadyExists(f"Username is already taken: {user.username}")
    if email_exists(db, user.email):
        raise AlreadyExists(f"Email is already in use: {user.email}")
    db_user = models.User(
        username=user.username,
        email=user.email,
        hashed_password=hash_password(user.password),
        first_name=user.first_name,
        last_name=user.last_name,
        role=role,
        enabled=True,
    )
    db.add(db_user)
    _commit_unique(db, f"Username or email is already in use: {user.username}")
    db.refresh(db_user)
    logger.info("Registered user %s (id=%s, role=%s)", db_user.username, db_user.id, role.value)
    return db_user


def get_user_by_id(db: Session, user_id: int):
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_username(db: Session, username: str):
    return db.query(models.User).filter(models.User.username == username).first()


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email).first()


def get_user_by_username_or_email(db: Session, username_or_email: str):
    return db.query(models.User).filter(
        or_(models.User.username == username_or_email, models.User.email == username_or_email)
    ).first()


def get_user_or_404(db: Session, user_id: int):
    user = get_user_by_id(db, user_id)
    if not user:
        raise NotFound(f"User not found with id: {user_id}")
    return user


def username_exists(db: Session, username: str) -> bool:
    return get_user_by_username(db, username) is not None


def email_exists(db: Session, email: str) -> bool:
    return get_user_by_email(db, email) is not None


def list_users(db: Session, page: int = 0, size: int = 20, sort_by: str = "created_at", sort_dir: str = "desc"):
    return _paginate(db.query(models.User), models.User, page, size, sort_by, sort_dir, USER_SORT_FIELDS)


def search_users(db: Session, term: str, page: int = 0, size: int = 20):
    q = db.query(models.User).filter(or_(
        _ci_contains(models.User.username, term),
        _ci_contains(models.User.email, term),
        _ci_contains(models.User.first_name, term),
        _ci_contains(models.User.last_name, term),
    ))
    return _paginate(q, models.User, page, size, "username", "asc", USER_SORT_FIELDS)


def list_users_by_role(db: Session, role: Role) -> List[models.User]:
    return db.query(models.User).filter(models.User.role == role).order_by(models.User.id).all()


def list_enabled_users(db: Session) -> List[models.User]:
    return db.query(models.User).filter(models.User.enabled.is_(True)).order_by(models.User.id).all()


def users_with_tasks_due_soon(db: Session, now: datetime, hours: int) -> List[models.User]:
    return db.query(models.User).join(models.Task).filter(
        models.Task.due_date.between(now, now + timedelta(hours=hours)),
        models.Task.status != TaskStatus.DONE,
    ).distinct().order_by(models.User.id).all()


def most_active_users(db: Session, limit: int = 10) -> List[models.User]:
    return db.query(models.User).outerjoin(models.Task).group_by(models.User.id).order_by(
        func.count(models.Task.id).desc(), models.User.id
    ).limit(limit).all()


def update_user_profile(db: Session, user: models.User, user_update: schemas.UserUpdate):
    if user.username != user_update.username and username_exists(db, user_update.username):
        raise AlreadyExists(f"Username is already taken: {user_update.username}")
    if user.email != user_update.email and email_exists(db, user_update.email):
        raise AlreadyExists(f"Email is already in use: {user_update.email}")
    user.username = user_update.username
    user.email = user_update.email
    user.first_name = user_update.first_name
    user.last_name = user_update.last_name
    _commit_unique(db, f"Username or email is already in use: {user_update.username}")
    db.refresh(user)
    return user


def update_user_role(db: Session, user_id: int, role: Role):
    user = get_user_or_404(db, user_id)
    user.role = role
    db.commit()
    db.refresh(user)
    logger.info("User %s role set to %s", user.username, role.value)
    return user


def toggle_user_status(db: Session, user_id: int):
    user = get_user_or_404(db, user_id)
    user.enabled = not user.enabled
    db.commit()
    db.refresh(user)
    logger.info("User %s %s", user.username, "enabled" if user.enabled else "disabled")
    return user


def delete_user(db: Session, user_id: int) -> None:
    user = get_user_or_404(db, user_id)
    username = user.username
    db.delete(user)
    db.commit()
    logger.info("Deleted user %s and their tasks", username)


# TASKS

def create_task(db: Session, task: schemas.TaskCreate, owner: models.User, now: Optional[datetime] = None):
    db_task = models.Task(
        title=task.title,
        description=task.description,
        priority=task.priority or TaskPriority.MEDIUM,
        due_date=task.due_date,
        owner=owner,
    )
    db_task.set_status(task.status or TaskStatus.TODO, now)
    db.add(db_task)
    db.commit()
    db.refresh(db_task)
    return db_task


def get_task(db: Session, task_id: int):
    return db.query(models.Task).filter(models.Task.id == task_id).first()


def get_task_or_404(db: Session, task_id: int):
    task = get_task(db, task_id)
    if not task:
        raise NotFound(f"Task not found with id: {task_id}")
    return task


def get_task_for_user(db: Session, task_id: int, actor: models.User):
    task = get_task_or_404(db, task_id)
    permissions.enforce(permissions.check_task_access(task, actor), actor)
    return task


def update_task(db: Session, task_id: int, task_update: schemas.TaskUpdate, actor: models.User,
                now: Optional[datetime] = None):
    task = get_task_for_user(db, task_id, actor)
    task.title = task_update.title
    task.description = task_update.description
    task.due_date = task_update.due_date
    if task_update.priority is not None:
        task.priority = task_update.priority
    if task_update.status is not None:
        task.set_status(task_update.status, now)
    db.commit()
    db.refresh(task)
    return task


def update_task_status(db: Session, task_id: int, status: TaskStatus, actor: models.User,
                       now: Optional[datetime] = None):
    task = get_task_for_user(db, task_id, actor)
    task.set_status(status, now)
    db.commit()
    db.refresh(task)
    return task


def delete_task(db: Session, task_id: int, actor: models.User) -> None:
    task = get_task_for_user(db, task_id, actor)
    db.delete(task)
    db.commit()
    logger.info("Task %s deleted by %s", task_id, actor.username)


def _task_query(db: Session, owner_id: Optional[int] = None) -> Query:
    q = db.query(models.Task)
    if owner_id is not None:
        q = q.filter(models.Task.owner_id == owner_id)
    return q


def list_tasks(db: Session, page: int = 0, size: int = 20, sort_by: str = "created_at", sort_dir: str = "desc",
               owner_id: Optional[int] = None, status: Optional[TaskStatus] = None,
               priority: Optional[TaskPriority] = None):
    q = _task_query(db, owner_id)
    if status is not None:
        q = q.filter(models.Task.status == status)
    if priority is not None:
        q = q.filter(models.Task.priority == priority)
    return _paginate(q, models.Task, page, size, sort_by, sort_dir, TASK_SORT_FIELDS)


def tasks_by_status(db: Session, status: TaskStatus, owner_id: Optional[int] = None) -> List[models.Task]:
    return _task_query(db, owner_id).filter(models.Task.status == status).order_by(models.Task.id).all()


def tasks_by_priority(db: Session, priority: TaskPriority, owner_id: Optional[int] = None) -> List[models.Task]:
    return _task_query(db, owner_id).filter(models.Task.priority == priority).order_by(models.Task.id).all()


def search_tasks(db: Session, term: str, page: int = 0, size: int = 20, sort_by: str = "created_at",
                 sort_dir: str = "desc", owner_id: Optional[int] = None):
    q = _task_query(db, owner_id).filter(or_(
        _ci_contains(models.Task.title, term),
        _ci_contains(models.Task.description, term),
    ))
    return _paginate(q, models.Task, page, size, sort_by, sort_dir, TASK_SORT_FIELDS)


def tasks_due_between(db: Session, start: datetime, end: datetime, owner_id: Optional[int] = None,
                      exclude_done: bool = False) -> List[models.Task]:
    q = _task_query(db, owner_id).filter(models.Task.due_date.between(start, end))
    if exclude_done:
        q = q.filter(models.Task.status != TaskStatus.DONE)
    return q.order_by(models.Task.due_date, models.Task.id).all()


def tasks_due_soon(db: Session, now: datetime, hours: int, owner_id: Optional[int] = None) -> List[models.Task]:
    return tasks_due_between(db, now, now + timedelta(hours=hours), owner_id, exclude_done=True)


def _overdue_filter(q: Query, now: datetime) -> Query:
    return q.filter(models.Task.due_date.isnot(None), models.Task.due_date < now,
                    models.Task.status != TaskStatus.DONE)


def overdue_tasks(db: Session, now: Optional[datetime] = None, owner_id: Optional[int] = None) -> List[models.Task]:
    q = _overdue_filter(_task_query(db, owner_id), now or utcnow())
    return q.order_by(models.Task.due_date, models.Task.id).all()


def count_overdue_tasks(db: Session, now: datetime, owner_id: Optional[int] = None) -> int:
    return _overdue_filter(_task_query(db, owner_id), now).count()


def overdue_tasks_by_owner(db: Session, now: datetime) -> Dict[models.User, List[models.Task]]:
    grouped = defaultdict(list)
    for task in overdue_tasks(db, now):
        grouped[task.owner].append(task)
    return dict(grouped)


def recently_completed_tasks(db: Session, since: datetime, owner_id: Optional[int] = None,
                             limit: int = 10) -> List[models.Task]:
    return _task_query(db, owner_id).filter(
        models.Task.status == TaskStatus.DONE,
        models.Task.completed_at >= since,
    ).order_by(models.Task.completed_at.desc(), models.Task.id.desc()).limit(limit).all()


# SMS MESSAGES

def generate_message_id() -> str:
    return "SMS-" + uuid.uuid4().hex[:8].upper()


def stamp_sms_status(message: models.SmsMessage, status: SmsStatus, now: datetime) -> None:
    """SENT stamps sent_at and DELIVERED stamps delivered_at; other states keep both."""
    message.status = status
    if status == SmsStatus.SENT:
        message.sent_at = now
    elif status == SmsStatus.DELIVERED:
        message.delivered_at = now


def create_message(db: Session, message: schemas.SmsMessageCreate):
    message_id = message.message_id or generate_message_id()
    db_message = models.SmsMessage(
        message_id=message_id,
        operator_id=message.operator_id,
        sender_number=message.sender_number,
        recipient_number=message.recipient_number,
        message_content=message.message_content,
        status=message.status or SmsStatus.PENDING,
        priority=message.priority or SmsPriority.NORMAL,
        scheduled_at=message.scheduled_at,
    )
    db.add(db_message)
    _commit_unique(db, f"Message ID is already in use: {message_id}")
    db.refresh(db_message)
    logger.info("Queued SMS %s to %s", db_message.message_id, db_message.recipient_number)
    return db_message


def get_message(db: Session, sms_id: int):
    return db.query(models.SmsMessage).filter(models.SmsMessage.id == sms_id).first()


def get_message_or_404(db: Session, sms_id: int):
    message = get_message(db, sms_id)
    if not message:
        raise NotFound(f"SMS message not found with id: {sms_id}")
    return message


def get_message_by_message_id(db: Session, message_id: str):
    message = db.query(models.SmsMessage).filter(models.SmsMessage.message_id == message_id).first()
    if not message:
        raise NotFound(f"SMS message not found with message id: {message_id}")
    return message


def list_messages(db: Session, page: int = 0, size: int = 20, sort_by: str = "created_at", sort_dir: str = "desc",
                  operator_id: Optional[int] = None):
    q = db.query(models.SmsMessage)
    if operator_id is not None:
        q = q.filter(models.SmsMessage.operator_id == operator_id)
    return _paginate(q, models.SmsMessage, page, size, sort_by, sort_dir, SMS_SORT_FIELDS)


def messages_by_status(db: Session, status: SmsStatus) -> List[models.SmsMessage]:
    return db.query(models.SmsMessage).filter(models.SmsMessage.status == status).order_by(
        models.SmsMessage.id).all()


def update_message_status(db: Session, sms_id: int, status: SmsStatus, now: Optional[datetime] = None):
    message = get_message_or_404(db, sms_id)
    stamp_sms_status(message, status, now or utcnow())
    db.commit()
    db.refresh(message)
    logger.info("SMS %s marked %s", message.message_id, status.value)
    return message


def delete_message(db: Session, sms_id: int) -> None:
    message = get_message_or_404(db, sms_id)
    message_id = message.message_id
    db.delete(message)
    db.commit()
    logger.info("Deleted SMS %s", message_id)


def pending_messages_due(db: Session, now: datetime) -> List[models.SmsMessage]:
    return db.query(models.SmsMessage).filter(
        models.SmsMessage.status == SmsStatus.PENDING,
        or_(models.SmsMessage.scheduled_at.is_(None), models.SmsMessage.scheduled_at <= now),
    ).order_by(models.SmsMessage.created_at, models.SmsMessage.id).all()
