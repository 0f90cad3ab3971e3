import math
from datetime import datetime, timezone
from typing import Dict, Generic, List, Optional, TypeVar

from pydantic import BaseModel, EmailStr, Field, field_validator

from . import models
from .models import Role, SmsPriority, SmsStatus, TaskPriority, TaskStatus

T = TypeVar("T")


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# USERS

class UserCreate(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6, max_length=100)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)


class UserUpdate(BaseModel):
    username: str = Field(min_length=3, max_length=50)
    email: EmailStr
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)


class UserOut(BaseModel):
    id: int
    username: str
    email: EmailStr
    first_name: str
    last_name: str
    full_name: str
    role: Role
    enabled: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        frozen = True


class LoginRequest(BaseModel):
    username_or_email: str = Field(min_length=1)
    password: str = Field(min_length=1)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserOut

    class Config:
        frozen = True


# TASKS

class TaskBase(BaseModel):
    title: str = Field(max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Title is required")
        return v

    @field_validator("due_date")
    @classmethod
    def due_date_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class TaskCreate(TaskBase):
    pass


class TaskUpdate(TaskBase):
    pass


class TaskOut(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    owner_id: int
    owner_full_name: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    is_overdue: bool

    class Config:
        frozen = True


def task_out(task: models.Task, now: Optional[datetime] = None) -> TaskOut:
    """Wire representation of a task row; overdue is evaluated at ``now``."""
    return TaskOut(
        id=task.id,
        title=task.title,
        description=task.description,
        status=task.status,
        priority=task.priority,
        due_date=task.due_date,
        completed_at=task.completed_at,
        owner_id=task.owner_id,
        owner_full_name=task.owner.full_name if task.owner else None,
        created_at=task.created_at,
        updated_at=task.updated_at,
        is_overdue=task.is_overdue(now),
    )


def user_out(user: models.User) -> UserOut:
    return UserOut.model_validate(user)


# PAGINATION

class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    size: int
    pages: int

    class Config:
        frozen = True


def make_page(items: list, total: int, page: int, size: int) -> dict:
    return {
        "items": items,
        "total": total,
        "page": page,
        "size": size,
        "pages": math.ceil(total / size) if size else 0,
    }


# STATISTICS

class TaskStatistics(BaseModel):
    total_tasks: int
    todo_tasks: int
    in_progress_tasks: int
    completed_tasks: int
    overdue_tasks: int
    completion_rate: float

    class Config:
        frozen = True


class UserStatistics(BaseModel):
    total_users: int
    enabled_users: int
    admin_users: int
    regular_users: int

    class Config:
        frozen = True


# SMS

class SmsMessageCreate(BaseModel):
    message_id: Optional[str] = Field(default=None, max_length=50)
    operator_id: Optional[int] = None
    sender_number: str = Field(min_length=1, max_length=20)
    recipient_number: str = Field(min_length=1, max_length=20)
    message_content: str = Field(min_length=1)
    status: Optional[SmsStatus] = None
    priority: Optional[SmsPriority] = None
    scheduled_at: Optional[datetime] = None

    @field_validator("sender_number", "recipient_number", "message_content")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("scheduled_at")
    @classmethod
    def scheduled_at_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v)


class SmsMessageOut(BaseModel):
    id: int
    message_id: str
    operator_id: Optional[int] = None
    sender_number: str
    recipient_number: str
    message_content: str
    status: SmsStatus
    priority: SmsPriority
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        frozen = True


def sms_out(message: models.SmsMessage) -> SmsMessageOut:
    return SmsMessageOut.model_validate(message)


class DeliveryStatistics(BaseModel):
    start_date: datetime
    end_date: datetime
    total_messages: int
    by_status: Dict[SmsStatus, int]
    delivery_rate: float

    class Config:
        frozen = True


class OperatorStatusCount(BaseModel):
    operator_id: Optional[int] = None
    status: SmsStatus
    count: int

    class Config:
        frozen = True
