"""Authorization checks.

Checks return a decision value instead of raising so handlers can log or
combine them; ``enforce`` turns a denial into ``UnauthorizedAccess``.
"""

import logging
from dataclasses import dataclass
from typing import Union

from . import models
from .exceptions import UnauthorizedAccess

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allowed:
    pass


@dataclass(frozen=True)
class Denied:
    reason: str


Decision = Union[Allowed, Denied]

ALLOWED = Allowed()


def can_access(task: models.Task, user: models.User) -> bool:
    return task.owner_id == user.id or user.role == models.Role.ADMIN


def check_task_access(task: models.Task, user: models.User) -> Decision:
    if can_access(task, user):
        return ALLOWED
    return Denied("You don't have access to this task")


def check_admin(user: models.User) -> Decision:
    if user.role == models.Role.ADMIN:
        return ALLOWED
    return Denied("Administrator role required")


def enforce(decision: Decision, actor: models.User = None) -> None:
    if isinstance(decision, Denied):
        logger.warning("Access denied for %s: %s", actor.username if actor else "<anonymous>", decision.reason)
        raise UnauthorizedAccess(decision.reason)
