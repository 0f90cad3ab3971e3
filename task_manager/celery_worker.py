import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from celery import Celery
from sqlalchemy.orm import Session

from . import config, crud, email_utils, sms_utils
from .database import SessionLocal
from .models import SmsStatus, utcnow

logger = logging.getLogger(__name__)

celery = Celery("task_manager", broker=config.CELERY_BROKER_URL, backend=config.CELERY_BACKEND_URL)
celery.conf.beat_schedule = {
    "scan-overdue-tasks": {
        "task": "task_manager.celery_worker.scan_overdue_tasks",
        "schedule": float(config.OVERDUE_SCAN_INTERVAL_SECONDS),
    },
    "dispatch-pending-sms": {
        "task": "task_manager.celery_worker.dispatch_pending_sms",
        "schedule": float(config.SMS_SCAN_INTERVAL_SECONDS),
    },
}

# each held for the whole scan; a fire that finds it taken is skipped, not queued
_scan_lock = threading.Lock()
_sms_lock = threading.Lock()


def format_overdue_digest(tasks) -> str:
    lines = [f"- {t.title} (due {t.due_date:%Y-%m-%d %H:%M})" for t in tasks]
    return "Your overdue tasks:\n" + "\n".join(lines)


def run_overdue_scan(
    db: Session,
    now: Optional[datetime] = None,
    send: Optional[Callable[[str, str, str], None]] = None,
) -> Optional[int]:
    """Mail every enabled owner of overdue tasks a digest.

    Returns the number of users notified, or None if another scan was
    already running. A failed delivery is logged and the scan moves on to
    the next owner.
    """
    send = send or email_utils.send_email
    if not _scan_lock.acquire(blocking=False):
        logger.info("Overdue scan already in progress, skipping this run")
        return None
    try:
        notified = failed = 0
        for owner, tasks in crud.overdue_tasks_by_owner(db, now or utcnow()).items():
            if not owner.enabled:
                continue
            try:
                send(owner.email, "Overdue Tasks Summary", format_overdue_digest(tasks))
            except Exception:
                logger.exception("Could not mail overdue digest to %s", owner.email)
                failed += 1
                continue
            notified += 1
        logger.info("Overdue scan notified %d user(s), %d failed", notified, failed)
        return notified
    finally:
        _scan_lock.release()


def run_sms_dispatch(
    db: Session,
    now: Optional[datetime] = None,
    send: Optional[Callable] = None,
) -> Optional[int]:
    """Hand every pending SMS whose schedule has come up to the gateway.

    Delivered hand-offs are marked SENT, rejected ones FAILED. Returns the
    number sent, or None if another dispatch was already running.
    """
    send = send or sms_utils.send_sms
    now = now or utcnow()
    if not _sms_lock.acquire(blocking=False):
        logger.info("SMS dispatch already in progress, skipping this run")
        return None
    try:
        sent = failed = 0
        for message in crud.pending_messages_due(db, now):
            try:
                send(message)
            except Exception:
                logger.exception("SMS %s could not be handed off", message.message_id)
                crud.stamp_sms_status(message, SmsStatus.FAILED, now)
                failed += 1
            else:
                crud.stamp_sms_status(message, SmsStatus.SENT, now)
                sent += 1
            db.commit()
        logger.info("SMS dispatch sent %d message(s), %d failed", sent, failed)
        return sent
    finally:
        _sms_lock.release()


@celery.task(name="task_manager.celery_worker.scan_overdue_tasks")
def scan_overdue_tasks():
    db = SessionLocal()
    try:
        return run_overdue_scan(db)
    finally:
        db.close()


@celery.task(name="task_manager.celery_worker.dispatch_pending_sms")
def dispatch_pending_sms():
    db = SessionLocal()
    try:
        return run_sms_dispatch(db)
    finally:
        db.close()
