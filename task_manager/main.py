from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Path, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import auth, config, crud, database, models, permissions, schemas, statistics
from .exceptions import InvalidToken, TaskManagerError, ValidationFailure
from .logging_setup import setup_logging
from .models import Role, SmsStatus, TaskPriority, TaskStatus, utcnow

setup_logging(config.LOG_LEVEL)

models.Base.metadata.create_all(bind=database.engine)

app = FastAPI(title="Task Manager API")

get_db = database.get_db

# keeps page * size inside a 32-bit OFFSET
MAX_PAGE = (2 ** 31 - 1) // config.MAX_PAGE_SIZE


@app.exception_handler(TaskManagerError)
async def task_manager_error_handler(request: Request, exc: TaskManagerError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, InvalidToken) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": jsonable_encoder(exc.errors())},
    )


def page_params(
    page: int = Query(0, ge=0, le=MAX_PAGE),
    size: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
    sort_by: str = "created_at",
    sort_dir: str = Query("desc", pattern="^(asc|desc|ASC|DESC)$"),
):
    return {"page": page, "size": size, "sort_by": sort_by, "sort_dir": sort_dir}


def require_admin(user: models.User):
    permissions.enforce(permissions.check_admin(user), user)


def task_page(items, total, page, size, now: datetime):
    return schemas.make_page([schemas.task_out(t, now) for t in items], total, page, size)


def task_list(tasks, now: datetime) -> List[schemas.TaskOut]:
    return [schemas.task_out(t, now) for t in tasks]


@app.get("/health")
def health():
    return {"status": "ok"}


# AUTH
@app.post("/auth/login", response_model=schemas.TokenResponse)
def login(payload: schemas.LoginRequest, db: Session = Depends(get_db),
          issuer: auth.TokenIssuer = Depends(auth.get_token_issuer)):
    user = auth.authenticate_user(db, payload.username_or_email, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = issuer.issue(user.username)
    return {"access_token": token, "token_type": "bearer", "user": schemas.user_out(user)}


@app.post("/auth/register", response_model=schemas.UserOut, status_code=status.HTTP_201_CREATED)
def register(user: schemas.UserCreate, db: Session = Depends(get_db)):
    return schemas.user_out(crud.create_user(db, user))


@app.post("/auth/refresh", response_model=schemas.TokenResponse)
def refresh_token(authorization: Optional[str] = Header(None), db: Session = Depends(get_db),
                  issuer: auth.TokenIssuer = Depends(auth.get_token_issuer)):
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=400, detail="Authorization header must be 'Bearer <token>'")
    token = authorization[len("Bearer "):].strip()
    if not issuer.validate(token):
        raise InvalidToken("Token is invalid or expired")
    refreshed = issuer.refresh_if_needed(token)
    user = crud.get_user_by_username(db, issuer.subject(refreshed))
    if user is None or not user.enabled:
        raise InvalidToken("Token subject is no longer active")
    return {"access_token": refreshed, "token_type": "bearer", "user": schemas.user_out(user)}


@app.get("/auth/check-username", response_model=bool)
def check_username_availability(username: str, db: Session = Depends(get_db)):
    return not crud.username_exists(db, username)


@app.get("/auth/check-email", response_model=bool)
def check_email_availability(email: str, db: Session = Depends(get_db)):
    return not crud.email_exists(db, email)


# TASKS
@app.post("/tasks", response_model=schemas.TaskOut, status_code=status.HTTP_201_CREATED)
def create_task(task: schemas.TaskCreate, current_user: models.User = Depends(auth.get_current_user),
                db: Session = Depends(get_db)):
    return schemas.task_out(crud.create_task(db, task, current_user))


@app.get("/tasks", response_model=schemas.Page[schemas.TaskOut])
def get_tasks(task_status: Optional[TaskStatus] = Query(None, alias="status"),
              priority: Optional[TaskPriority] = None,
              p: dict = Depends(page_params),
              current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    items, total = crud.list_tasks(db, **p, owner_id=current_user.id, status=task_status, priority=priority)
    return task_page(items, total, p["page"], p["size"], utcnow())


@app.get("/tasks/all", response_model=schemas.Page[schemas.TaskOut])
def get_all_tasks(p: dict = Depends(page_params),
                  current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    require_admin(current_user)
    items, total = crud.list_tasks(db, **p)
    return task_page(items, total, p["page"], p["size"], utcnow())


@app.get("/tasks/user/{user_id}", response_model=schemas.Page[schemas.TaskOut])
def get_tasks_by_user(user_id: int = Path(...), task_status: Optional[TaskStatus] = Query(None, alias="status"),
                      p: dict = Depends(page_params),
                      current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    require_admin(current_user)
    crud.get_user_or_404(db, user_id)
    items, total = crud.list_tasks(db, **p, owner_id=user_id, status=task_status)
    return task_page(items, total, p["page"], p["size"], utcnow())


@app.get("/tasks/status/{task_status}", response_model=List[schemas.TaskOut])
def get_tasks_by_status(task_status: TaskStatus, current_user: models.User = Depends(auth.get_current_user),
                        db: Session = Depends(get_db)):
    return task_list(crud.tasks_by_status(db, task_status, current_user.id), utcnow())


@app.get("/tasks/priority/{priority}", response_model=List[schemas.TaskOut])
def get_tasks_by_priority(priority: TaskPriority, current_user: models.User = Depends(auth.get_current_user),
                          db: Session = Depends(get_db)):
    return task_list(crud.tasks_by_priority(db, priority, current_user.id), utcnow())


@app.get("/tasks/search", response_model=schemas.Page[schemas.TaskOut])
def search_tasks(q: str = Query(..., min_length=1), p: dict = Depends(page_params),
                 current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    items, total = crud.search_tasks(db, q, **p, owner_id=current_user.id)
    return task_page(items, total, p["page"], p["size"], utcnow())


@app.get("/tasks/search/all", response_model=schemas.Page[schemas.TaskOut])
def search_all_tasks(q: str = Query(..., min_length=1), p: dict = Depends(page_params),
                     current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    require_admin(current_user)
    items, total = crud.search_tasks(db, q, **p)
    return task_page(items, total, p["page"], p["size"], utcnow())


@app.get("/tasks/overdue", response_model=List[schemas.TaskOut])
def get_overdue_tasks(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    now = utcnow()
    return task_list(crud.overdue_tasks(db, now, current_user.id), now)


@app.get("/tasks/overdue/all", response_model=List[schemas.TaskOut])
def get_all_overdue_tasks(current_user: models.User = Depends(auth.get_current_user),
                          db: Session = Depends(get_db)):
    require_admin(current_user)
    now = utcnow()
    return task_list(crud.overdue_tasks(db, now), now)


@app.get("/tasks/due-soon", response_model=List[schemas.TaskOut])
def get_tasks_due_soon(hours: int = Query(24, ge=1, le=config.MAX_WINDOW_HOURS),
                       current_user: models.User = Depends(auth.get_current_user),
                       db: Session = Depends(get_db)):
    now = utcnow()
    return task_list(crud.tasks_due_soon(db, now, hours, current_user.id), now)


@app.get("/tasks/due", response_model=List[schemas.TaskOut])
def get_tasks_due_between(start: datetime, end: datetime,
                          current_user: models.User = Depends(auth.get_current_user),
                          db: Session = Depends(get_db)):
    start, end = schemas.to_naive_utc(start), schemas.to_naive_utc(end)
    if end < start:
        raise ValidationFailure("'end' must not be before 'start'")
    return task_list(crud.tasks_due_between(db, start, end, current_user.id), utcnow())


@app.get("/tasks/completed", response_model=List[schemas.TaskOut])
def get_recently_completed_tasks(days: int = Query(7, ge=0, le=config.MAX_WINDOW_DAYS),
                                 limit: int = Query(10, ge=1, le=config.MAX_PAGE_SIZE),
                                 current_user: models.User = Depends(auth.get_current_user),
                                 db: Session = Depends(get_db)):
    now = utcnow()
    tasks = crud.recently_completed_tasks(db, now - timedelta(days=days), current_user.id, limit)
    return task_list(tasks, now)


@app.get("/tasks/statistics", response_model=schemas.TaskStatistics)
def get_task_statistics(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return statistics.task_statistics(db, utcnow(), current_user.id)


@app.get("/tasks/statistics/overall", response_model=schemas.TaskStatistics)
def get_overall_task_statistics(current_user: models.User = Depends(auth.get_current_user),
                                db: Session = Depends(get_db)):
    require_admin(current_user)
    return statistics.task_statistics(db, utcnow())


@app.get("/tasks/{task_id}", response_model=schemas.TaskOut)
def get_task_details(task_id: int = Path(...), current_user: models.User = Depends(auth.get_current_user),
                     db: Session = Depends(get_db)):
    return schemas.task_out(crud.get_task_for_user(db, task_id, current_user))


@app.put("/tasks/{task_id}", response_model=schemas.TaskOut)
def update_task(task_id: int, task_update: schemas.TaskUpdate,
                current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    """Replace a task's title, description and due date.

    `status` and `priority` are optional here: when omitted the stored values
    are kept rather than reset.
    """
    return schemas.task_out(crud.update_task(db, task_id, task_update, current_user))


@app.patch("/tasks/{task_id}/status", response_model=schemas.TaskOut)
def update_task_status(task_id: int, new_status: TaskStatus = Query(..., alias="status"),
                       current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    return schemas.task_out(crud.update_task_status(db, task_id, new_status, current_user))


@app.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(task_id: int, current_user: models.User = Depends(auth.get_current_user),
                db: Session = Depends(get_db)):
    crud.delete_task(db, task_id, current_user)
    return None


# USERS
@app.get("/users/profile", response_model=schemas.UserOut)
def get_profile(current_user: models.User = Depends(auth.get_current_user)):
    return schemas.user_out(current_user)


@app.put("/users/profile", response_model=schemas.UserOut)
def update_profile(user_update: schemas.UserUpdate, current_user: models.User = Depends(auth.get_current_user),
                   db: Session = Depends(get_db)):
    return schemas.user_out(crud.update_user_profile(db, current_user, user_update))


@app.get("/users", response_model=schemas.Page[schemas.UserOut])
def get_users(p: dict = Depends(page_params), current_user: models.User = Depends(auth.get_current_user),
              db: Session = Depends(get_db)):
    require_admin(current_user)
    items, total = crud.list_users(db, **p)
    return schemas.make_page([schemas.user_out(u) for u in items], total, p["page"], p["size"])


@app.get("/users/search", response_model=schemas.Page[schemas.UserOut])
def search_users(q: str = Query(..., min_length=1), page: int = Query(0, ge=0, le=MAX_PAGE),
                 size: int = Query(config.DEFAULT_PAGE_SIZE, ge=1, le=config.MAX_PAGE_SIZE),
                 current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    require_admin(current_user)
    items, total = crud.search_users(db, q, page, size)
    return schemas.make_page([schemas.user_out(u) for u in items], total, page, size)


@app.get("/users/role/{role}", response_model=List[schemas.UserOut])
def get_users_by_role(role: Role, current_user: models.User = Depends(auth.get_current_user),
                      db: Session = Depends(get_db)):
    require_admin(current_user)
    return [schemas.user_out(u) for u in crud.list_users_by_role(db, role)]


@app.get("/users/enabled", response_model=List[schemas.UserOut])
def get_enabled_users(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    require_admin(current_user)
    return [schemas.user_out(u) for u in crud.list_enabled_users(db)]


@app.get("/users/active", response_model=List[schemas.UserOut])
def get_most_active_users(limit: int = Query(10, ge=1, le=config.MAX_PAGE_SIZE),
                          current_user: models.User = Depends(auth.get_current_user),
                          db: Session = Depends(get_db)):
    require_admin(current_user)
    return [schemas.user_out(u) for u in crud.most_active_users(db, limit)]


@app.get("/users/tasks-due-soon", response_model=List[schemas.UserOut])
def get_users_with_tasks_due_soon(hours: int = Query(24, ge=1, le=config.MAX_WINDOW_HOURS),
                                  current_user: models.User = Depends(auth.get_current_user),
                                  db: Session = Depends(get_db)):
    require_admin(current_user)
    return [schemas.user_out(u) for u in crud.users_with_tasks_due_soon(db, utcnow(), hours)]


@app.get("/users/statistics", response_model=schemas.UserStatistics)
def get_user_statistics(current_user: models.User = Depends(auth.get_current_user), db: Session = Depends(get_db)):
    require_admin(current_user)
    return statistics.user_statistics(db)


@app.get("/users/{user_id}", response_model=schemas.UserOut)
def get_user(user_id: int, current_user: models.User = Depends(auth.get_current_user),
             db: Session = Depends(get_db)):
    require_admin(current_user)
    return schemas.user_out(crud.get_user_or_404(db, user_id))


@app.put("/users/{user_id}/role", response_model=schemas.UserOut)
def update_user_role(user_id: int, role: Role, current_user: models.User = Depends(auth.get_current_user),
                     db: Session = Depends(get_db)):
    require_admin(current_user)
    return schemas.user_out(crud.update_user_role(db, user_id, role))


@app.put("/users/{user_id}/status", response_model=schemas.UserOut)
def toggle_user_status(user_id: int, current_user: models.User = Depends(auth.get_current_user),
                       db: Session = Depends(get_db)):
    require_admin(current_user)
    return schemas.user_out(crud.toggle_user_status(db, user_id))


@app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(user_id: int, current_user: models.User = Depends(auth.get_current_user),
                db: Session = Depends(get_db)):
    require_admin(current_user)
    crud.delete_user(db, user_id)
    return None


# SMS
def date_range(start_date: datetime, end_date: datetime):
    start, end = schemas.to_naive_utc(start_date), schemas.to_naive_utc(end_date)
    if end < start:
        raise ValidationFailure("'end_date' must not be before 'start_date'")
    return start, end


@app.post("/sms/messages", response_model=schemas.SmsMessageOut, status_code=status.HTTP_201_CREATED)
def create_sms_message(message: schemas.SmsMessageCreate,
                       current_user: models.User = Depends(auth.get_current_user),
                       db: Session = Depends(get_db)):
    return schemas.sms_out(crud.create_message(db, message))


@app.get("/sms/messages", response_model=schemas.Page[schemas.SmsMessageOut])
def get_sms_messages(p: dict = Depends(page_params), current_user: models.User = Depends(auth.get_current_user),
                     db: Session = Depends(get_db)):
    items, total = crud.list_messages(db, **p)
    return schemas.make_page([schemas.sms_out(m) for m in items], total, p["page"], p["size"])


@app.get("/sms/messages/by-message-id/{message_id}", response_model=schemas.SmsMessageOut)
def get_sms_message_by_message_id(message_id: str, current_user: models.User = Depends(auth.get_current_user),
                                  db: Session = Depends(get_db)):
    return schemas.sms_out(crud.get_message_by_message_id(db, message_id))


@app.get("/sms/messages/operator/{operator_id}", response_model=schemas.Page[schemas.SmsMessageOut])
def get_sms_messages_by_operator(operator_id: int, p: dict = Depends(page_params),
                                 current_user: models.User = Depends(auth.get_current_user),
                                 db: Session = Depends(get_db)):
    items, total = crud.list_messages(db, **p, operator_id=operator_id)
    return schemas.make_page([schemas.sms_out(m) for m in items], total, p["page"], p["size"])


@app.get("/sms/messages/status/{sms_status}", response_model=List[schemas.SmsMessageOut])
def get_sms_messages_by_status(sms_status: SmsStatus, current_user: models.User = Depends(auth.get_current_user),
                               db: Session = Depends(get_db)):
    return [schemas.sms_out(m) for m in crud.messages_by_status(db, sms_status)]


@app.get("/sms/messages/{sms_id}", response_model=schemas.SmsMessageOut)
def get_sms_message(sms_id: int, current_user: models.User = Depends(auth.get_current_user),
                    db: Session = Depends(get_db)):
    return schemas.sms_out(crud.get_message_or_404(db, sms_id))


@app.put("/sms/messages/{sms_id}/status", response_model=schemas.SmsMessageOut)
def update_sms_message_status(sms_id: int, new_status: SmsStatus = Query(..., alias="status"),
                              current_user: models.User = Depends(auth.get_current_user),
                              db: Session = Depends(get_db)):
    return schemas.sms_out(crud.update_message_status(db, sms_id, new_status))


@app.delete("/sms/messages/{sms_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_sms_message(sms_id: int, current_user: models.User = Depends(auth.get_current_user),
                       db: Session = Depends(get_db)):
    require_admin(current_user)
    crud.delete_message(db, sms_id)
    return None


@app.get("/sms/statistics/delivery", response_model=schemas.DeliveryStatistics)
def get_sms_delivery_statistics(start_date: datetime, end_date: datetime,
                                current_user: models.User = Depends(auth.get_current_user),
                                db: Session = Depends(get_db)):
    require_admin(current_user)
    return statistics.delivery_statistics(db, *date_range(start_date, end_date))


@app.get("/sms/statistics/operators", response_model=List[schemas.OperatorStatusCount])
def get_sms_operator_statistics(start_date: datetime, end_date: datetime,
                                current_user: models.User = Depends(auth.get_current_user),
                                db: Session = Depends(get_db)):
    require_admin(current_user)
    return statistics.operator_statistics(db, *date_range(start_date, end_date))
