import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["EMAIL_BACKEND"] = "console"

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from task_manager import crud, schemas
from task_manager.auth import token_issuer
from task_manager.database import Base, SessionLocal, engine
from task_manager.main import app
from task_manager.models import Role

PASSWORD = "s3cret-pass"


class FakeClock:
    """Settable clock for TokenIssuer."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client() -> TestClient:
    return TestClient(app)


def make_user(db, username: str, role: Role = Role.USER):
    return crud.create_user(
        db,
        schemas.UserCreate(
            username=username,
            email=f"{username}@example.com",
            password=PASSWORD,
            first_name=username.capitalize(),
            last_name="Tester",
        ),
        role=role,
    )


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {token_issuer.issue(user.username)}"}


@pytest.fixture()
def alice(db):
    return make_user(db, "alice")


@pytest.fixture()
def bob(db):
    return make_user(db, "bob")


@pytest.fixture()
def admin(db):
    return make_user(db, "root", role=Role.ADMIN)
