from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from models import storage
from models.school import School
from models.user import Role, User
from school_api import create_app
from tests.support import STRONG_PASSWORD
from utils.security import hash_password


_password_hashes: dict = {}


def password_hash(password: str) -> str:
    # argon2 hashing dominates suite runtime; one hash per distinct password
    if password not in _password_hashes:
        _password_hashes[password] = hash_password(password)
    return _password_hashes[password]


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'school-admin-test.db'}"


@pytest.fixture
def app(db_url: str):
    app = create_app("test", overrides={"DATABASE_URL": db_url})
    yield app
    app.extensions["audit_logger"].shutdown()
    storage.close()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_school(app) -> Callable[..., School]:
    def _make(name: str = "Springfield Elementary") -> School:
        school = School(name=name)
        storage.new(school)
        storage.save()
        return school

    return _make


@pytest.fixture
def school(make_school) -> School:
    return make_school()


@pytest.fixture
def make_user(app) -> Callable[..., User]:
    counter = {"n": 0}

    def _make(
        email: Optional[str] = None,
        role: Role = Role.LEARNER,
        school: Optional[School] = None,
        password: str = STRONG_PASSWORD,
        is_active: bool = True,
    ) -> User:
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@example.org",
            password_hash=password_hash(password),
            first_name="Test",
            last_name=f"User{counter['n']}",
            role=role,
            school_id=school.id if school is not None else None,
            is_active=is_active,
        )
        storage.new(user)
        storage.save()
        return user

    return _make


@pytest.fixture
def auth_headers(app) -> Callable[[User], dict]:
    def _headers(user: User) -> dict:
        token = app.extensions["token_issuer"].create_access_token(user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def login(client):
    """POST /auth/login from a given client address; returns the response."""
    def _login(email: str, password: str = STRONG_PASSWORD, ip: str = "127.0.0.1"):
        return client.post(
            "/api/v1/auth/login",
            json={"email": email, "password": password},
            environ_base={"REMOTE_ADDR": ip},
        )

    return _login
