"""Shared test fixtures: in-memory database, seeded roles, users and tokens."""

import os

os.environ.setdefault("JWT_SECRET", "test-secret-that-is-definitely-32-bytes-or-more")
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from datetime import datetime, timedelta, timezone

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

import rbac.models  # noqa: F401  registers the RBAC tables
from auth.auth_manager import auth_manager
from auth.cache_manager import cache_manager
from auth.models import Base, User, configure_engine, get_db_session
from rbac.repository import RoleRepository
from rbac.schemas import AssignRoleRequest
from rbac.seed import seed_rbac
from rbac.service import AssignmentService


@pytest.fixture(autouse=True)
def clear_caches():
    cache_manager.invalidate_all()
    cache_manager.blacklist.clear()
    yield
    cache_manager.invalidate_all()
    cache_manager.blacklist.clear()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_engine(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = get_db_session()
    seed_rbac(session)
    session.commit()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    """Create an account and assign system roles by name."""
    counter = {"n": 0}

    def _make(roles=(), account_role="student", department=None, email=None, password="password123",
              is_active=True):
        counter["n"] += 1
        user = User(
            email=email or f"user{counter['n']}@university.edu",
            password_hash=auth_manager._hash_password(password),
            full_name=f"Test User {counter['n']}",
            account_role=account_role,
            department=department,
            is_active=is_active,
        )
        db.add(user)
        db.commit()
        for name in roles:
            role = RoleRepository.get_by_name(db, name)
            AssignmentService.assign(db, AssignRoleRequest(user_id=user.user_id, role_id=role.id))
        return user

    return _make


@pytest.fixture
def auth_headers():
    """Bearer headers carrying a valid access token for a user."""

    def _headers(user, expires_in=3600):
        token = jwt.encode(
            {
                "sub": user.user_id,
                "email": user.email,
                "account_role": user.account_role,
                "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            },
            auth_manager.jwt_secret,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 2, 10, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()
