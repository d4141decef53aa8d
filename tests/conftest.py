"""
Shared pytest fixtures for all test modules.

Uses an in-memory SQLite database (StaticPool) so every test
function gets a clean, isolated database.  Environment is set before the
application modules are imported so settings never point at MySQL.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("REDIS_ENABLED", "false")

import pytest
from decimal import Decimal
from typing import Optional

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, get_db
import models
from models.rider import RiderStatus
from models.user import UserType
from services.collection_processor import CollectionProcessor
from services.order_gateway import SqlOrderGateway
from utils.rate_guard import MemoryWindowStore, RateGuard
from utils.security import create_access_token


# ---------------------------------------------------------------------------
# StaticPool forces all SQLAlchemy connections to reuse the same underlying
# sqlite3 connection, which is required for in-memory SQLite.
# ---------------------------------------------------------------------------
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=TEST_ENGINE)


@pytest.fixture(autouse=True)
def reset_db():
    """Drop and recreate all tables before each test for full isolation."""
    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db(reset_db):
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db):
    """
    TestClient with get_db overridden.  Not used as a context manager, so the
    startup hook (table creation, sweep scheduler) is skipped.
    """
    from app import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.state.rate_guard.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.rate_guard.reset()


# ---------------------------------------------------------------------------
# Helpers (not fixtures) so any test file can import and call them directly.
# ---------------------------------------------------------------------------
_counter = {"n": 0}


def _next() -> int:
    _counter["n"] += 1
    return _counter["n"]


def make_user(db, user_type: UserType = UserType.rider, full_name: Optional[str] = None,
              is_active: bool = True) -> models.User:
    n = _next()
    user = models.User(
        full_name=full_name or f"User {n}",
        email=f"user{n}@example.com",
        phone_number=f"0917000{n:04d}",
        user_type=user_type,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_admin(db) -> models.User:
    return make_user(db, user_type=UserType.admin, full_name="Admin")


def make_rider(db, can_collect_cod: bool = True, status: RiderStatus = RiderStatus.active,
               full_name: Optional[str] = None) -> models.Rider:
    user = make_user(db, UserType.rider, full_name=full_name)
    rider = models.Rider(
        user_id=user.user_id,
        vehicle_type="motorcycle",
        status=status,
        can_collect_cod=can_collect_cod,
    )
    db.add(rider)
    db.commit()
    db.refresh(rider)
    return rider


def make_order(db, rider=None, total="18.50", status: str = "out_for_delivery",
               payment_method: str = "cod") -> models.Order:
    order = models.Order(
        order_number=f"ORD-{_next():05d}",
        total_amount=Decimal(str(total)),
        status=status,
        payment_method=payment_method,
        assigned_rider_id=rider.rider_id if rider else None,
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def make_processor(db, max_attempts: int = 10, **kwargs) -> CollectionProcessor:
    guard = RateGuard(MemoryWindowStore(), max_attempts=max_attempts, window_seconds=3600)
    return CollectionProcessor(db, SqlOrderGateway(db), guard, **kwargs)


def auth_headers(user) -> dict:
    token = create_access_token({"sub": user.user_id})
    return {"Authorization": f"Bearer {token}"}
