"""Shared fixtures: environment for Settings, in-memory SQLite store, row factories."""
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-0123456789")
os.environ.setdefault("EXOTEL_SID", "testsid")
os.environ.setdefault("EXOTEL_API_KEY", "key")
os.environ.setdefault("EXOTEL_API_TOKEN", "token")
os.environ.setdefault("CB_STORAGE", "memory")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.base import Base
from app.models.audit_log import AuditLog  # noqa: F401
from app.models.budget_config import BudgetConfig
from app.models.call_credit import CreditAllocation
from app.models.call_session import CallSession
from app.models.payment import Payment
from app.models.plan import Plan
from app.models.provider_webhook_event import ProviderWebhookEvent  # noqa: F401
from app.models.user import User
from app.services import circuit_breaker


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def fresh_breakers():
    circuit_breaker._breakers.clear()
    yield
    circuit_breaker._breakers.clear()


@pytest.fixture()
def make_user(db):
    def _make(**kwargs):
        user = User(
            id=kwargs.get("id", str(uuid4())),
            name=kwargs.get("name", "Test User"),
            phone=kwargs.get("phone", "9876543210"),
            role=kwargs.get("role", "user"),
            status=kwargs.get("status", "active"),
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture()
def make_allocation(db):
    def _make(user_id, remaining=5, purchased=None, expires_in_days=90, plan_id=None, **kwargs):
        now = datetime.now(timezone.utc)
        allocation = CreditAllocation(
            user_id=user_id,
            plan_id=plan_id,
            credits_purchased=purchased if purchased is not None else remaining,
            credits_remaining=remaining,
            expires_at=now + timedelta(days=expires_in_days),
            admin_allocated=kwargs.get("admin_allocated", plan_id is None),
            created_at=kwargs.get("created_at", now),
        )
        db.add(allocation)
        db.commit()
        return allocation

    return _make


@pytest.fixture()
def make_session(db):
    def _make(caller_id, receiver_id, **kwargs):
        session = CallSession(
            caller_id=caller_id,
            receiver_id=receiver_id,
            external_call_id=kwargs.get("external_call_id", f"CA{uuid4().hex[:16]}"),
            status=kwargs.get("status", "initiated"),
            duration_seconds=kwargs.get("duration_seconds", 0),
            created_at=kwargs.get("created_at", datetime.now(timezone.utc)),
        )
        db.add(session)
        db.commit()
        return session

    return _make


@pytest.fixture()
def make_plan(db):
    def _make(**kwargs):
        plan = Plan(
            id=kwargs.get("id", str(uuid4())),
            name=kwargs.get("name", "Call Pack 10"),
            plan_type=kwargs.get("plan_type", "call"),
            call_credits=kwargs.get("call_credits", 10),
            price=Decimal(kwargs.get("price", "499.00")),
        )
        db.add(plan)
        db.commit()
        return plan

    return _make


@pytest.fixture()
def make_payment(db):
    def _make(user_id, plan_id, **kwargs):
        payment = Payment(
            user_id=user_id,
            plan_id=plan_id,
            amount=Decimal(kwargs.get("amount", "499.00")),
            status=kwargs.get("status", "pending"),
        )
        db.add(payment)
        db.commit()
        return payment

    return _make


@pytest.fixture()
def budget(db):
    row = BudgetConfig(id=1, total_credits=10000, cost_per_minute=Decimal("2.50"), monthly_limit=5000)
    db.add(row)
    db.commit()
    return row
