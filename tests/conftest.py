import os

# Settings are read at import time, so pin the environment before fleethub loads
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("ENABLE_EMAIL", "false")
os.environ.setdefault("TZ_DEFAULT", "America/Vancouver")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("JWT_SECRET", "test-secret")

import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fleethub.auth.security import create_access_token
from fleethub.db import Base, get_db
from fleethub.main import app
from fleethub.models.models import Asset, PushToken, User
from fleethub.services import notifications


# Mid-January keeps America/Vancouver on a fixed UTC-8 offset
NOW = datetime(2026, 1, 15, 20, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def pushes(monkeypatch):
    """Replace Expo delivery with a recorder; each call is (user_ids, title, body, data)."""
    sent = []

    class FakePushDispatcher:
        def __init__(self, db, *args, **kwargs):
            self.db = db

        def send(self, user_ids, title, body, data=None):
            sent.append((list(user_ids), title, body, data))
            return notifications.PushResult(success=True, tokens_sent=len(sent[-1][0]))

    monkeypatch.setattr(notifications, "PushDispatcher", FakePushDispatcher)
    return sent


@pytest.fixture(autouse=True)
def _no_real_push(pushes):
    yield


def make_user(db, role="user", linked_admin=None, email=None, first_name=None, is_active=True):
    user = User(
        id=uuid.uuid4(),
        email=email or f"{uuid.uuid4().hex[:8]}@fleet.test",
        first_name=first_name,
        role=role,
        linked_admin_id=linked_admin.id if linked_admin else None,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_asset(db, owner, **values):
    values.setdefault("name", "Truck 1")
    values.setdefault("vin", "1HT")
    asset = Asset(owner_id=owner.id, created_by=owner.id, **values)
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset


def add_push_token(db, user, token=None):
    row = PushToken(user_id=user.id, token=token or f"ExponentPushToken[{uuid.uuid4().hex}]")
    db.add(row)
    db.commit()
    return row


def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


@pytest.fixture
def admin(db):
    return make_user(db, role="admin", email="admin@fleet.test", first_name="Dana")


@pytest.fixture
def crew(db, admin):
    return [make_user(db, linked_admin=admin) for _ in range(3)]
