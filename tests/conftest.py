import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone  # noqa: E402
from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import app.models  # noqa: E402,F401
from app.database import Base  # noqa: E402
from app.models import Organization  # noqa: E402

FIXED_NOW = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)  # 10:00 in Bangkok


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    return sessionmaker(bind=sqlite_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def sqlite_db(session_factory):
    """Real in-memory database session."""
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def make_org(sqlite_db):
    def _make_org(line_user_id="U-test", line_group_id=None, **fields):
        values = {
            "plan": "free",
            "ai_chats_today": 0,
            "ai_chats_reset_at": FIXED_NOW,
            "tasks_this_month": 0,
            "tasks_reset_at": FIXED_NOW,
            "storage_used_bytes": 0,
        }
        values.update(fields)
        org = Organization(
            line_user_id=None if line_group_id else line_user_id,
            line_group_id=line_group_id,
            **values,
        )
        sqlite_db.add(org)
        sqlite_db.commit()
        return org

    return _make_org


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    from app.config import settings

    monkeypatch.setattr(settings, "line_channel_secret", "line-secret")
    monkeypatch.setattr(settings, "line_channel_access_token", "line-token")
    monkeypatch.setattr(settings, "quota_timezone", "Asia/Bangkok")
    return settings
