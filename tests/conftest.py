"""
Pytest configuration: per-test SQLite database, fake clock and store fixtures.
"""

import os

# Must be set before telemetry_ingest.infrastructure.db builds its default engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_ENV", "test")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select

from telemetry_ingest.config import reset_settings
from telemetry_ingest.infrastructure import db
from telemetry_ingest.models.tables import TelemetryAuditLog
from telemetry_ingest.telemetry_store import TelemetryStore

NOW = datetime(2026, 10, 18, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def _fresh_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def engine(tmp_path):
    e = create_engine(
        f"sqlite:///{tmp_path / 'telemetry.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    db.init_db(e)
    db.override_engine(e)
    yield e
    e.dispose()


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def store(engine, clock):
    return TelemetryStore(clock=clock)


@pytest.fixture
def count_rows(engine):
    """Count rows straight from the engine, outside the guarded session."""
    def _count(model, *where):
        with engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(model.__table__).where(*where)).scalar_one()
    return _count


@pytest.fixture
def audit_rows(engine):
    def _rows():
        with engine.connect() as conn:
            return conn.execute(
                select(TelemetryAuditLog.__table__).order_by(TelemetryAuditLog.__table__.c.created_at)
            ).mappings().all()
    return _rows


@pytest.fixture
def user_id():
    return "a" * 20


@pytest.fixture
def workflow_kwargs(user_id):
    def _make(**overrides):
        data = {
            "user_id": user_id,
            "workflow_hash": "f" * 64,
            "node_count": 3,
            "node_types": ["n8n-nodes-base.webhook", "n8n-nodes-base.slack", "n8n-nodes-base.set"],
            "has_trigger": True,
            "has_webhook": True,
            "complexity": "simple",
            "sanitized_workflow": {"nodes": [], "connections": {}},
        }
        data.update(overrides)
        return data
    return _make
