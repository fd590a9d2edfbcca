from __future__ import annotations
from sqlalchemy import create_engine, insert, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from telemetry_ingest.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    s = get_settings()
    if s.database_url:
        return s.database_url
    if not s.supabase_project_ref or not s.supabase_db_password:
        raise RuntimeError(
            "Database configuration required. Set DATABASE_URL, or SUPABASE_PROJECT_REF and SUPABASE_DB_PASSWORD."
        )
    host = f"db.{s.supabase_project_ref}.supabase.co"
    return f"postgresql+psycopg2://{s.supabase_db_user}:{s.supabase_db_password}@{host}:5432/{s.supabase_db_name}?sslmode=require"


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # writers from several threads share one file; wait on the lock instead of failing fast
        return {"connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"pool_pre_ping": True}


def _make_sessionmaker(bind):
    from telemetry_ingest.security.access import GuardedSession
    return sessionmaker(bind=bind, class_=GuardedSession, autoflush=False, expire_on_commit=False)


engine = create_engine(_dsn(), **_engine_kwargs(_dsn()))
SessionLocal = _make_sessionmaker(engine)


def override_engine(e):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = _make_sessionmaker(engine)


def init_db(bind=None):
    """Create all tables directly from metadata (tests / local dev; production uses alembic)."""
    from telemetry_ingest.models import tables  # noqa: F401  register mappers
    Base.metadata.create_all(bind or engine)


def insert_ignoring_conflicts(session, model, values: dict, index_elements: list[str]) -> bool:
    """INSERT that silently skips rows colliding on ``index_elements``; returns whether a row was written.

    Atomic on PostgreSQL/SQLite (ON CONFLICT DO NOTHING); elsewhere a savepoint absorbs the integrity error.
    """
    table = getattr(model, "__table__", model)
    dialect = session.get_bind().dialect.name
    if dialect in ("postgresql", "sqlite"):
        ins = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = ins(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
        return (session.execute(stmt).rowcount or 0) > 0
    try:
        with session.begin_nested():
            session.execute(insert(table).values(**values))
        return True
    except IntegrityError:
        return False


def healthcheck() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
        return True
