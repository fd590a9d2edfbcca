from __future__ import annotations
from logging.config import fileConfig
from sqlalchemy import engine_from_config, pool
from alembic import context
from telemetry_ingest.infrastructure.db import Base, _dsn
from telemetry_ingest.models import tables  # noqa: F401  register tables on Base.metadata

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs):
    url = _dsn()
    # SQLite cannot ALTER constraints in place; batch mode rebuilds the table
    context.configure(target_metadata=target_metadata, compare_type=True,
                      render_as_batch=url.startswith("sqlite"), **kwargs)


def run_migrations_offline():
    _configure(url=_dsn(), literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    connectable = engine_from_config({"sqlalchemy.url": _dsn()}, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
