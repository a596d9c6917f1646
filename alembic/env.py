"""Alembic environment — SafeVoice ``kv_store`` migrations.

The URL comes from the same place the application reads it: ``DATABASE_URL``
(via ``.env``), then the SQLite file default, so ``alembic upgrade head``
and ``python -m safevoice`` always touch the same database.
"""

from __future__ import annotations

import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

load_dotenv()

config = context.config

# Import after load_dotenv so the defaults see the environment
from safevoice.database.engine import DEFAULT_DATABASE_URL  # noqa: E402
from safevoice.database.models import Base, KeyValueRecord  # noqa: E402

config.set_main_option("sqlalchemy.url", os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL)

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata

# Autogenerate manages only the snapshot table
_MANAGED_TABLES = {KeyValueRecord.__tablename__}


def include_object(obj, name, type_, reflected, compare_to) -> bool:
    if type_ == "table":
        return name in _MANAGED_TABLES
    return True


def _configure(**kwargs) -> None:
    url = config.get_main_option("sqlalchemy.url") or ""
    context.configure(
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        # SQLite cannot ALTER columns in place
        render_as_batch=url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL for the ``kv_store`` schema without connecting."""
    _configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
