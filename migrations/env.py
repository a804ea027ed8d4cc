# migrations/env.py
from __future__ import annotations

import os
import asyncio
from logging.config import fileConfig
from alembic import context
from sqlalchemy import pool, text
from sqlalchemy.ext.asyncio import create_async_engine

from dotenv import load_dotenv

# Load .env before settings
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
load_dotenv(env_path)

from wipac.runflow.core.config import settings
from wipac.runflow.core.db import Base
import wipac.runflow.store.models  # noqa: F401,E402


config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


# ────────────────────────────────────────────
# Restrict Alembic to the runflow schema when one is configured
# ────────────────────────────────────────────
def include_object(object, name, type_, reflected, compare_to):
    schema = settings.database_schema
    if schema is None:
        return True

    if type_ == "table":
        model_schema = object.schema or schema
        db_schema = compare_to.schema if compare_to is not None else schema
        return model_schema == db_schema == schema

    return True


def include_name(name, type_, parent_names):
    schema = settings.database_schema
    if schema is not None and type_ == "schema":
        return name == schema
    return True


def _configure_kwargs() -> dict:
    schema = settings.database_schema
    return dict(
        target_metadata=target_metadata,
        include_object=include_object,
        include_name=include_name,
        compare_server_default=True,
        compare_type=True,
        include_schemas=schema is not None,
        version_table_schema=schema,
    )


# ────────────────────────────────────────────
# OFFLINE migrations
# ────────────────────────────────────────────


def run_migrations_offline() -> None:
    context.configure(
        url=settings.database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_kwargs(),
    )

    with context.begin_transaction():
        context.run_migrations()


# ────────────────────────────────────────────
# Helper: run migrations inside a sync conn
# ────────────────────────────────────────────
def do_run_migrations(connection):
    context.configure(connection=connection, **_configure_kwargs())
    with context.begin_transaction():
        context.run_migrations()


# ────────────────────────────────────────────
# ONLINE migrations (async)
# ────────────────────────────────────────────
async def run_migrations_online() -> None:
    engine = create_async_engine(
        settings.database_url,
        poolclass=pool.NullPool,
        future=True,
    )

    async with engine.begin() as conn:
        if settings.database_schema:
            await conn.execute(
                text(f'CREATE SCHEMA IF NOT EXISTS "{settings.database_schema}"')
            )
        await conn.run_sync(do_run_migrations)

    await engine.dispose()


# ────────────────────────────────────────────
# Entrypoint
# ────────────────────────────────────────────
if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
