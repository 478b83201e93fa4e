"""
Alembic Environment — Treatment AI
===================================

The URL always comes from DATABASE_URL (treatment_api.config); alembic.ini
carries only logging setup. Importing treatment_api.models registers every
table on Base.metadata for --autogenerate.

Autogenerate notes:
    - compare_type is on so Vector(1536) / JSONB / INET changes are caught
    - a revision with no operations is discarded instead of written
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

import treatment_api.models  # noqa: F401
from treatment_api.config import settings
from treatment_api.database import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

CONFIGURE_OPTIONS = {
    "target_metadata": Base.metadata,
    "compare_type": True,
}


def skip_empty_revisions(migration_context, revision, directives):
    if getattr(config.cmd_opts, "autogenerate", False) and directives[0].upgrade_ops.is_empty():
        directives[:] = []


def run_offline() -> None:
    """`alembic upgrade --sql`: print the SQL instead of connecting."""
    context.configure(
        url=settings.database_url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **CONFIGURE_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


def _migrate(connection) -> None:
    context.configure(
        connection=connection,
        process_revision_directives=skip_empty_revisions,
        **CONFIGURE_OPTIONS,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_online() -> None:
    # Migrations run once per invocation; a pool would only linger
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(_migrate)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_offline()
else:
    asyncio.run(run_online())
