"""
Treatment AI Backend — Database Engine & Transactions
======================================================

What:  The asyncpg engine, the ORM base, and the two ways of getting a
       transaction: `get_db_session` (one per request) and
       `independent_session` (one per block, outside the request).
Who:   Routes and `deps.get_current_user` depend on `get_db_session`; the
       same session serves both through FastAPI's dependency cache.

Transactions:
    The request transaction commits when the handler returns and rolls back
    when it raises. Accepting an account-link invitation (invitation update
    plus two link upserts) relies on that all-or-nothing behaviour.

    A handler that records a failure and then raises would lose the record
    with the rollback. Those writes go through `independent_session`:
        - denied linked-account access (account_link_service)
        - wrong login codes and failed passwords (auth_service)
        - the startup sweep of expired invitations (main)

Pool:
    DB_POOL_SIZE persistent + DB_MAX_OVERFLOW burst connections, pre-pinged
    (DB_POOL_PRE_PING), recycled hourly.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from treatment_api.config import settings

POOL_RECYCLE_SECONDS = 3600

engine = create_async_engine(
    settings.database_url,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=settings.db_pool_pre_ping,
    pool_recycle=POOL_RECYCLE_SECONDS,
    echo=settings.log_level == "DEBUG",
)

# Services hand ORM rows back to routes after the commit; keep them loaded
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base; its metadata is what Alembic autogenerates against."""


@asynccontextmanager
async def independent_session() -> AsyncIterator[AsyncSession]:
    """
    A session with its own transaction: committed when the block exits
    normally, rolled back when it raises.

        async with independent_session() as db:
            db.add(AccountAccessLog(...))
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Request-scoped session dependency.

    Exceptions raised by the handler are thrown back in at the `yield`, so
    any failure, database or not, rolls the request's writes back.
    """
    async with independent_session() as session:
        yield session


async def dispose_engine() -> None:
    await engine.dispose()
