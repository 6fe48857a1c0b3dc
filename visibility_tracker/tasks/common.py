"""Helpers shared by the Celery tasks."""

import asyncio


def _run_async(coro):
    """Run an async coroutine from sync Celery task context.

    Creates a fresh event loop each time to avoid conflicts with
    the module-level SQLAlchemy engine (which may be bound to a
    different loop created by uvicorn).
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _make_session_factory():
    """Create a fresh async engine + session factory for Celery worker context.

    The module-level engine from visibility_tracker.db.postgres is bound to
    uvicorn's event loop and cannot be reused in a new event loop created by
    _run_async(). The caller disposes the engine.
    """
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    from visibility_tracker.core.config import settings

    engine = create_async_engine(
        settings.postgres_url,
        echo=False,
        pool_size=10,
        max_overflow=10,
        pool_pre_ping=True,
    )
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False), engine
