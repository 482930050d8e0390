"""
Database session management with SQLAlchemy async
"""

from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool, StaticPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_state_engine(url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """
    Create the engine backing the pipeline's own state store.

    SQLite URLs get SAVEPOINT-capable transaction handling; in-memory
    SQLite shares one connection so every session sees the same tables.
    """
    url = url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        pool_kwargs = {"poolclass": StaticPool} if ":memory:" in url else {}
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            **pool_kwargs
        )
        enable_sqlite_savepoints(engine)
        return engine

    return create_async_engine(
        url,
        echo=echo,
        poolclass=NullPool,
    )


def enable_sqlite_savepoints(engine: AsyncEngine):
    """
    Let SQLAlchemy emit BEGIN itself so SAVEPOINT and transactional
    DDL behave on sqlite3/aiosqlite connections.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create session factory bound to the given engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def init_state_store(engine: AsyncEngine):
    """Create state store tables if they do not exist"""
    from models.base import Base
    import models.delta_sync  # noqa: F401
    import models.import_execution  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("State store tables ready")

