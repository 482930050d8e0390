"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine
from typing import Any, Dict, List

from core.database import create_session_factory, create_state_engine, init_state_store
from schemas.profile import FormatConfig
from schemas.target import TargetConnection

# In-memory state store shared by every session of one test
STATE_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TARGET_TABLE_DDL = """
CREATE TABLE customers (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    city TEXT,
    is_deleted TEXT DEFAULT '0'
)
"""


@pytest_asyncio.fixture(scope="function")
async def state_engine():
    """Create state store engine with all tables"""
    engine = create_state_engine(STATE_DATABASE_URL)
    await init_state_store(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(state_engine):
    return create_session_factory(state_engine)


@pytest.fixture
def target_url(tmp_path) -> str:
    """File backed SQLite database used as an import target"""
    return f"sqlite+aiosqlite:///{tmp_path / 'target.db'}"


@pytest.fixture
def target_connection(target_url) -> TargetConnection:
    return TargetConnection(database_type="Sqlite", url=target_url)


@pytest_asyncio.fixture(scope="function")
async def customers_table(target_url):
    """Create the customers target table and return the table name"""
    engine = create_async_engine(target_url)
    async with engine.begin() as conn:
        await conn.execute(text(TARGET_TABLE_DDL))
    await engine.dispose()
    return "customers"


@pytest.fixture
def fetch_rows(target_url):
    """Read back every row of a target table ordered by id"""

    async def _fetch(table: str = "customers") -> List[Dict[str, Any]]:
        engine = create_async_engine(target_url)
        try:
            async with engine.connect() as conn:
                result = await conn.execute(text(f"SELECT * FROM {table} ORDER BY id"))
                return [dict(row._mapping) for row in result]
        finally:
            await engine.dispose()

    return _fetch


@pytest.fixture
def csv_config() -> FormatConfig:
    return FormatConfig()


@pytest.fixture
def mock_customer_rows():
    """Mapped customer rows"""
    return [
        {"id": "C001", "name": "Alice", "city": "Oslo"},
        {"id": "C002", "name": "Bob", "city": "Bergen"},
        {"id": "C003", "name": "Carol", "city": "Tromso"},
    ]
