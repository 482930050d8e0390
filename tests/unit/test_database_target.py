"""
Tests for the database import target against a SQLite file
"""

from unittest.mock import patch

import pytest
import pytest_asyncio

from core.cancellation import CancellationToken
from core.exceptions import ConfigurationError, ConstraintViolationError, ImportCancelledError, WriteError
from ingestion.targets.database_target import DatabaseImportTarget
from models.base import DatabaseType, ErrorKind
from schemas.target import ImportWriteContext, TargetConnection


@pytest_asyncio.fixture
async def target():
    target = DatabaseImportTarget()
    yield target
    await target.close()


@pytest.fixture
def make_context(target_connection, customers_table):
    def _make(**kwargs) -> ImportWriteContext:
        kwargs.setdefault("connection", target_connection)
        kwargs.setdefault("table_name", customers_table)
        return ImportWriteContext(**kwargs)
    return _make


class TestWriteBatch:
    """Test insert and upsert writes"""

    @pytest.mark.asyncio
    async def test_insert(self, target, make_context, mock_customer_rows, fetch_rows):
        result = await target.write_batch(mock_customer_rows, make_context(load_strategy="Insert"))

        assert result.inserted == 3
        assert result.total == 3
        rows = await fetch_rows()
        assert [r["name"] for r in rows] == ["Alice", "Bob", "Carol"]

    @pytest.mark.asyncio
    async def test_empty_batch(self, target, make_context):
        result = await target.write_batch([], make_context())

        assert result.total == 0

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, target, make_context, mock_customer_rows, fetch_rows):
        """Writing the same rows twice inserts then updates"""
        context = make_context(load_strategy="Upsert", upsert_key_columns=["id"])

        first = await target.write_batch(mock_customer_rows, context)
        second = await target.write_batch(mock_customer_rows, context)

        assert (first.inserted, first.updated) == (3, 0)
        assert (second.inserted, second.updated) == (0, 3)
        assert len(await fetch_rows()) == 3

    @pytest.mark.asyncio
    async def test_upsert_updates_values(self, target, make_context, mock_customer_rows, fetch_rows):
        context = make_context(load_strategy="Upsert", upsert_key_columns=["ID"])
        await target.write_batch(mock_customer_rows, context)

        result = await target.write_batch([{"id": "C002", "name": "Robert", "city": "Bergen"}], context)

        assert result.updated == 1
        rows = await fetch_rows()
        assert rows[1]["name"] == "Robert"

    @pytest.mark.asyncio
    async def test_upsert_without_keys_inserts(self, target, make_context, mock_customer_rows):
        result = await target.write_batch(mock_customer_rows, make_context(load_strategy="Upsert"))

        assert result.inserted == 3

    @pytest.mark.asyncio
    async def test_missing_key_column_fails_row(self, target, make_context):
        context = make_context(load_strategy="Upsert", upsert_key_columns=["id"])

        result = await target.write_batch([{"name": "Nobody"}], context, row_numbers=[7])

        assert result.failed == 1
        assert result.errors[0].row_number == 7
        assert "id" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_chunks_follow_batch_size(self, target, make_context, fetch_rows):
        rows = [{"id": f"C{i:03d}", "name": f"N{i}"} for i in range(7)]

        result = await target.write_batch(rows, make_context(batch_size=3))

        assert result.inserted == 7
        assert len(await fetch_rows()) == 7

    @pytest.mark.asyncio
    async def test_cancelled_before_first_chunk(self, target, make_context, mock_customer_rows, fetch_rows):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(ImportCancelledError):
            await target.write_batch(mock_customer_rows, make_context(), cancel=token)

        assert await fetch_rows() == []

    @pytest.mark.asyncio
    async def test_requires_connection_and_table(self, target, customers_table):
        with pytest.raises(ConfigurationError):
            await target.write_batch([{"id": "1"}], ImportWriteContext(table_name="customers"))


class TestRowFailures:
    """Test row failure and constraint policies"""

    @pytest.mark.asyncio
    async def test_constraint_skip_row(self, target, make_context, mock_customer_rows, fetch_rows):
        await target.write_batch(mock_customer_rows[:1], make_context())

        result = await target.write_batch(mock_customer_rows, make_context(on_constraint_violation="SkipRow"))

        assert (result.inserted, result.skipped, result.failed) == (2, 1, 0)
        assert len(await fetch_rows()) == 3

    @pytest.mark.asyncio
    async def test_constraint_overwrite(self, target, make_context, mock_customer_rows, fetch_rows):
        await target.write_batch(mock_customer_rows[:1], make_context())
        context = make_context(on_constraint_violation="Overwrite", upsert_key_columns=["id"])

        result = await target.write_batch([{"id": "C001", "name": "Alicia", "city": "Oslo"}], context)

        assert result.updated == 1
        rows = await fetch_rows()
        assert rows[0]["name"] == "Alicia"

    @pytest.mark.asyncio
    async def test_constraint_fail(self, target, make_context, mock_customer_rows):
        await target.write_batch(mock_customer_rows[:1], make_context())

        with pytest.raises(ConstraintViolationError) as exc_info:
            await target.write_batch(mock_customer_rows[:1], make_context(on_constraint_violation="Fail"))

        assert exc_info.value.kind == "Constraint"

    @pytest.mark.asyncio
    async def test_bad_row_is_isolated(self, target, make_context, fetch_rows):
        """A failing row rolls back alone and its neighbours commit"""
        rows = [
            {"id": "C001", "name": "Alice"},
            {"id": "C002", "name": None},
            {"id": "C003", "name": "Carol"},
        ]

        result = await target.write_batch(rows, make_context(), row_numbers=[2, 3, 4])

        assert (result.inserted, result.failed) == (2, 1)
        assert result.errors[0].row_number == 3
        assert result.errors[0].kind == ErrorKind.UNKNOWN
        assert [r["id"] for r in await fetch_rows()] == ["C001", "C003"]

    @pytest.mark.asyncio
    async def test_rollback_policy_discards_chunk(self, target, make_context, fetch_rows):
        rows = [
            {"id": "C001", "name": "Alice"},
            {"id": "C002", "name": None},
            {"id": "C003", "name": "Carol"},
        ]

        result = await target.write_batch(rows, make_context(on_row_failure="Rollback"))

        assert (result.inserted, result.skipped, result.failed) == (0, 2, 1)
        assert result.total == 3
        assert await fetch_rows() == []

    @pytest.mark.asyncio
    async def test_fail_policy_raises(self, target, make_context):
        with pytest.raises(WriteError):
            await target.write_batch([{"id": "C001", "name": None}], make_context(on_row_failure="Fail"))

    @pytest.mark.asyncio
    async def test_unknown_table_fails_chunk(self, target, target_connection):
        context = ImportWriteContext(connection=target_connection, table_name="missing_table")

        result = await target.write_batch([{"id": "1"}, {"id": "2"}], context)

        assert result.failed == 2
        assert result.total == 2


class TestFullReplace:
    """Test atomic full replace"""

    @pytest.mark.asyncio
    async def test_replaces_content(self, target, make_context, mock_customer_rows, fetch_rows):
        await target.write_batch(mock_customer_rows, make_context())

        result = await target.full_replace([{"id": "N1", "name": "New"}], make_context(load_strategy="FullReplace"))

        assert result.inserted == 1
        assert [r["id"] for r in await fetch_rows()] == ["N1"]

    @pytest.mark.asyncio
    async def test_rollback_keeps_previous_content(self, target, make_context, mock_customer_rows, fetch_rows):
        await target.write_batch(mock_customer_rows, make_context())
        context = make_context(load_strategy="FullReplace", on_row_failure="Rollback")

        result = await target.full_replace([{"id": "N1", "name": "New"}, {"id": "N2", "name": None}], context)

        assert (result.inserted, result.skipped, result.failed) == (0, 1, 1)
        assert [r["id"] for r in await fetch_rows()] == ["C001", "C002", "C003"]

    @pytest.mark.asyncio
    async def test_fail_policy_keeps_previous_content(self, target, make_context, mock_customer_rows, fetch_rows):
        await target.write_batch(mock_customer_rows, make_context())
        context = make_context(load_strategy="FullReplace", on_row_failure="Fail")

        with pytest.raises(WriteError):
            await target.full_replace([{"id": "N1", "name": "New"}, {"id": "N2", "name": None}], context)

        assert len(await fetch_rows()) == 3


class TestApplyDeletes:
    """Test delete propagation"""

    @pytest.mark.asyncio
    async def test_hard_delete(self, target, make_context, mock_customer_rows, fetch_rows):
        await target.write_batch(mock_customer_rows, make_context())
        context = make_context(natural_key_column="id", delete_strategy="HardDelete")

        affected = await target.apply_deletes(["C001", "C003", "C999"], context)

        assert affected == 2
        assert [r["id"] for r in await fetch_rows()] == ["C002"]

    @pytest.mark.asyncio
    async def test_soft_delete(self, target, make_context, mock_customer_rows, fetch_rows):
        await target.write_batch(mock_customer_rows, make_context())
        context = make_context(
            natural_key_column="id", delete_strategy="SoftDelete",
            delete_column="is_deleted", delete_value="1"
        )

        affected = await target.apply_deletes(["C002"], context)

        assert affected == 1
        flags = {r["id"]: r["is_deleted"] for r in await fetch_rows()}
        assert flags == {"C001": "0", "C002": "1", "C003": "0"}

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, target, make_context):
        assert await target.apply_deletes([], make_context(natural_key_column="id")) == 0
        assert await target.apply_deletes(["C001"], make_context(natural_key_column="id", delete_strategy="None")) == 0
        assert await target.apply_deletes(["C001"], make_context(delete_strategy="HardDelete")) == 0
        assert await target.apply_deletes(["C001"], make_context(natural_key_column="id")) == 0


class TestSchemaAndConnectivity:
    """Test catalog reads and connectivity checks"""

    @pytest.mark.asyncio
    async def test_get_table_schema(self, target, target_connection, customers_table):
        columns = await target.get_table_schema(target_connection, customers_table)

        assert [c.name for c in columns] == ["id", "name", "city", "is_deleted"]
        assert columns[0].is_primary_key
        assert not columns[1].is_nullable
        assert columns[2].is_nullable

    @pytest.mark.asyncio
    async def test_get_table_schema_without_table(self, target, target_connection):
        assert await target.get_table_schema(target_connection, None) == []

    @pytest.mark.asyncio
    async def test_connectivity(self, target, target_connection, customers_table):
        ok, message = await target.test(target_connection, customers_table)
        assert ok
        assert "exists" in message

        ok, message = await target.test(target_connection, "nope")
        assert not ok
        assert "not found" in message

    @pytest.mark.asyncio
    async def test_connectivity_failure(self, target, tmp_path):
        connection = TargetConnection(
            database_type="Sqlite",
            url=f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}"
        )

        ok, message = await target.test(connection, "customers")

        assert not ok
        assert message.startswith("Connection failed")


class TestRunSql:
    """Test pre- and post-process statements"""

    @pytest.mark.asyncio
    async def test_runs_statement(self, target, target_connection, customers_table, fetch_rows):
        await target.run_sql(target_connection, "INSERT INTO customers (id, name) VALUES ('H1', 'Hook')")

        assert await fetch_rows() == [{"id": "H1", "name": "Hook", "city": None, "is_deleted": "0"}]

    @pytest.mark.asyncio
    async def test_colons_are_not_bind_parameters(self, target, target_connection, customers_table, fetch_rows):
        await target.run_sql(target_connection, "INSERT INTO customers (id, name) VALUES ('H1', 'at 10:30')")

        assert (await fetch_rows())[0]["name"] == "at 10:30"

    @pytest.mark.asyncio
    async def test_failure_raises_write_error(self, target, target_connection, customers_table):
        with pytest.raises(WriteError) as exc_info:
            await target.run_sql(target_connection, "DELETE FROM no_such_table")

        assert "SQL hook failed" in exc_info.value.message


class TestEngines:
    """Test engine creation per target connection"""

    def test_engine_carries_driver_timeouts(self):
        target = DatabaseImportTarget()
        connection = TargetConnection(database_type=DatabaseType.POSTGRES, url="postgresql://u:p@db/reef")

        with patch("ingestion.targets.database_target.create_async_engine") as create:
            target._engine(connection, 12)
            target._engine(connection, 99)

        create.assert_called_once()
        assert create.call_args.args[0] == "postgresql+asyncpg://u:p@db/reef"
        connect_args = create.call_args.kwargs["connect_args"]
        assert connect_args["command_timeout"] == 12
        assert connect_args["server_settings"] == {"statement_timeout": "12000"}
