"""
End-to-end tests for the import runner: local files into SQLite
"""

import csv
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.cancellation import CancellationToken
from core.exceptions import (
    ConfigurationError,
    ImportCancelledError,
    NetworkError,
    ParseError,
    ResourceNotFoundError,
    SourceError,
    WriteError,
)
from ingestion.delta.state_store import DeltaSyncStateStore
from ingestion.execution_store import ExecutionStore
from ingestion.runner import ImportRunner
from models.base import ErrorKind, ExecutionStatus
from schemas.profile import ImportProfile

CUSTOMERS_V1 = "id,name,city\nC001,Alice,Oslo\nC002,Bob,Bergen\nC003,Carol,Tromso\n"
CUSTOMERS_V2 = "id,name,city\nC001,Alice,Oslo\nC002,Bob,Stavanger\nC004,Dave,Bodo\n"


@pytest.fixture
def inbox(tmp_path):
    directory = tmp_path / "inbox"
    directory.mkdir()
    return directory


@pytest.fixture
def write_source(inbox):
    def _write(content: str, name: str = "customers.csv"):
        path = inbox / name
        path.write_text(content, encoding="utf-8")
        return path
    return _write


@pytest.fixture
def make_profile(inbox, target_url, customers_table):
    def _make(**kwargs) -> ImportProfile:
        settings = dict(
            id="customers-import",
            source_type="Local",
            source_path=str(inbox),
            source_file_pattern="*.csv",
            source_format="CSV",
            target_type="Database",
            target_database_type="Sqlite",
            target_connection_string=target_url,
            target_table=customers_table,
            load_strategy="Insert",
        )
        settings.update(kwargs)
        return ImportProfile(**settings)
    return _make


@pytest.fixture
def execution_store(session_factory):
    return ExecutionStore(session_factory)


@pytest.fixture
def state_store(session_factory):
    return DeltaSyncStateStore(session_factory)


@pytest.fixture
def runner(state_store, execution_store):
    return ImportRunner(state_store=state_store, execution_store=execution_store, retry_base_delay=0)


def delta_profile(make_profile, **kwargs) -> ImportProfile:
    return make_profile(
        load_strategy="Upsert",
        upsert_key_columns="id",
        delete_strategy="HardDelete",
        delta_sync={"enabled": True, "reef_id_column": "id", "track_deletes": True},
        **kwargs
    )


class TestImportRun:
    """Test a complete run"""

    @pytest.mark.asyncio
    async def test_csv_into_database(self, runner, make_profile, write_source, fetch_rows, execution_store):
        path = write_source(CUSTOMERS_V1)

        result = await runner.run(make_profile())

        assert result.status == ExecutionStatus.SUCCESS
        assert result.rows_read == 3
        assert result.rows_inserted == 3
        assert result.files_processed == 1
        assert result.bytes_processed == path.stat().st_size
        assert "FetchSource" in result.phase_timings
        assert "ParseAndWrite" in result.phase_timings
        assert [r["name"] for r in await fetch_rows()] == ["Alice", "Bob", "Carol"]

        execution = await execution_store.get(result.execution_id)
        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.rows_inserted == 3
        assert execution.completed_at is not None
        assert execution.errors == []

    @pytest.mark.asyncio
    async def test_column_mappings(self, runner, make_profile, write_source, fetch_rows):
        write_source("CUST_NO;FULL_NAME\n c001 ;alice\n")
        profile = make_profile(
            format_config={"delimiter": ";"},
            column_mappings=[
                {"source_column": "cust_no", "target_column": "id", "transform": "upper"},
                {"source_column": "full_name", "target_column": "name", "transform": "{{ value | title }}"},
            ],
        )

        result = await runner.run(profile)

        assert result.rows_inserted == 1
        assert await fetch_rows() == [{"id": "C001", "name": "Alice", "city": None, "is_deleted": "0"}]

    @pytest.mark.asyncio
    async def test_row_failures_give_partial_success(self, runner, make_profile, write_source, fetch_rows):
        write_source("id,name\nC001,Alice\nC002,NULL\nC003,Carol\n")
        profile = make_profile(format_config={"null_value": "NULL"})

        result = await runner.run(profile)

        assert result.status == ExecutionStatus.PARTIAL_SUCCESS
        assert (result.rows_inserted, result.rows_failed) == (2, 1)
        assert result.errors[0].row_number == 3
        assert result.errors[0].file_identifier.endswith("customers.csv")
        assert len(await fetch_rows()) == 2

    @pytest.mark.asyncio
    async def test_no_files(self, runner, make_profile):
        result = await runner.run(make_profile())

        assert result.status == ExecutionStatus.SUCCESS
        assert result.files_processed == 0
        assert result.rows_read == 0

    @pytest.mark.asyncio
    async def test_full_replace(self, runner, make_profile, write_source, fetch_rows):
        write_source(CUSTOMERS_V1)
        await runner.run(make_profile())

        write_source("id,name\nN001,Nina\n")
        result = await runner.run(make_profile(load_strategy="FullReplace"))

        assert result.rows_inserted == 1
        assert "FullReplace" in result.phase_timings
        assert [r["id"] for r in await fetch_rows()] == ["N001"]

    @pytest.mark.asyncio
    async def test_archive_after_import(self, runner, make_profile, write_source, tmp_path):
        path = write_source(CUSTOMERS_V1)
        archive_dir = tmp_path / "archive"

        result = await runner.run(make_profile(archive_after_import=True, archive_path=str(archive_dir)))

        assert result.status == ExecutionStatus.SUCCESS
        assert not path.exists()
        assert len(list(archive_dir.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_json_into_local_file(self, runner, inbox, tmp_path):
        (inbox / "feed.json").write_text(
            json.dumps({"items": [{"id": "A", "qty": 2}, {"id": "B", "qty": 5}]}), encoding="utf-8"
        )
        output = tmp_path / "out" / "feed.csv"
        profile = ImportProfile(
            id="feed-export",
            source_path=str(inbox),
            source_file_pattern="*.json",
            source_format="JSON",
            format_config={"data_root_path": "$.items"},
            target_type="LocalFile",
            target_table=str(output),
        )

        result = await runner.run(profile)

        assert result.rows_inserted == 2
        with open(output, newline="", encoding="utf-8") as f:
            assert list(csv.DictReader(f)) == [{"id": "A", "qty": "2"}, {"id": "B", "qty": "5"}]

    @pytest.mark.asyncio
    async def test_local_file_overwrite_keeps_every_batch(self, runner, make_profile, write_source, tmp_path):
        write_source(CUSTOMERS_V1)
        output = tmp_path / "customers.csv"
        output.write_text("id,name,city\nOLD,Stale,Nowhere\n", encoding="utf-8")
        profile = make_profile(
            target_type="LocalFile",
            local_target={"path": str(output), "write_mode": "Overwrite"},
            batch_size=2,
        )

        result = await runner.run(profile)

        assert result.rows_inserted == 3
        with open(output, newline="", encoding="utf-8") as f:
            assert [r["id"] for r in csv.DictReader(f)] == ["C001", "C002", "C003"]

    @pytest.mark.asyncio
    async def test_local_path_template(self, runner, make_profile, write_source, tmp_path):
        write_source(CUSTOMERS_V1)
        profile = make_profile(
            name="Daily/Customers",
            target_type="LocalFile",
            local_target={"path": str(tmp_path / "out" / "{profile}_{date}.{format}"), "format": "JSONL"},
        )

        result = await runner.run(profile)

        assert result.rows_inserted == 3
        written = list((tmp_path / "out").iterdir())
        assert len(written) == 1
        assert written[0].name.startswith("Daily_Customers_")
        assert written[0].suffix == ".jsonl"
        assert len(written[0].read_text(encoding="utf-8").splitlines()) == 3


class TestSqlHooks:
    """Test pre- and post-process SQL against the database target"""

    @pytest.mark.asyncio
    async def test_pre_and_post_process(self, runner, make_profile, write_source, fetch_rows):
        write_source(CUSTOMERS_V1)
        profile = make_profile(
            pre_process_sql=json.dumps({"sql": "INSERT INTO customers (id, name) VALUES ('{ExecutionId}', 'marker')"}),
            post_process_sql="UPDATE customers SET city = 'Done' WHERE name = 'marker'",
        )

        result = await runner.run(profile)

        assert result.status == ExecutionStatus.SUCCESS
        assert "PreProcess" in result.phase_timings
        assert "PostProcess" in result.phase_timings
        rows = {r["id"]: r["city"] for r in await fetch_rows()}
        assert rows[result.execution_id] == "Done"
        assert len(rows) == 4

    def test_sql_config_forms(self):
        def hook(value):
            return ImportProfile(id="hooks", pre_process_sql=value).pre_process_sql

        assert hook({"Sql": "SELECT 1"}) == "SELECT 1"
        assert hook('{"sql": "SELECT 2"}') == "SELECT 2"
        assert hook("SELECT 3") == "SELECT 3"
        assert hook("  ") is None
        assert hook("{not json}") == "{not json}"

    @pytest.mark.asyncio
    async def test_pre_process_failure_fails_before_fetch(self, make_profile, write_source, fetch_rows, execution_store):
        write_source(CUSTOMERS_V1)
        source = MagicMock()
        source.fetch = AsyncMock(return_value=[])
        runner = ImportRunner(
            source_factory=lambda source_type, decrypt=None: source,
            execution_store=execution_store
        )

        with pytest.raises(WriteError) as exc_info:
            await runner.run(make_profile(pre_process_sql="DELETE FROM no_such_table"))

        source.fetch.assert_not_awaited()
        assert await fetch_rows() == []
        execution = await execution_store.get(exc_info.value.context["execution_id"])
        assert execution.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_post_process_failure_is_skipped(self, runner, make_profile, write_source, fetch_rows):
        write_source(CUSTOMERS_V1)

        result = await runner.run(make_profile(post_process_sql="UPDATE no_such_table SET x = 1"))

        assert result.status == ExecutionStatus.SUCCESS
        assert result.errors[-1].message.startswith("Post-process failed")
        assert len(await fetch_rows()) == 3

    @pytest.mark.asyncio
    async def test_post_process_failure_fails_run(self, runner, make_profile, write_source):
        write_source(CUSTOMERS_V1)
        profile = make_profile(post_process_sql="UPDATE no_such_table SET x = 1", post_process_skip_on_failure=False)

        with pytest.raises(WriteError):
            await runner.run(profile)


class TestDeltaSync:
    """Test change detection across runs"""

    @pytest.mark.asyncio
    async def test_second_run_writes_only_changes(self, runner, make_profile, write_source, fetch_rows, state_store):
        write_source(CUSTOMERS_V1)
        first = await runner.run(delta_profile(make_profile))

        assert first.delta_new == 3
        assert first.rows_inserted == 3

        write_source(CUSTOMERS_V2)
        second = await runner.run(delta_profile(make_profile))

        assert second.status == ExecutionStatus.SUCCESS
        assert (second.delta_new, second.delta_changed, second.delta_unchanged, second.delta_deleted) == (1, 1, 1, 1)
        assert (second.rows_inserted, second.rows_updated, second.rows_skipped) == (1, 1, 1)
        assert second.rows_deleted == 1

        rows = {r["id"]: r["city"] for r in await fetch_rows()}
        assert rows == {"C001": "Oslo", "C002": "Stavanger", "C004": "Bodo"}
        assert set(await state_store.load_state("customers-import")) == {"C001", "C002", "C004"}

    @pytest.mark.asyncio
    async def test_unchanged_run_writes_nothing(self, runner, make_profile, write_source):
        write_source(CUSTOMERS_V1)
        await runner.run(delta_profile(make_profile))

        result = await runner.run(delta_profile(make_profile))

        assert result.delta_unchanged == 3
        assert result.rows_inserted + result.rows_updated == 0
        assert result.rows_skipped == 3

    @pytest.mark.asyncio
    async def test_duplicate_key_is_row_failure(self, runner, make_profile, write_source):
        write_source("id,name\nC001,Alice\nC001,Alicia\n")

        result = await runner.run(delta_profile(make_profile))

        assert result.status == ExecutionStatus.PARTIAL_SUCCESS
        assert (result.rows_inserted, result.rows_failed) == (1, 1)
        assert "Duplicate" in result.errors[0].message

    @pytest.mark.asyncio
    async def test_schema_change_resets_state(self, runner, make_profile, write_source):
        write_source("id,name\nC001,Alice\nC002,Bob\n")
        await runner.run(delta_profile(make_profile))

        write_source("id,name,city\nC001,Alice,Oslo\nC002,Bob,Bergen\n")
        profile = delta_profile(make_profile)
        profile.delta_sync.reset_on_schema_change = True
        result = await runner.run(profile)

        assert result.delta_new == 2
        assert result.delta_changed == 0
        assert result.rows_updated == 2

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_state(self, runner, make_profile, write_source, state_store):
        write_source(CUSTOMERS_V1)
        await runner.run(delta_profile(make_profile))
        before = await state_store.load_state("customers-import")

        write_source(CUSTOMERS_V2 + "C005,NULL,Oslo\n")
        profile = delta_profile(make_profile, on_row_failure="Fail", format_config={"null_value": "NULL"})
        with pytest.raises(WriteError):
            await runner.run(profile)

        assert await state_store.load_state("customers-import") == before

    @pytest.mark.asyncio
    async def test_skipped_source_keeps_rows_and_state(
        self, runner, make_profile, write_source, fetch_rows, state_store, execution_store
    ):
        write_source(CUSTOMERS_V1)
        await runner.run(delta_profile(make_profile))
        before = await state_store.load_state("customers-import")

        source = MagicMock()
        source.fetch = AsyncMock(side_effect=NetworkError("Connection reset"))
        failing = ImportRunner(
            source_factory=lambda source_type, decrypt=None: source,
            state_store=state_store,
            execution_store=execution_store,
            retry_base_delay=0
        )
        result = await failing.run(delta_profile(make_profile, on_source_failure="Skip", retry_count=1))

        assert result.source_skipped
        assert result.rows_deleted == 0
        assert result.delta_deleted == 0
        assert "CommitDeltaState" not in result.phase_timings
        assert len(await fetch_rows()) == 3
        assert await state_store.load_state("customers-import") == before

    @pytest.mark.asyncio
    async def test_failed_row_is_retried_next_run(self, runner, make_profile, write_source, fetch_rows, state_store):
        write_source("id,name,city\nC001,Alice,Oslo\nC002,NULL,Bergen\n")
        profile = delta_profile(make_profile, format_config={"null_value": "NULL"})

        first = await runner.run(profile)

        assert (first.rows_inserted, first.rows_failed) == (1, 1)
        assert set(await state_store.load_state("customers-import")) == {"C001"}

        write_source("id,name,city\nC001,Alice,Oslo\nC002,Bob,Bergen\n")
        second = await runner.run(profile)

        assert (second.delta_new, second.delta_unchanged) == (1, 1)
        assert second.rows_inserted == 1
        assert [r["id"] for r in await fetch_rows()] == ["C001", "C002"]

    @pytest.mark.asyncio
    async def test_rolled_back_rows_keep_previous_hash(self, runner, make_profile, write_source, state_store):
        write_source(CUSTOMERS_V1)
        await runner.run(delta_profile(make_profile))
        before = await state_store.load_state("customers-import")

        write_source(CUSTOMERS_V2 + "C005,NULL,Oslo\n")
        profile = delta_profile(make_profile, on_row_failure="Rollback", format_config={"null_value": "NULL"})
        rolled_back = await runner.run(profile)

        assert rolled_back.rows_inserted + rolled_back.rows_updated == 0
        state = await state_store.load_state("customers-import")
        assert state["C002"] == before["C002"]
        assert "C004" not in state
        assert "C005" not in state

        write_source(CUSTOMERS_V2)
        retried = await runner.run(delta_profile(make_profile))

        assert (retried.rows_inserted, retried.rows_updated) == (1, 1)


class TestFailurePolicies:
    """Test abort thresholds, cancellation and source policies"""

    @pytest.mark.asyncio
    async def test_abort_on_failed_row_count(self, runner, make_profile, write_source, execution_store):
        write_source('id,name\nC001,Alice\nC002,"x"y\nC003,"x"z\nC004,Dave\n')
        profile = make_profile(batch_size=1, max_failed_rows_before_abort=2)

        result = await runner.run(profile)

        assert result.aborted
        assert result.status == ExecutionStatus.FAILED
        assert result.rows_inserted == 1
        assert result.rows_failed == 2
        assert result.compensation_required
        assert "threshold" in result.error_message

        execution = await execution_store.get(result.execution_id)
        assert execution.status == ExecutionStatus.FAILED
        assert [e.kind for e in execution.errors] == [ErrorKind.PARSE.value, ErrorKind.PARSE.value]

    @pytest.mark.asyncio
    async def test_abort_on_failed_row_percent(self, runner, make_profile, write_source):
        write_source('id,name\nC001,"x"y\nC002,Bob\n')

        result = await runner.run(make_profile(max_failed_rows_percent=50))

        assert result.aborted
        assert result.rows_read == 1
        assert not result.compensation_required

    @pytest.mark.asyncio
    async def test_parse_failure_policy_fail(self, runner, make_profile, write_source, execution_store):
        write_source('id,name\nC001,"x"y\n')

        with pytest.raises(ParseError):
            await runner.run(make_profile(on_parse_failure="Fail"))

        executions = await execution_store.recent("customers-import")
        assert executions[0].status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_parse_failure_skip_file(self, runner, make_profile, write_source):
        write_source('id,name\nC001,Alice\nC002,"x"y\nC003,Carol\n')

        result = await runner.run(make_profile(on_parse_failure="SkipFile"))

        assert result.rows_inserted == 1
        assert result.rows_failed == 1
        assert result.rows_read == 2

    @pytest.mark.asyncio
    async def test_cancellation(self, runner, make_profile, write_source, execution_store):
        write_source(CUSTOMERS_V1)
        token = CancellationToken()
        token.cancel("operator request")

        with pytest.raises(ImportCancelledError) as exc_info:
            await runner.run(make_profile(), cancel=token)

        execution = await execution_store.get(exc_info.value.context["execution_id"])
        assert execution.status == ExecutionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_source_retry_then_skip(self, execution_store, make_profile):
        source = MagicMock()
        source.fetch = AsyncMock(side_effect=NetworkError("Connection reset"))
        runner = ImportRunner(
            source_factory=lambda source_type, decrypt=None: source,
            execution_store=execution_store,
            retry_base_delay=0
        )

        result = await runner.run(make_profile(on_source_failure="Skip", retry_count=3))

        assert source.fetch.await_count == 3
        assert result.status == ExecutionStatus.SUCCESS
        assert result.files_processed == 0
        assert result.errors[0].kind == ErrorKind.SOURCE

    @pytest.mark.asyncio
    async def test_non_retryable_source_error_fails_fast(self, execution_store, make_profile):
        source = MagicMock()
        source.fetch = AsyncMock(side_effect=ResourceNotFoundError("Remote path not found"))
        runner = ImportRunner(
            source_factory=lambda source_type, decrypt=None: source,
            execution_store=execution_store,
            retry_base_delay=0
        )

        with pytest.raises(SourceError):
            await runner.run(make_profile(retry_count=5))

        assert source.fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_profile(self, runner, make_profile, execution_store):
        with pytest.raises(ConfigurationError):
            await runner.run(make_profile(target_table=None))

        assert await execution_store.recent("customers-import") == []
