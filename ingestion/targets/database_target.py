"""
Write mapped rows into SQL Server, MySQL, PostgreSQL or SQLite tables
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from core.cancellation import CancellationToken, check_cancelled
from core.config import settings
from core.exceptions import (
    ConfigurationError,
    ConstraintViolationError,
    ImportPipelineError,
    TypeMismatchError,
    WriteError,
    WriteTimeoutError,
)
from ingestion.sources.base import Decryptor
from ingestion.targets.base import ImportTarget, natural_key_of, row_numbers_for
from ingestion.targets.dialects import SqlDialect, bind_keys, bind_row, get_dialect
from models.base import (
    ConstraintViolationPolicy,
    DeleteStrategy,
    ErrorKind,
    LoadStrategy,
    RowFailurePolicy,
)
from schemas.target import (
    ImportBatchResult,
    ImportWriteContext,
    RowError,
    TargetColumnInfo,
    TargetConnection,
)

logger = logging.getLogger(__name__)

WRITE_ERRORS = {
    ErrorKind.CONSTRAINT: ConstraintViolationError,
    ErrorKind.TIMEOUT: WriteTimeoutError,
    ErrorKind.TYPE: TypeMismatchError,
}

# Failures a statement or connection can raise while writing
DATABASE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def _driver_message(error: BaseException) -> str:
    return str(getattr(error, "orig", None) or error)


def _int_or_none(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _resolve_keys(keys: Sequence[str], columns: Sequence[str]) -> Tuple[List[str], List[str]]:
    """
    Match key names to the row's own column spelling.

    Returns (resolved keys, missing keys).
    """
    lookup = {c.lower(): c for c in columns}
    resolved, missing = [], []
    for key in keys:
        column = lookup.get(key.lower())
        if column is None:
            missing.append(key)
        else:
            resolved.append(column)
    return resolved, missing


class DatabaseImportTarget(ImportTarget):
    """
    Database sink with per-dialect SQL and row-level failure isolation.

    Rows are written in chunks of batch_size. Each chunk runs in one
    transaction and each row in its own SAVEPOINT, so a failing row is
    rolled back alone and the rest of the chunk still commits.
    """

    def __init__(self, decrypt: Optional[Decryptor] = None):
        self.decrypt = decrypt
        self._engines: Dict[str, AsyncEngine] = {}

    # ========================================================================
    # Engines
    # ========================================================================

    def _engine(self, connection: Optional[TargetConnection], command_timeout: Optional[int] = None) -> Tuple[AsyncEngine, SqlDialect]:
        if connection is None:
            raise ConfigurationError(
                "Database target requires a connection",
                context={"field": "target_connection_string"}
            )

        dialect = get_dialect(connection.database_type)
        url = self.decrypt(connection.url) if self.decrypt else connection.url
        url = dialect.async_url(url)

        engine = self._engines.get(url)
        if engine is None:
            timeout = command_timeout or settings.COMMAND_TIMEOUT
            engine = create_async_engine(url, **dialect.engine_options(url, timeout))
            dialect.configure_engine(engine)
            self._engines[url] = engine
            logger.debug(f"Created {dialect.database_type.value} engine for target")
        return engine, dialect

    async def close(self):
        for engine in self._engines.values():
            await engine.dispose()
        self._engines.clear()

    @staticmethod
    def _table(context: ImportWriteContext) -> str:
        if not context.table_name:
            raise ConfigurationError(
                "Database target requires a table name",
                context={"field": "target_table"}
            )
        return context.table_name

    # ========================================================================
    # Row level
    # ========================================================================

    @staticmethod
    def _write_error(kind: ErrorKind, message: str, context: ImportWriteContext, error: Optional[BaseException]) -> WriteError:
        error_class = WRITE_ERRORS.get(kind, WriteError)
        return error_class(
            message,
            context={"table_name": context.table_name, "operation": context.load_strategy.value},
            original_exception=error,
            kind=kind.value
        )

    def _row_failed(
        self,
        result: ImportBatchResult,
        context: ImportWriteContext,
        number: int,
        reef_id: Optional[str],
        message: str,
        kind: ErrorKind,
        error: Optional[BaseException] = None
    ):
        """Record a failed row, or escalate under the Fail policy"""
        if context.on_row_failure == RowFailurePolicy.FAIL:
            raise self._write_error(kind, f"Row {number} failed: {message}", context, error)

        result.failed += 1
        result.errors.append(RowError(row_number=number, reef_id=reef_id, message=message, kind=kind))
        logger.warning(f"Row {number} failed ({kind.value}): {message}")

    async def _execute_row(
        self,
        conn: AsyncConnection,
        dialect: SqlDialect,
        table: str,
        columns: List[str],
        params: Dict[str, Any],
        keys: List[str]
    ) -> Tuple[int, int]:
        """Run the insert or upsert for one row. Returns (inserted, updated)."""
        if not keys:
            await conn.execute(text(dialect.insert_sql(table, columns)), params)
            return 1, 0

        existed = None
        if dialect.upsert_needs_precheck:
            found = await conn.execute(text(dialect.exists_sql(table, columns, keys)), params)
            existed = found.first() is not None

        result = await conn.execute(text(dialect.upsert_sql(table, columns, keys)), params)
        return dialect.interpret_upsert(result, existed)

    async def _overwrite_row(
        self,
        conn: AsyncConnection,
        dialect: SqlDialect,
        table: str,
        columns: List[str],
        params: Dict[str, Any],
        keys: List[str]
    ) -> bool:
        """UPDATE an existing row by key after a constraint collision"""
        async with conn.begin_nested():
            result = await conn.execute(text(dialect.update_sql(table, columns, keys)), params)
        return result.rowcount > 0

    async def _write_row(
        self,
        conn: AsyncConnection,
        dialect: SqlDialect,
        row: Dict[str, Any],
        number: int,
        context: ImportWriteContext,
        upsert_keys: List[str],
        result: ImportBatchResult
    ):
        table = context.table_name
        columns = list(row)
        params = bind_row(row, columns)
        reef_id = natural_key_of(row, context)

        keys: List[str] = []
        if upsert_keys:
            keys, missing = _resolve_keys(upsert_keys, columns)
            if missing:
                self._row_failed(
                    result, context, number, reef_id,
                    f"Row has no value for key column(s): {', '.join(missing)}",
                    ErrorKind.UNKNOWN
                )
                return

        try:
            async with conn.begin_nested():
                inserted, updated = await self._execute_row(conn, dialect, table, columns, params, keys)
            result.inserted += inserted
            result.updated += updated
            return
        except (DBAPIError, asyncio.TimeoutError) as e:
            kind = dialect.classify_error(e)
            message = _driver_message(e)
            error = e

        if kind != ErrorKind.CONSTRAINT:
            self._row_failed(result, context, number, reef_id, message, kind, error)
            return

        policy = context.on_constraint_violation
        if policy == ConstraintViolationPolicy.FAIL:
            raise self._write_error(kind, f"Row {number} violates a unique constraint: {message}", context, error)

        if policy == ConstraintViolationPolicy.OVERWRITE:
            keys, _ = _resolve_keys(context.key_columns(), columns)
            if keys:
                try:
                    if await self._overwrite_row(conn, dialect, table, columns, params, keys):
                        result.updated += 1
                    else:
                        result.skipped += 1
                except (DBAPIError, asyncio.TimeoutError) as e:
                    self._row_failed(
                        result, context, number, reef_id,
                        _driver_message(e), dialect.classify_error(e), e
                    )
                return
            logger.warning(f"Row {number}: cannot overwrite without key columns, skipping")

        result.skipped += 1
        logger.debug(f"Row {number} skipped after constraint violation")

    # ========================================================================
    # Chunk level
    # ========================================================================

    async def _write_chunk(
        self,
        engine: AsyncEngine,
        dialect: SqlDialect,
        rows: List[Dict[str, Any]],
        numbers: List[int],
        context: ImportWriteContext,
        upsert_keys: List[str]
    ) -> ImportBatchResult:
        result = ImportBatchResult()

        try:
            async with engine.connect() as conn:
                async with conn.begin() as transaction:
                    for row, number in zip(rows, numbers):
                        await self._write_row(conn, dialect, row, number, context, upsert_keys, result)

                    if context.on_row_failure == RowFailurePolicy.ROLLBACK and result.failed:
                        await transaction.rollback()
                        written = result.inserted + result.updated
                        result.skipped += written
                        result.inserted = 0
                        result.updated = 0
                        logger.warning(
                            f"Rolled back chunk of {len(rows)} rows after {result.failed} failure(s); "
                            f"{written} written rows discarded"
                        )
        except ImportPipelineError:
            raise
        except DATABASE_ERRORS as e:
            kind = dialect.classify_error(e)
            if context.on_row_failure == RowFailurePolicy.FAIL:
                raise self._write_error(kind, f"Chunk write failed: {_driver_message(e)}", context, e)

            logger.error(f"Chunk of {len(rows)} rows failed: {_driver_message(e)}")
            return ImportBatchResult(
                failed=len(rows),
                errors=[RowError(row_number=None, message=f"Chunk failed: {_driver_message(e)}", kind=kind)]
            )

        return result

    def _upsert_keys(self, context: ImportWriteContext) -> List[str]:
        if context.load_strategy != LoadStrategy.UPSERT:
            return []
        keys = context.key_columns()
        if not keys:
            logger.warning(f"Upsert into {context.table_name} has no key columns, falling back to insert")
        return keys

    async def write_batch(
        self,
        rows: List[Dict[str, Any]],
        context: ImportWriteContext,
        row_numbers: Optional[Sequence[int]] = None,
        cancel: Optional[CancellationToken] = None
    ) -> ImportBatchResult:
        """
        Insert/Append or Upsert rows in chunks.

        Returns:
            Counts over every submitted row

        Raises:
            WriteError: A Fail policy escalated a row or chunk failure
        """
        if not rows:
            return ImportBatchResult()

        self._table(context)
        engine, dialect = self._engine(context.connection, context.command_timeout_seconds)
        numbers = row_numbers_for(rows, row_numbers)
        upsert_keys = self._upsert_keys(context)
        size = context.batch_size

        result = ImportBatchResult()
        for start in range(0, len(rows), size):
            check_cancelled(cancel, "write")
            chunk = await self._write_chunk(
                engine, dialect, rows[start:start + size], numbers[start:start + size], context, upsert_keys
            )
            result.merge(chunk)

        logger.info(
            f"Wrote {len(rows)} rows to {context.table_name}: {result.inserted} inserted, "
            f"{result.updated} updated, {result.skipped} skipped, {result.failed} failed"
        )
        return result

    async def full_replace(
        self,
        rows: List[Dict[str, Any]],
        context: ImportWriteContext,
        row_numbers: Optional[Sequence[int]] = None,
        cancel: Optional[CancellationToken] = None
    ) -> ImportBatchResult:
        """
        Empty the table and insert every row inside one transaction.

        A fatal failure (or any row failure under the Rollback policy)
        leaves the table exactly as it was.
        """
        table = self._table(context)
        engine, dialect = self._engine(context.connection, context.command_timeout_seconds)
        numbers = row_numbers_for(rows, row_numbers)
        size = context.batch_size
        result = ImportBatchResult()

        try:
            async with engine.connect() as conn:
                async with conn.begin() as transaction:
                    await conn.execute(text(dialect.truncate_sql(table)))

                    for start in range(0, len(rows), size):
                        check_cancelled(cancel, "write")
                        for row, number in zip(rows[start:start + size], numbers[start:start + size]):
                            await self._write_row(conn, dialect, row, number, context, [], result)

                    if context.on_row_failure == RowFailurePolicy.ROLLBACK and result.failed:
                        await transaction.rollback()
                        result.skipped += result.inserted + result.updated
                        result.inserted = 0
                        result.updated = 0
                        logger.warning(f"Full replace of {table} rolled back after {result.failed} failure(s)")
                        return result
        except ImportPipelineError:
            raise
        except DATABASE_ERRORS as e:
            raise self._write_error(
                dialect.classify_error(e), f"Full replace of {table} failed: {_driver_message(e)}", context, e
            )

        logger.info(f"Replaced content of {table} with {result.inserted} rows")
        return result

    # ========================================================================
    # Deletes, schema and connectivity
    # ========================================================================

    async def apply_deletes(self, keys: List[str], context: ImportWriteContext) -> int:
        """
        Hard or soft delete rows whose natural key disappeared from the source.
        """
        if not keys or context.delete_strategy == DeleteStrategy.NONE:
            return 0
        if not context.natural_key_column:
            logger.warning("Delete propagation skipped: no natural key column configured")
            return 0
        if context.delete_strategy == DeleteStrategy.SOFT_DELETE and not context.delete_column:
            logger.warning("Soft delete skipped: no delete column configured")
            return 0

        table = self._table(context)
        engine, dialect = self._engine(context.connection, context.command_timeout_seconds)
        chunk_size = settings.DELETE_CHUNK_SIZE
        affected = 0

        try:
            for start in range(0, len(keys), chunk_size):
                chunk = keys[start:start + chunk_size]
                if context.delete_strategy == DeleteStrategy.HARD_DELETE:
                    sql = dialect.delete_sql(table, context.natural_key_column, len(chunk))
                    params = bind_keys(chunk)
                else:
                    sql = dialect.soft_delete_sql(table, context.natural_key_column, context.delete_column, len(chunk))
                    params = bind_keys(chunk, context.delete_value)

                async with engine.begin() as conn:
                    result = await conn.execute(text(sql), params)
                affected += max(result.rowcount or 0, 0)
        except DATABASE_ERRORS as e:
            raise self._write_error(
                dialect.classify_error(e), f"Delete propagation on {table} failed: {_driver_message(e)}", context, e
            )

        logger.info(f"{context.delete_strategy.value} applied to {affected} rows in {table}")
        return affected

    async def run_sql(self, connection: Optional[TargetConnection], sql: str, command_timeout: Optional[int] = None):
        """
        Run a pre- or post-process SQL batch in its own transaction.

        The text goes to the driver as is, without bind parameter parsing.

        Raises:
            WriteError: The statement failed
        """
        engine, dialect = self._engine(connection, command_timeout)
        try:
            async with engine.begin() as conn:
                await conn.exec_driver_sql(sql)
        except DATABASE_ERRORS as e:
            raise WriteError(
                f"SQL hook failed: {_driver_message(e)}",
                context={"operation": "SQL"},
                original_exception=e,
                kind=dialect.classify_error(e).value
            )
        logger.info(f"SQL hook ran against {dialect.database_type.value} target")

    async def get_table_schema(
        self,
        connection: Optional[TargetConnection],
        table: Optional[str]
    ) -> List[TargetColumnInfo]:
        """Catalog columns of the target table; empty on any failure"""
        if not table:
            return []

        try:
            engine, dialect = self._engine(connection)
            sql, params = dialect.schema_sql(table)
            async with engine.connect() as conn:
                rows = (await conn.execute(text(sql), params)).all()
        except (ImportPipelineError, *DATABASE_ERRORS) as e:
            logger.warning(f"Could not read schema of {table}: {_driver_message(e)}")
            return []

        return [
            TargetColumnInfo(
                name=str(row[0]),
                data_type=str(row[1]),
                is_nullable=str(row[2]).upper() in ("YES", "1", "TRUE"),
                is_primary_key=bool(_int_or_none(row[3])),
                max_length=_int_or_none(row[4]),
                precision=_int_or_none(row[5]),
                scale=_int_or_none(row[6]),
            )
            for row in rows
        ]

    async def test(
        self,
        connection: Optional[TargetConnection],
        table: Optional[str]
    ) -> Tuple[bool, str]:
        if not table:
            return False, "No target table configured"

        try:
            engine, dialect = self._engine(connection)
            sql, params = dialect.table_exists_sql(table)
            async with engine.connect() as conn:
                count = (await conn.execute(text(sql), params)).scalar()
        except (ImportPipelineError, *DATABASE_ERRORS) as e:
            return False, f"Connection failed: {_driver_message(e)}"

        if count:
            return True, f"Connected; table {table} exists"
        return False, f"Connected, but table {table} was not found"
