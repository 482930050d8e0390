# ============================================================================
# File: ingestion/runner.py
# Description: Import orchestrator with failure policies and delta sync
# ============================================================================
"""
Import Runner - drives Source → Parser → Mapper → Classifier → Target.

This module provides the execution of one import profile with:
- Source fetch with exponential backoff retry
- Streaming parse, mapping and change classification in source order
- Batched writes with per-row failure accounting
- Abort thresholds and cooperative cancellation
- Delta state committed only after the target write succeeded
"""

import asyncio
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from core.cancellation import CancellationToken, check_cancelled
from core.config import settings
from core.exceptions import (
    ConfigurationError,
    DeltaSyncError,
    ImportAbortedError,
    ImportCancelledError,
    ImportPipelineError,
    NonRetryableError,
    ParseError,
    RateLimitError,
    SourceError,
    StateStoreError,
    WriteError,
)
from ingestion.delta.classifier import DeltaSyncClassifier
from ingestion.delta.hashing import schema_fingerprint
from ingestion.delta.state_store import DeltaSyncStateStore
from ingestion.execution_store import ExecutionStore
from ingestion.mapping import ColumnMapper
from ingestion.parsers.factory import create_parser
from ingestion.rows import SourceFile
from ingestion.sources.base import Decryptor, ImportSource
from ingestion.sources.factory import create_source
from ingestion.targets.base import ImportTarget
from ingestion.targets.factory import create_target
from ingestion.targets.local_file_target import expand_path_template
from models.base import (
    ErrorKind,
    ExecutionStatus,
    LoadStrategy,
    ParseFailurePolicy,
    RowChange,
    RowFailurePolicy,
    SourceFailurePolicy,
    TargetType,
    WriteMode,
)
from schemas.execution import ImportExecutionResult
from schemas.profile import ImportProfile
from schemas.target import ImportBatchResult, ImportWriteContext, RowError, TargetConnection

logger = logging.getLogger(__name__)

SourceFactory = Callable[..., ImportSource]


class _RowBuffer:
    """Mapped rows waiting to be written, with their source line numbers and natural keys"""

    def __init__(self):
        self.rows: List[Dict[str, Any]] = []
        self.numbers: List[int] = []
        self.reef_ids: List[Optional[str]] = []

    def add(self, row: Dict[str, Any], number: int, reef_id: Optional[str] = None):
        self.rows.append(row)
        self.numbers.append(number)
        self.reef_ids.append(reef_id)

    def clear(self):
        self.rows = []
        self.numbers = []
        self.reef_ids = []

    def __len__(self) -> int:
        return len(self.rows)


class ImportRunner:
    """
    Import Orchestrator

    Responsibilities:
    - Validate the profile and build the write context
    - Fetch → parse → map → classify → write in source order
    - Apply parse, row and source failure policies
    - Enforce abort thresholds and honour cancellation
    - Commit delta state, archive sources and propagate deletes
    - Record accurate execution metrics
    """

    def __init__(
        self,
        source_factory: SourceFactory = create_source,
        target: Optional[ImportTarget] = None,
        state_store: Optional[DeltaSyncStateStore] = None,
        execution_store: Optional[ExecutionStore] = None,
        decrypt: Optional[Decryptor] = None,
        retry_base_delay: Optional[float] = None,
        max_recorded_errors: Optional[int] = None
    ):
        self.source_factory = source_factory
        self.target = target
        self.state_store = state_store
        self.execution_store = execution_store
        self.decrypt = decrypt
        self.retry_base_delay = settings.RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay
        self.max_recorded_errors = max_recorded_errors or settings.MAX_RECORDED_ERRORS

    # ========================================================================
    # Profile validation
    # ========================================================================

    @staticmethod
    def validate_profile(profile: ImportProfile):
        """
        Raises:
            ConfigurationError: If the profile cannot be executed
        """
        def missing(field: str, message: str):
            raise ConfigurationError(message, context={"profile_id": profile.id, "field": field})

        if profile.target_type == TargetType.DATABASE:
            if not profile.target_database_type:
                missing("target_database_type", "Database target requires target_database_type")
            if not profile.target_connection_string:
                missing("target_connection_string", "Database target requires target_connection_string")
            if not profile.target_table:
                missing("target_table", "Database target requires target_table")
        elif not (profile.local_target.path or profile.target_table):
            missing("local_target.path", "Local file target requires local_target.path")

        if profile.delta_sync.enabled and not profile.delta_sync.reef_id_column:
            missing("delta_sync.reef_id_column", "Delta sync requires reef_id_column")

    @staticmethod
    def build_write_context(profile: ImportProfile) -> ImportWriteContext:
        connection = None
        if profile.target_type == TargetType.DATABASE:
            connection = TargetConnection(
                database_type=profile.target_database_type,
                url=profile.target_connection_string
            )

        local_file = profile.local_target
        if profile.target_type == TargetType.LOCAL_FILE:
            path = expand_path_template(
                local_file.path or profile.target_table,
                profile.name or profile.id,
                local_file.format
            )
            local_file = local_file.copy(update={"path": path})

        return ImportWriteContext(
            target_type=profile.target_type,
            connection=connection,
            table_name=profile.target_table,
            load_strategy=profile.load_strategy,
            upsert_key_columns=profile.upsert_key_columns,
            mappings=profile.column_mappings,
            batch_size=profile.batch_size,
            command_timeout_seconds=profile.command_timeout_seconds,
            on_row_failure=profile.on_row_failure,
            on_constraint_violation=profile.on_constraint_violation,
            natural_key_column=profile.delta_sync.reef_id_column if profile.delta_sync.enabled else None,
            delete_strategy=profile.delete_strategy,
            delete_column=profile.delete_column,
            delete_value=profile.delete_value,
            local_file=local_file,
        )

    # ========================================================================
    # Bookkeeping
    # ========================================================================

    @staticmethod
    @contextmanager
    def _phase(result: ImportExecutionResult, name: str):
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed = round(time.perf_counter() - started, 3)
            result.phase_timings[name] = result.phase_timings.get(name, 0.0) + elapsed

    def _record_error(self, result: ImportExecutionResult, error: RowError):
        if len(result.errors) < self.max_recorded_errors:
            result.errors.append(error)

    def _apply_batch(self, result: ImportExecutionResult, batch: ImportBatchResult, file_identifier: Optional[str]):
        result.rows_inserted += batch.inserted
        result.rows_updated += batch.updated
        result.rows_skipped += batch.skipped
        result.rows_failed += batch.failed
        for error in batch.errors:
            if error.file_identifier is None:
                error = error.copy(update={"file_identifier": file_identifier})
            self._record_error(result, error)

    @staticmethod
    def _check_abort(profile: ImportProfile, result: ImportExecutionResult):
        """
        Raises:
            ImportAbortedError: A failed-row ceiling was reached
        """
        failed = result.rows_failed
        limit = profile.max_failed_rows_before_abort
        if limit and failed >= limit:
            raise ImportAbortedError(
                f"Exceeded max failed row threshold ({failed} >= {limit})",
                context={"rows_failed": failed, "rows_read": result.rows_read, "threshold": limit}
            )

        percent = profile.max_failed_rows_percent
        if percent and result.rows_read > 0:
            failed_percent = failed * 100.0 / result.rows_read
            if failed_percent >= percent:
                raise ImportAbortedError(
                    f"Exceeded max failed row percentage ({failed_percent:.1f}% >= {percent}%)",
                    context={"rows_failed": failed, "rows_read": result.rows_read, "threshold": percent}
                )

    async def _persist_start(self, result: ImportExecutionResult):
        if self.execution_store is None:
            return
        try:
            await self.execution_store.start(result)
        except StateStoreError as e:
            logger.error(f"Execution {result.execution_id}: {e.message}")

    async def _persist_finish(self, result: ImportExecutionResult):
        result.completed_at = datetime.utcnow()
        logger.info(
            f"Execution {result.execution_id} finished: {result.status.value}. "
            f"Read={result.rows_read} Inserted={result.rows_inserted} Updated={result.rows_updated} "
            f"Skipped={result.rows_skipped} Failed={result.rows_failed} Deleted={result.rows_deleted}"
        )
        if self.execution_store is None:
            return
        try:
            await self.execution_store.finish(result)
        except StateStoreError as e:
            logger.error(f"Execution {result.execution_id}: {e.message}")

    # ========================================================================
    # Phases
    # ========================================================================

    async def fetch_with_retry(
        self,
        profile: ImportProfile,
        source: ImportSource,
        result: ImportExecutionResult,
        cancel: Optional[CancellationToken] = None
    ) -> List[SourceFile]:
        """
        Fetch source files with exponential backoff.

        Raises:
            ConfigurationError: Immediately, never retried
            SourceError: All attempts failed and the source policy is not Skip
        """
        attempts = max(1, profile.retry_count)
        last_error: Optional[Exception] = None
        attempt = 0

        for attempt in range(1, attempts + 1):
            check_cancelled(cancel, "fetch")
            try:
                return await source.fetch(profile)
            except ConfigurationError:
                raise
            except (SourceError, OSError) as e:
                last_error = e
                logger.warning(f"Source fetch attempt {attempt}/{attempts} failed: {e}")

                if isinstance(e, NonRetryableError):
                    break
                if attempt < attempts:
                    delay = self.retry_base_delay * 2 ** (attempt - 1)
                    if isinstance(e, RateLimitError) and e.retry_after:
                        delay = max(delay, e.retry_after)
                    await asyncio.sleep(delay)

        reason = last_error.message if isinstance(last_error, ImportPipelineError) else str(last_error)
        message = f"Source fetch failed after {attempt} attempt(s): {reason}"
        self._record_error(result, RowError(message=message, kind=ErrorKind.SOURCE))

        if profile.on_source_failure == SourceFailurePolicy.SKIP:
            logger.warning(f"Source failure skipped for profile {profile.id}: {message}")
            result.source_skipped = True
            return []

        raise SourceError(
            message,
            context={"profile_id": profile.id, "source_type": profile.source_type.value},
            original_exception=last_error
        )

    async def _write(
        self,
        target: ImportTarget,
        buffer: _RowBuffer,
        context: ImportWriteContext,
        result: ImportExecutionResult,
        cancel: Optional[CancellationToken],
        file_identifier: Optional[str],
        classifier: Optional[DeltaSyncClassifier] = None
    ) -> ImportWriteContext:
        """
        Write and clear the buffer.

        Returns the context for the next batch: a local file opened in
        Overwrite mode is appended to for the rest of the execution.
        """
        if not len(buffer):
            return context
        batch = await target.write_batch(buffer.rows, context, buffer.numbers, cancel)
        self._apply_batch(result, batch, file_identifier)
        self._revert_unwritten(classifier, buffer, batch, context)
        buffer.clear()

        if context.target_type == TargetType.LOCAL_FILE and context.local_file.write_mode == WriteMode.OVERWRITE:
            local_file = context.local_file.copy(update={"write_mode": WriteMode.APPEND})
            context = context.copy(update={"local_file": local_file})
        return context

    @staticmethod
    def _revert_unwritten(
        classifier: Optional[DeltaSyncClassifier],
        buffer: _RowBuffer,
        batch: ImportBatchResult,
        context: ImportWriteContext
    ):
        """
        Put back the previous hash of every buffered row the target did
        not write, so the next run sees it as New or Changed again.

        Failures without a row number (a whole chunk failed) and the
        Rollback policy discard every row of the buffer.
        """
        if classifier is None or not batch.failed:
            return

        failed_numbers = {error.row_number for error in batch.errors}
        whole_buffer = (
            not failed_numbers
            or None in failed_numbers
            or context.on_row_failure == RowFailurePolicy.ROLLBACK
        )

        reverted = 0
        for number, reef_id in zip(buffer.numbers, buffer.reef_ids):
            if reef_id is not None and (whole_buffer or number in failed_numbers):
                classifier.revert(reef_id)
                reverted += 1
        if reverted:
            logger.debug(f"Kept previous delta state for {reverted} unwritten rows")

    def _row_failed(
        self,
        profile: ImportProfile,
        result: ImportExecutionResult,
        error: RowError
    ):
        """Account for a row that failed before reaching the target"""
        if profile.on_row_failure == RowFailurePolicy.FAIL:
            raise DeltaSyncError(
                error.message,
                context={"profile_id": profile.id, "row_number": error.row_number}
            )
        result.rows_failed += 1
        self._record_error(result, error)

    async def _process_file(
        self,
        profile: ImportProfile,
        file: SourceFile,
        mapper: ColumnMapper,
        classifier: Optional[DeltaSyncClassifier],
        target: ImportTarget,
        context: ImportWriteContext,
        result: ImportExecutionResult,
        replace_buffer: Optional[_RowBuffer],
        fingerprint: Dict[str, Optional[str]],
        cancel: Optional[CancellationToken]
    ) -> ImportWriteContext:
        """Parse one file and stream its rows to the target. Returns the context for the next file."""
        parser = create_parser(profile.source_format)
        buffer = replace_buffer if replace_buffer is not None else _RowBuffer()
        rows = parser.parse(file.content, profile.format_config, cancel)

        try:
            async for parsed in rows:
                result.rows_read += 1

                if not parsed.is_valid:
                    self._record_error(result, RowError(
                        row_number=parsed.line_number,
                        message=parsed.parse_error,
                        kind=ErrorKind.PARSE,
                        file_identifier=file.identifier
                    ))
                    result.rows_failed += 1

                    if profile.on_parse_failure == ParseFailurePolicy.FAIL:
                        raise ParseError(
                            parsed.parse_error,
                            context={"file": file.identifier, "line_number": parsed.line_number}
                        )
                    self._check_abort(profile, result)
                    if profile.on_parse_failure == ParseFailurePolicy.SKIP_FILE:
                        logger.warning(f"Skipping rest of {file.name} after parse error on line {parsed.line_number}")
                        break
                    continue

                check_cancelled(cancel, "row")

                mapped = mapper.map(parsed.columns)
                if mapped is None:
                    result.rows_skipped += 1
                    continue

                reef_id = None
                if classifier is not None:
                    if fingerprint["current"] is None:
                        self._check_schema(profile, classifier, mapped, fingerprint)

                    try:
                        classification = classifier.classify(mapped)
                    except DeltaSyncError as e:
                        self._row_failed(profile, result, RowError(
                            row_number=parsed.line_number,
                            message=e.message,
                            kind=ErrorKind.UNKNOWN,
                            file_identifier=file.identifier
                        ))
                        self._check_abort(profile, result)
                        continue

                    if not classification.needs_write:
                        result.rows_skipped += 1
                        continue
                    reef_id = classification.reef_id

                buffer.add(mapped, parsed.line_number, reef_id)
                if replace_buffer is None and len(buffer) >= profile.batch_size:
                    context = await self._write(target, buffer, context, result, cancel, file.identifier, classifier)
                    self._check_abort(profile, result)

            if replace_buffer is None:
                context = await self._write(target, buffer, context, result, cancel, file.identifier, classifier)
                self._check_abort(profile, result)
        finally:
            await rows.aclose()
        return context

    def _check_schema(
        self,
        profile: ImportProfile,
        classifier: DeltaSyncClassifier,
        row: Dict[str, Any],
        fingerprint: Dict[str, Optional[str]]
    ):
        """Fingerprint the first mapped row and drop prior state if the shape changed"""
        fingerprint["current"] = schema_fingerprint(row.keys())
        fingerprint["columns"] = ",".join(sorted(row.keys()))
        stored = fingerprint.get("stored")

        if stored and stored != fingerprint["current"] and profile.delta_sync.reset_on_schema_change:
            logger.warning(
                f"Record shape changed for profile {profile.id}; "
                f"treating all rows as new for this run"
            )
            classifier.previous_state.clear()

    async def _finalize_delta(
        self,
        profile: ImportProfile,
        classifier: DeltaSyncClassifier,
        result: ImportExecutionResult,
        fingerprint: Dict[str, Optional[str]]
    ) -> List[str]:
        """Commit seen hashes and return the keys to delete"""
        deleted = classifier.deleted_keys()
        result.delta_new = classifier.counts[RowChange.NEW]
        result.delta_changed = classifier.counts[RowChange.CHANGED]
        result.delta_unchanged = classifier.counts[RowChange.UNCHANGED]
        result.delta_deleted = len(deleted)

        if self.state_store is None:
            logger.warning(f"No state store configured; delta state for profile {profile.id} is not persisted")
            return deleted

        await self.state_store.commit(profile.id, result.execution_id, classifier.current_state)
        if fingerprint["current"]:
            await self.state_store.save_schema_fingerprint(
                profile.id, fingerprint["current"], fingerprint["columns"].split(",")
            )
        return deleted

    async def _run_sql_hook(
        self,
        target: ImportTarget,
        context: ImportWriteContext,
        sql: str,
        result: ImportExecutionResult
    ):
        sql = sql.replace("{ExecutionId}", result.execution_id)
        await target.run_sql(context.connection, sql, context.command_timeout_seconds)

    async def _post_process(
        self,
        profile: ImportProfile,
        target: ImportTarget,
        context: ImportWriteContext,
        result: ImportExecutionResult
    ):
        """
        Raises:
            WriteError: The hook failed and post_process_skip_on_failure is off
        """
        try:
            await self._run_sql_hook(target, context, profile.post_process_sql, result)
        except WriteError as e:
            logger.warning(f"Execution {result.execution_id}: post-process failed: {e.message}")
            if not profile.post_process_skip_on_failure:
                raise
            self._record_error(result, RowError(message=f"Post-process failed: {e.message}", kind=ErrorKind.UNKNOWN))

    async def _archive(self, profile: ImportProfile, source: ImportSource, files: List[SourceFile], result: ImportExecutionResult):
        for file in files:
            try:
                await source.archive(profile, file.identifier)
            except (SourceError, OSError) as e:
                logger.warning(f"Archive failed for {file.identifier}: {e}")
                self._record_error(result, RowError(
                    message=f"Archive failed for '{file.identifier}': {e}",
                    kind=ErrorKind.SOURCE,
                    file_identifier=file.identifier
                ))

    # ========================================================================
    # Entry point
    # ========================================================================

    async def run(self, profile: ImportProfile, cancel: Optional[CancellationToken] = None) -> ImportExecutionResult:
        """
        Execute one import profile through all phases.

        Pipeline phases:
        1. Validate profile and build the write context
        2. FetchSource - fetch files with retry
        3. GetSchema - target columns for auto-mapping (database only)
        4. LoadDeltaState - previous hashes and schema fingerprint
        5. ParseAndWrite - parse → map → classify → write in batches
        6. CommitDeltaState, Archive, ApplyDeletes
        7. PreProcess / PostProcess SQL hooks around it all (database targets)

        Returns:
            ImportExecutionResult; aborted runs come back with status Failed
            and aborted set

        Raises:
            ConfigurationError: Invalid profile (before any execution is recorded)
            ImportCancelledError: Cancellation was requested
            ImportPipelineError: Source, parse, write or state failures, after
                the execution was recorded as Failed
        """
        self.validate_profile(profile)
        context = self.build_write_context(profile)

        result = ImportExecutionResult(execution_id=str(uuid.uuid4()), profile_id=profile.id)
        await self._persist_start(result)
        logger.info(f"Import execution {result.execution_id} started for profile {profile.id}")

        source = self.source_factory(profile.source_type, decrypt=self.decrypt)
        owns_target = self.target is None
        target = self.target or create_target(profile.target_type, decrypt=self.decrypt)
        files: List[SourceFile] = []

        run_hooks = profile.target_type == TargetType.DATABASE

        try:
            # --------------------------------------------------
            # PHASE 0: PRE-PROCESS SQL
            # --------------------------------------------------
            if run_hooks and profile.pre_process_sql:
                with self._phase(result, "PreProcess"):
                    await self._run_sql_hook(target, context, profile.pre_process_sql, result)

            # --------------------------------------------------
            # PHASE 1: FETCH SOURCE
            # --------------------------------------------------
            with self._phase(result, "FetchSource"):
                files = await self.fetch_with_retry(profile, source, result, cancel)
            result.files_processed = len(files)
            result.bytes_processed = sum(f.size or 0 for f in files)

            if not files:
                logger.info(f"No source files for profile {profile.id}")

            # --------------------------------------------------
            # PHASE 2: TARGET SCHEMA
            # --------------------------------------------------
            schema = []
            if profile.target_type == TargetType.DATABASE and files:
                with self._phase(result, "GetSchema"):
                    schema = await target.get_table_schema(context.connection, context.table_name)

            mapper = ColumnMapper(
                mappings=profile.column_mappings,
                date_format=profile.format_config.date_format,
                schema=schema,
                auto_map_columns=profile.auto_map_columns,
                skip_unmapped_columns=profile.skip_unmapped_columns
            )

            # --------------------------------------------------
            # PHASE 3: DELTA STATE
            # --------------------------------------------------
            classifier = None
            fingerprint: Dict[str, Optional[str]] = {"stored": None, "current": None, "columns": None}
            if profile.delta_sync.enabled:
                previous: Dict[str, str] = {}
                if self.state_store is not None:
                    with self._phase(result, "LoadDeltaState"):
                        previous = await self.state_store.load_state(profile.id)
                        fingerprint["stored"] = await self.state_store.get_schema_fingerprint(profile.id)
                classifier = DeltaSyncClassifier(profile.delta_sync, previous)

            # --------------------------------------------------
            # PHASE 4: PARSE, MAP, CLASSIFY, WRITE
            # --------------------------------------------------
            full_replace = profile.load_strategy == LoadStrategy.FULL_REPLACE
            replace_buffer = _RowBuffer() if full_replace else None

            with self._phase(result, "ParseAndWrite"):
                for file in files:
                    check_cancelled(cancel, "file")
                    with file:
                        context = await self._process_file(
                            profile, file, mapper, classifier, target, context,
                            result, replace_buffer, fingerprint, cancel
                        )

            if full_replace and len(replace_buffer):
                with self._phase(result, "FullReplace"):
                    batch = await target.full_replace(replace_buffer.rows, context, replace_buffer.numbers, cancel)
                self._apply_batch(result, batch, None)
                self._revert_unwritten(classifier, replace_buffer, batch, context)
                self._check_abort(profile, result)

            # --------------------------------------------------
            # PHASE 5: COMMIT DELTA STATE
            # --------------------------------------------------
            # A skipped source is missing input, not empty input: keep
            # delta state and target rows as they are
            deleted_keys: List[str] = []
            if classifier is not None and not result.source_skipped:
                with self._phase(result, "CommitDeltaState"):
                    deleted_keys = await self._finalize_delta(profile, classifier, result, fingerprint)

            # --------------------------------------------------
            # PHASE 6: ARCHIVE
            # --------------------------------------------------
            if profile.archive_after_import and files:
                with self._phase(result, "Archive"):
                    await self._archive(profile, source, files, result)

            # --------------------------------------------------
            # PHASE 7: APPLY DELETES
            # --------------------------------------------------
            if deleted_keys:
                with self._phase(result, "ApplyDeletes"):
                    result.rows_deleted += await target.apply_deletes(deleted_keys, context)
                    if self.state_store is not None:
                        await self.state_store.mark_deleted(profile.id, deleted_keys)

            # --------------------------------------------------
            # PHASE 8: POST-PROCESS SQL
            # --------------------------------------------------
            if run_hooks and profile.post_process_sql:
                with self._phase(result, "PostProcess"):
                    await self._post_process(profile, target, context, result)

            result.status = ExecutionStatus.PARTIAL_SUCCESS if result.rows_failed else ExecutionStatus.SUCCESS
            await self._persist_finish(result)
            return result

        except ImportAbortedError as e:
            logger.error(f"Import aborted: {e.message}", extra={"error_context": e.to_dict()})
            result.status = ExecutionStatus.FAILED
            result.aborted = True
            result.error_message = e.message
            written = result.rows_inserted + result.rows_updated
            if profile.rollback_on_abort and written:
                result.compensation_required = True
                logger.warning(
                    f"Execution {result.execution_id} aborted after {written} rows were written; "
                    f"compensation required"
                )
            await self._persist_finish(result)
            return result

        except ImportCancelledError as e:
            logger.warning(f"Import execution {result.execution_id} cancelled")
            result.status = ExecutionStatus.CANCELLED
            result.error_message = "Execution was cancelled"
            e.context["execution_id"] = result.execution_id
            await self._persist_finish(result)
            raise

        except (ConfigurationError, SourceError, ParseError, DeltaSyncError, WriteError, StateStoreError) as e:
            # Known pipeline errors - log with context and fail
            logger.error(f"Import pipeline failed: {e.message}", extra={"error_context": e.to_dict()})
            result.status = ExecutionStatus.FAILED
            result.error_message = e.message
            e.context["execution_id"] = result.execution_id
            await self._persist_finish(result)
            raise

        except Exception as e:
            # Unexpected errors - log and wrap in ImportPipelineError
            logger.exception("Unexpected error in import pipeline")
            result.status = ExecutionStatus.FAILED
            result.error_message = str(e)
            await self._persist_finish(result)
            raise ImportPipelineError(
                "Unexpected error in import pipeline",
                context={
                    "profile_id": profile.id,
                    "execution_id": result.execution_id,
                    "rows_read": result.rows_read,
                    "rows_failed": result.rows_failed,
                },
                original_exception=e
            )

        finally:
            for file in files:
                file.close()
            if owns_target:
                await target.close()
