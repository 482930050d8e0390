"""
Audit trail of import executions and their recorded errors
"""

from datetime import datetime
from typing import List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.orm import selectinload

from core.exceptions import StateStoreError
from models.import_execution import ImportExecution, ImportExecutionError
from schemas.execution import ImportExecutionResult

logger = logging.getLogger(__name__)


class ExecutionStore:
    """
    Create an ImportExecution row when a run starts and complete it
    with counters and errors when the run ends.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def start(self, result: ImportExecutionResult) -> None:
        """Create the execution record in Running state"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(ImportExecution(
                        execution_id=result.execution_id,
                        profile_id=result.profile_id,
                        status=result.status,
                        started_at=result.started_at
                    ))
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to create execution record {result.execution_id}",
                context={"profile_id": result.profile_id, "execution_id": result.execution_id},
                original_exception=e
            )

    async def finish(self, result: ImportExecutionResult) -> None:
        """Complete the execution record with final status, counters and errors"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = (await session.execute(
                        select(ImportExecution).where(ImportExecution.execution_id == result.execution_id)
                    )).scalar_one_or_none()

                    if row is None:
                        row = ImportExecution(
                            execution_id=result.execution_id,
                            profile_id=result.profile_id,
                            started_at=result.started_at
                        )
                        session.add(row)

                    row.status = result.status
                    row.completed_at = result.completed_at or datetime.utcnow()
                    row.duration_seconds = (row.completed_at - row.started_at).total_seconds()
                    row.rows_read = result.rows_read
                    row.rows_inserted = result.rows_inserted
                    row.rows_updated = result.rows_updated
                    row.rows_skipped = result.rows_skipped
                    row.rows_deleted = result.rows_deleted
                    row.rows_failed = result.rows_failed
                    row.files_processed = result.files_processed
                    row.bytes_processed = result.bytes_processed
                    row.delta_new = result.delta_new
                    row.delta_changed = result.delta_changed
                    row.delta_unchanged = result.delta_unchanged
                    row.delta_deleted = result.delta_deleted
                    row.error_message = result.error_message
                    row.phase_timings = dict(result.phase_timings)
                    await session.flush()

                    for error in result.errors:
                        session.add(ImportExecutionError(
                            execution_pk=row.id,
                            row_number=error.row_number,
                            reef_id=error.reef_id,
                            kind=error.kind.value,
                            message=error.message,
                            file_identifier=error.file_identifier
                        ))
        except SQLAlchemyError as e:
            raise StateStoreError(
                f"Failed to complete execution record {result.execution_id}",
                context={"profile_id": result.profile_id, "execution_id": result.execution_id},
                original_exception=e
            )

        logger.debug(f"Execution {result.execution_id} recorded as {result.status.value}")

    async def get(self, execution_id: str) -> Optional[ImportExecution]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ImportExecution)
                .options(selectinload(ImportExecution.errors))
                .where(ImportExecution.execution_id == execution_id)
            )
            return result.scalar_one_or_none()

    async def recent(self, profile_id: str, limit: int = 20) -> List[ImportExecution]:
        """Latest executions of a profile, newest first"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(ImportExecution)
                .where(ImportExecution.profile_id == profile_id)
                .order_by(ImportExecution.started_at.desc())
                .limit(limit)
            )
            return list(result.scalars())
