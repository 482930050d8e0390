"""
Abstract base class for import targets
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.cancellation import CancellationToken
from core.exceptions import ConfigurationError
from schemas.target import ImportBatchResult, ImportWriteContext, TargetColumnInfo, TargetConnection


def row_numbers_for(rows: Sequence[Any], row_numbers: Optional[Sequence[int]] = None) -> List[int]:
    """Source row numbers for error reporting, 1-based positions by default"""
    if row_numbers is None:
        return list(range(1, len(rows) + 1))
    return list(row_numbers)


def natural_key_of(row: Dict[str, Any], context: ImportWriteContext) -> Optional[str]:
    column = context.natural_key_column
    if not column:
        return None
    value = row.get(column)
    return None if value is None else str(value)


class ImportTarget(ABC):
    """
    Contract shared by database and local file targets.

    Every row submitted to write_batch or full_replace is accounted for
    exactly once as inserted, updated, skipped or failed.
    """

    @abstractmethod
    async def write_batch(
        self,
        rows: List[Dict[str, Any]],
        context: ImportWriteContext,
        row_numbers: Optional[Sequence[int]] = None,
        cancel: Optional[CancellationToken] = None
    ) -> ImportBatchResult:
        """Insert, append or upsert rows according to the load strategy"""
        pass

    @abstractmethod
    async def full_replace(
        self,
        rows: List[Dict[str, Any]],
        context: ImportWriteContext,
        row_numbers: Optional[Sequence[int]] = None,
        cancel: Optional[CancellationToken] = None
    ) -> ImportBatchResult:
        """Replace the whole target content atomically"""
        pass

    @abstractmethod
    async def apply_deletes(self, keys: List[str], context: ImportWriteContext) -> int:
        """Propagate deleted natural keys. Returns the number of rows affected."""
        pass

    @abstractmethod
    async def get_table_schema(
        self,
        connection: Optional[TargetConnection],
        table: Optional[str]
    ) -> List[TargetColumnInfo]:
        pass

    @abstractmethod
    async def test(
        self,
        connection: Optional[TargetConnection],
        table: Optional[str]
    ) -> Tuple[bool, str]:
        pass

    async def run_sql(self, connection: Optional[TargetConnection], sql: str, command_timeout: Optional[int] = None):
        """Run a pre- or post-process statement against the target"""
        raise ConfigurationError(
            f"{type(self).__name__} cannot run SQL hooks",
            context={"field": "pre_process_sql"}
        )

    async def close(self):
        """Release pooled resources"""
        pass
