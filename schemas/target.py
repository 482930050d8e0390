"""
Pydantic schemas exchanged with import targets
"""

from pydantic import BaseModel, Field
from typing import Optional, List

from models.base import (
    TargetType,
    DatabaseType,
    LoadStrategy,
    DeleteStrategy,
    RowFailurePolicy,
    ConstraintViolationPolicy,
    ErrorKind,
)
from schemas.profile import ColumnMapping, LocalFileTargetConfig


class TargetConnection(BaseModel):
    """Connection handle for a database target"""

    database_type: DatabaseType
    url: str = Field(..., min_length=1)

    class Config:
        frozen = True


class ImportWriteContext(BaseModel):
    """
    One batch-write request. Immutable for the duration of a write call.
    """

    target_type: TargetType = TargetType.DATABASE
    connection: Optional[TargetConnection] = None
    table_name: Optional[str] = None
    load_strategy: LoadStrategy = LoadStrategy.INSERT
    upsert_key_columns: List[str] = Field(default_factory=list)
    mappings: List[ColumnMapping] = Field(default_factory=list)
    batch_size: int = Field(default=500, ge=1)
    command_timeout_seconds: int = Field(default=120, ge=1)
    on_row_failure: RowFailurePolicy = RowFailurePolicy.SKIP_ROW
    on_constraint_violation: ConstraintViolationPolicy = ConstraintViolationPolicy.SKIP_ROW

    # Delete propagation
    natural_key_column: Optional[str] = None
    delete_strategy: DeleteStrategy = DeleteStrategy.SOFT_DELETE
    delete_column: Optional[str] = None
    delete_value: str = "1"

    local_file: LocalFileTargetConfig = Field(default_factory=LocalFileTargetConfig)

    class Config:
        frozen = True

    def key_columns(self) -> List[str]:
        """Upsert keys from the context, else from key-flagged mappings"""
        if self.upsert_key_columns:
            return list(self.upsert_key_columns)
        return [m.target_column for m in self.mappings if m.is_key_column]


class RowError(BaseModel):
    """One row-level failure"""

    row_number: Optional[int] = None
    reef_id: Optional[str] = None
    message: str
    kind: ErrorKind = ErrorKind.UNKNOWN
    file_identifier: Optional[str] = None


class ImportBatchResult(BaseModel):
    """Outcome of one write call"""

    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[RowError] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.skipped + self.failed

    def merge(self, other: "ImportBatchResult") -> "ImportBatchResult":
        """Fold another result into this one"""
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)
        return self


class TargetColumnInfo(BaseModel):
    """One column of a target table, as reported by its catalog"""

    name: str
    data_type: str
    is_nullable: bool = True
    is_primary_key: bool = False
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
