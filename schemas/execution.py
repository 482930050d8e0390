"""
Pydantic schema for the outcome of one import execution
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime

from models.base import ExecutionStatus
from schemas.target import RowError


class ImportExecutionResult(BaseModel):
    """Aggregated counters of one run of a profile"""

    execution_id: str
    profile_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    rows_read: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_skipped: int = 0
    rows_deleted: int = 0
    rows_failed: int = 0
    files_processed: int = 0
    bytes_processed: int = 0

    delta_new: int = 0
    delta_changed: int = 0
    delta_unchanged: int = 0
    delta_deleted: int = 0

    errors: List[RowError] = Field(default_factory=list)
    error_message: Optional[str] = None
    aborted: bool = False
    source_skipped: bool = False
    compensation_required: bool = False
    phase_timings: Dict[str, float] = Field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
