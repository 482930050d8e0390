from sqlalchemy import Column, String, Enum, DateTime, Float, Integer, Text, Index, BigInteger, ForeignKey, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from models.base import Base, ExecutionStatus


class ImportExecution(Base):
    """
    Tracks metadata for each import execution.

    Purpose:
    - Audit trail of all runs of a profile
    - Row accounting (read/inserted/updated/skipped/deleted/failed)
    - Delta sync counters and phase timings
    """
    __tablename__ = "import_executions"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    execution_id = Column(String(36), default=lambda: str(uuid.uuid4()), unique=True, nullable=False, index=True)

    profile_id = Column(String(100), nullable=False, index=True)
    status = Column(Enum(ExecutionStatus), default=ExecutionStatus.RUNNING, nullable=False, index=True)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Row accounting
    rows_read = Column(Integer, default=0)
    rows_inserted = Column(Integer, default=0)
    rows_updated = Column(Integer, default=0)
    rows_skipped = Column(Integer, default=0)
    rows_deleted = Column(Integer, default=0)
    rows_failed = Column(Integer, default=0)
    files_processed = Column(Integer, default=0)
    bytes_processed = Column(BigInteger, default=0)

    # Delta sync
    delta_new = Column(Integer, default=0)
    delta_changed = Column(Integer, default=0)
    delta_unchanged = Column(Integer, default=0)
    delta_deleted = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)
    phase_timings = Column(JSON, nullable=True)

    errors = relationship("ImportExecutionError", back_populates="execution", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_import_execution_profile_started", "profile_id", "started_at"),
    )


class ImportExecutionError(Base):
    """One recorded row-level or phase-level failure of an execution."""
    __tablename__ = "import_execution_errors"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    execution_pk = Column(ForeignKey("import_executions.id", ondelete="CASCADE"), nullable=False, index=True)

    row_number = Column(Integer, nullable=True)
    reef_id = Column(String(450), nullable=True)
    kind = Column(String(20), nullable=False)
    message = Column(Text, nullable=False)
    file_identifier = Column(String(1000), nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    execution = relationship("ImportExecution", back_populates="errors")
