from sqlalchemy import Column, Integer, String, DateTime, Boolean, Index, BigInteger
from datetime import datetime
from models.base import Base


class DeltaSyncState(Base):
    """
    Last known content hash per tracked row.

    Design:
    - One row per (profile, natural key), updated on every sighting
    - is_deleted is flipped, never physically removed by a normal run
    - last_seen_execution_id links back to ImportExecution.execution_id
    """
    __tablename__ = "delta_sync_state"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    profile_id = Column(String(100), nullable=False)
    reef_id = Column(String(450), nullable=False)
    row_hash = Column(String(128), nullable=False)

    last_seen_execution_id = Column(String(36), nullable=True)
    first_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_delta_sync_profile_reef", "profile_id", "reef_id", unique=True),
        Index("idx_delta_sync_profile_deleted", "profile_id", "is_deleted"),
    )


class DeltaSyncSchema(Base):
    """
    Column fingerprint of the last run per profile, used to invalidate
    hash state when the record shape changes.
    """
    __tablename__ = "delta_sync_schema"

    profile_id = Column(String(100), primary_key=True)
    fingerprint = Column(String(128), nullable=False)
    columns = Column(String(4000), nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
