"""
SQLAlchemy ORM models for the pipeline's own state store.

Models:
    base: Base declarative class and shared enums (SourceType, LoadStrategy,
          failure policies, delta sync strategies, ExecutionStatus, ...)
    delta_sync: Last known row hash per profile and natural key, plus the
                column fingerprint of the last run
    import_execution: Execution audit trail with row counters and errors

Database Schema:
    All models inherit from the Base declarative class and stay portable
    across SQLite, PostgreSQL, MySQL and SQL Server.

Usage:
    from models.base import Base, LoadStrategy, ExecutionStatus
    from models.delta_sync import DeltaSyncState
    from models.import_execution import ImportExecution

Relationships:
    - ImportExecution → ImportExecutionError (one-to-many)
    - DeltaSyncState.last_seen_execution_id → ImportExecution.execution_id
"""

__all__ = [
    "base",
    "delta_sync",
    "import_execution",
]
