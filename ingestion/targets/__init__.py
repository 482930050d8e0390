"""
Import targets: SQL databases and local files.
"""

from ingestion.targets.base import ImportTarget
from ingestion.targets.dialects import (
    SqlDialect,
    SqlServerDialect,
    MySqlDialect,
    PostgresDialect,
    SqliteDialect,
    get_dialect,
)
from ingestion.targets.database_target import DatabaseImportTarget
from ingestion.targets.local_file_target import LocalFileImportTarget
from ingestion.targets.factory import create_target

__all__ = [
    "ImportTarget",
    "SqlDialect",
    "SqlServerDialect",
    "MySqlDialect",
    "PostgresDialect",
    "SqliteDialect",
    "get_dialect",
    "DatabaseImportTarget",
    "LocalFileImportTarget",
    "create_target",
]
