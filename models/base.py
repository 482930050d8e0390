from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


class LookupEnum(str, enum.Enum):
    """String enum that also accepts values in any letter case"""

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


# ============================================================================
# SOURCE ENUMS
# ============================================================================

class SourceType(LookupEnum):
    """Where raw bytes are fetched from"""
    LOCAL = "Local"
    SFTP = "Sftp"
    HTTP = "Http"


class FileSelection(LookupEnum):
    """Which files matching a pattern are fetched"""
    EXACT = "Exact"
    LATEST = "Latest"
    OLDEST = "Oldest"
    ALL = "All"


class PaginationType(LookupEnum):
    """HTTP pagination strategies"""
    NONE = "None"
    OFFSET = "Offset"
    PAGE = "Page"
    CURSOR = "Cursor"
    LINK = "Link"


class SourceFormat(LookupEnum):
    """Input formats understood by the parsers"""
    CSV = "CSV"
    TSV = "TSV"
    JSON = "JSON"
    JSONL = "JSONL"
    XML = "XML"


# ============================================================================
# TARGET ENUMS
# ============================================================================

class TargetType(LookupEnum):
    """Import sinks"""
    DATABASE = "Database"
    LOCAL_FILE = "LocalFile"


DATABASE_TYPE_ALIASES = {
    "mssql": "SqlServer",
    "mariadb": "MySql",
    "postgres": "PostgreSql",
    "sqlite3": "Sqlite",
}


class DatabaseType(LookupEnum):
    """SQL dialects the database target can speak"""
    SQL_SERVER = "SqlServer"
    MYSQL = "MySql"
    POSTGRES = "PostgreSql"
    SQLITE = "Sqlite"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            alias = DATABASE_TYPE_ALIASES.get(value.strip().lower())
            if alias:
                return cls(alias)
        return super()._missing_(value)


class LoadStrategy(LookupEnum):
    """Write mode for a batch"""
    INSERT = "Insert"
    UPSERT = "Upsert"
    FULL_REPLACE = "FullReplace"
    APPEND = "Append"


class LocalFileFormat(LookupEnum):
    CSV = "CSV"
    JSON = "JSON"
    JSONL = "JSONL"


class WriteMode(LookupEnum):
    OVERWRITE = "Overwrite"
    APPEND = "Append"


class DeleteStrategy(LookupEnum):
    """How rows that disappeared from the source are propagated"""
    NONE = "None"
    SOFT_DELETE = "SoftDelete"
    HARD_DELETE = "HardDelete"


# ============================================================================
# FAILURE POLICIES
# ============================================================================

class SourceFailurePolicy(LookupEnum):
    FAIL = "Fail"
    SKIP = "Skip"
    RETRY = "Retry"


class ParseFailurePolicy(LookupEnum):
    FAIL = "Fail"
    SKIP_ROW = "SkipRow"
    SKIP_FILE = "SkipFile"


class RowFailurePolicy(LookupEnum):
    FAIL = "Fail"
    SKIP_ROW = "SkipRow"
    ROLLBACK = "Rollback"


class ConstraintViolationPolicy(LookupEnum):
    FAIL = "Fail"
    SKIP_ROW = "SkipRow"
    OVERWRITE = "Overwrite"


class ErrorKind(LookupEnum):
    """Shared taxonomy for row-level failures"""
    CONSTRAINT = "Constraint"
    TIMEOUT = "Timeout"
    TYPE = "Type"
    UNKNOWN = "Unknown"
    PARSE = "Parse"
    SOURCE = "Source"


# ============================================================================
# DELTA SYNC ENUMS
# ============================================================================

class HashAlgorithm(LookupEnum):
    SHA256 = "SHA256"
    SHA512 = "SHA512"
    MD5 = "MD5"


class DuplicateStrategy(LookupEnum):
    STRICT = "Strict"
    COMPOSITE = "Composite"
    SKIP = "Skip"


class NullStrategy(LookupEnum):
    """How a null field value contributes to the row hash"""
    STRICT = "Strict"
    SKIP = "Skip"
    EMPTY = "Empty"


class NullKeyStrategy(LookupEnum):
    """What happens to rows whose natural key is null or blank"""
    STRICT = "Strict"
    SKIP = "Skip"
    GENERATE = "Generate"


class RowChange(LookupEnum):
    """Delta sync classification"""
    NEW = "New"
    CHANGED = "Changed"
    UNCHANGED = "Unchanged"
    DELETED = "Deleted"


# ============================================================================
# EXECUTION
# ============================================================================

class ExecutionStatus(LookupEnum):
    """Import execution status"""
    RUNNING = "Running"
    SUCCESS = "Success"
    PARTIAL_SUCCESS = "PartialSuccess"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
