"""
Custom exceptions for the import pipeline with structured error context.

Every exception carries a context dictionary so that failures can be
logged and stored on the execution record without losing detail.

Exception Hierarchy:
    ImportPipelineError (base)
    ├── ConfigurationError
    ├── SourceError
    │   ├── NetworkError
    │   ├── RateLimitError
    │   ├── AuthenticationError
    │   └── ResourceNotFoundError
    ├── ParseError
    ├── DeltaSyncError
    │   └── DuplicateKeyError
    ├── WriteError
    │   ├── ConstraintViolationError
    │   ├── WriteTimeoutError
    │   └── TypeMismatchError
    ├── StateStoreError
    ├── ImportAbortedError
    ├── ImportCancelledError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ImportPipelineError(Exception):
    """
    Base exception for every failure raised by the pipeline.

    Attributes:
        message: Text recorded on the execution and shown to operators
        context: Profile, file, row or table details attached where the error is raised
        original_exception: Driver or library exception this one wraps, if any
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        details = [f"{k}={v}" for k, v in self.context.items() if v is not None]
        text = self.message
        if details:
            text += f" [{', '.join(details)}]"
        if self.original_exception:
            text += f" <- {type(self.original_exception).__name__}: {self.original_exception}"
        return text

    def to_dict(self) -> Dict[str, Any]:
        """Structured form used for log extras"""
        return {
            "error_type": type(self).__name__,
            "message": self.message,
            "context": dict(self.context),
            "raised_at": self.timestamp.isoformat(),
            "cause": repr(self.original_exception) if self.original_exception else None,
        }


# ============================================================================
# Retry classification
# ============================================================================

class RetryableError(ImportPipelineError):
    """
    Transient failure; the runner retries source fetches that raise it.

    Raised for dropped SFTP sessions, HTTP 5xx and 429 responses and
    statement timeouts.
    """
    pass


class NonRetryableError(ImportPipelineError):
    """
    Permanent failure; retrying cannot change the outcome.

    Raised for invalid profiles, rejected credentials and missing remote
    paths or endpoints.
    """
    pass


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(NonRetryableError):
    """
    Raised when a profile is missing a required setting or names an
    unsupported option. Always surfaced to the caller.

    Context should include:
        - profile_id: Profile being executed (if known)
        - field: The offending setting
    """
    pass


# ============================================================================
# Source Errors
# ============================================================================

class SourceError(ImportPipelineError):
    """
    Base exception for fetch/connect failures against a source.

    Context should include:
        - source_type: Local, Sftp or Http
        - identifier: Path or URL being fetched
    """
    pass


class NetworkError(RetryableError, SourceError):
    """Connection refused, reset or timed out; HTTP 5xx."""
    pass


class RateLimitError(RetryableError, SourceError):
    """HTTP 429; `retry_after` (seconds, from the Retry-After header) stretches the backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        self.context.setdefault("retry_after", retry_after)


class AuthenticationError(NonRetryableError, SourceError):
    """Authentication failures (HTTP 401, 403, SSH auth) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, SourceError):
    """Resource not found errors (HTTP 404, missing remote path)."""
    pass


# ============================================================================
# Parse Errors
# ============================================================================

class ParseError(ImportPipelineError):
    """
    Raised when the parse failure policy is Fail and a row or file
    could not be parsed.

    Context should include:
        - file: Source file identifier
        - line_number: Line where the error occurred
    """
    pass


# ============================================================================
# Delta Sync Errors
# ============================================================================

class DeltaSyncError(ImportPipelineError):
    """Base exception for change-detection failures."""
    pass


class DuplicateKeyError(DeltaSyncError):
    """
    Raised under the Strict duplicate strategy when one natural key
    appears twice in a single run.
    """
    pass


# ============================================================================
# Write Errors
# ============================================================================

class WriteError(ImportPipelineError):
    """
    Base exception for target write failures.

    Context should include:
        - table_name: Target table (or file path)
        - operation: INSERT, UPSERT, REPLACE, DELETE
        - kind: Classified error kind
    """

    default_kind = "Unknown"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        kind: Optional[str] = None
    ):
        super().__init__(message, context, original_exception)
        self.kind = kind or self.default_kind
        self.context.setdefault("kind", self.kind)


class ConstraintViolationError(WriteError):
    """Unique or primary key collision escalated by the Fail policy."""
    default_kind = "Constraint"


class WriteTimeoutError(RetryableError, WriteError):
    """Command timeout while writing a batch."""
    default_kind = "Timeout"


class TypeMismatchError(NonRetryableError, WriteError):
    """Value could not be converted to the column's declared type."""
    default_kind = "Type"


# ============================================================================
# State Store Errors
# ============================================================================

class StateStoreError(ImportPipelineError):
    """
    Raised when delta sync state or execution records cannot be read or
    written.
    """
    pass


# ============================================================================
# Execution Control
# ============================================================================

class ImportAbortedError(ImportPipelineError):
    """
    Raised when the failed-row ceilings of a profile are crossed.

    Context should include:
        - rows_failed: Failed rows at the time of abort
        - rows_read: Rows read at the time of abort
        - threshold: The ceiling that was crossed
    """
    pass


class ImportCancelledError(ImportPipelineError):
    """Raised at a row or batch boundary once cancellation was requested."""
    pass
