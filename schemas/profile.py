"""
Pydantic schemas for import profiles and their per-stage settings
"""

import json

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any

from models.base import (
    SourceType,
    FileSelection,
    PaginationType,
    SourceFormat,
    TargetType,
    DatabaseType,
    LoadStrategy,
    LocalFileFormat,
    WriteMode,
    DeleteStrategy,
    SourceFailurePolicy,
    ParseFailurePolicy,
    RowFailurePolicy,
    ConstraintViolationPolicy,
    HashAlgorithm,
    DuplicateStrategy,
    NullStrategy,
    NullKeyStrategy,
)


class FormatConfig(BaseModel):
    """Per-format parser options"""

    # CSV / TSV
    delimiter: str = ","
    has_header: bool = True
    encoding: str = "UTF-8"
    quote_char: str = '"'
    trim_whitespace: bool = True
    skip_rows: int = Field(default=0, ge=0)
    null_value: Optional[str] = None

    # JSON
    data_root_path: Optional[str] = None
    is_json_lines: bool = False

    # XML
    record_element: Optional[str] = None
    xml_namespace: Optional[str] = None

    # Mapper
    date_format: Optional[str] = None

    @validator("delimiter")
    def validate_delimiter(cls, v):
        if v in ("\\t", "tab", "TAB"):
            return "\t"
        if len(v) != 1:
            raise ValueError("Delimiter must be a single character")
        return v

    @validator("quote_char")
    def validate_quote_char(cls, v):
        if len(v) != 1:
            raise ValueError("Quote character must be a single character")
        return v


class ColumnMapping(BaseModel):
    """Source field to target field rule"""

    source_column: str = Field(..., min_length=1)
    target_column: str = Field(..., min_length=1)
    data_type: Optional[str] = None
    default_value: Optional[Any] = None
    transform: Optional[str] = None
    is_key_column: bool = False
    skip_on_null: bool = False


class PaginationConfig(BaseModel):
    """HTTP pagination settings"""

    type: PaginationType = PaginationType.NONE
    page_param: str = "page"
    limit_param: str = "limit"
    limit: int = Field(default=100, ge=1)
    start_page: int = Field(default=1, ge=0)
    max_pages: int = Field(default=1000, ge=1)
    cursor_param: Optional[str] = "cursor"
    cursor_path: Optional[str] = None
    next_link_path: Optional[str] = None
    stop_on_empty_page: bool = True


class DeltaSyncConfig(BaseModel):
    """Change detection settings"""

    enabled: bool = False
    reef_id_column: Optional[str] = None
    hash_algorithm: HashAlgorithm = HashAlgorithm.SHA256
    track_deletes: bool = False
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.STRICT
    null_strategy: NullStrategy = NullStrategy.STRICT
    null_key_strategy: NullKeyStrategy = NullKeyStrategy.STRICT
    reef_id_normalization: str = "Trim"
    numeric_precision: int = Field(default=6, ge=0, le=28)
    remove_non_printable: bool = False
    reset_on_schema_change: bool = False
    hash_excluded_columns: List[str] = Field(default_factory=list)


class LocalFileTargetConfig(BaseModel):
    """Settings for the local file sink"""

    path: Optional[str] = None
    format: LocalFileFormat = LocalFileFormat.CSV
    write_mode: WriteMode = WriteMode.OVERWRITE


class ImportProfile(BaseModel):
    """
    Everything one execution needs: where to read, how to parse,
    how to map, where to write and which failure policies apply.
    """

    id: str = Field(..., min_length=1, max_length=100)
    name: Optional[str] = None

    # Source
    source_type: SourceType = SourceType.LOCAL
    source_path: Optional[str] = None
    source_file_pattern: Optional[str] = None
    source_file_selection: FileSelection = FileSelection.LATEST
    source_config: Dict[str, Any] = Field(default_factory=dict)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    http_data_root_path: Optional[str] = None
    archive_after_import: bool = False
    archive_path: Optional[str] = None

    # Format
    source_format: SourceFormat = SourceFormat.CSV
    format_config: FormatConfig = Field(default_factory=FormatConfig)

    # Mapping
    column_mappings: List[ColumnMapping] = Field(default_factory=list)
    auto_map_columns: bool = False
    skip_unmapped_columns: bool = False

    # Target
    target_type: TargetType = TargetType.DATABASE
    target_database_type: Optional[DatabaseType] = None
    target_connection_string: Optional[str] = None
    target_table: Optional[str] = None
    local_target: LocalFileTargetConfig = Field(default_factory=LocalFileTargetConfig)
    load_strategy: LoadStrategy = LoadStrategy.UPSERT
    upsert_key_columns: List[str] = Field(default_factory=list)
    batch_size: int = Field(default=500, ge=1)
    command_timeout_seconds: int = Field(default=120, ge=1)

    # Failure policies
    on_source_failure: SourceFailurePolicy = SourceFailurePolicy.FAIL
    on_parse_failure: ParseFailurePolicy = ParseFailurePolicy.SKIP_ROW
    on_row_failure: RowFailurePolicy = RowFailurePolicy.SKIP_ROW
    on_constraint_violation: ConstraintViolationPolicy = ConstraintViolationPolicy.SKIP_ROW
    retry_count: int = Field(default=3, ge=0)
    max_failed_rows_before_abort: Optional[int] = Field(default=None, ge=0)
    max_failed_rows_percent: Optional[float] = Field(default=None, ge=0, le=100)
    rollback_on_abort: bool = True

    # Delta sync and delete propagation
    delta_sync: DeltaSyncConfig = Field(default_factory=DeltaSyncConfig)
    delete_strategy: DeleteStrategy = DeleteStrategy.SOFT_DELETE
    delete_column: Optional[str] = None
    delete_value: str = "1"

    # SQL hooks run against database targets; {ExecutionId} is filled in
    pre_process_sql: Optional[str] = None
    post_process_sql: Optional[str] = None
    post_process_skip_on_failure: bool = True

    @validator("pre_process_sql", "post_process_sql", pre=True)
    def extract_sql(cls, v):
        """Accept raw SQL, a {"sql": ...} mapping or the same mapping as JSON text"""
        if isinstance(v, str) and v.lstrip().startswith("{"):
            try:
                v = json.loads(v)
            except ValueError:
                return v
        if isinstance(v, dict):
            v = v.get("sql") or v.get("Sql")
        if v is None or not str(v).strip():
            return None
        return v

    @validator("upsert_key_columns", pre=True)
    def split_key_columns(cls, v):
        """Accept comma separated key columns"""
        if v is None:
            return []
        if isinstance(v, str):
            return [c.strip() for c in v.split(",") if c.strip()]
        return v
