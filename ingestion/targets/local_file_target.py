"""
Write mapped rows to CSV, JSON or JSON Lines files on local disk
"""

import asyncio
import csv
import json
import os
import re
import uuid
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging

from core.cancellation import CancellationToken, check_cancelled
from core.exceptions import ConfigurationError, WriteError
from ingestion.targets.base import ImportTarget
from models.base import LocalFileFormat, WriteMode
from schemas.target import ImportBatchResult, ImportWriteContext, TargetColumnInfo, TargetConnection

logger = logging.getLogger(__name__)

EXTENSION_FORMATS = {
    ".csv": LocalFileFormat.CSV,
    ".json": LocalFileFormat.JSON,
    ".jsonl": LocalFileFormat.JSONL,
    ".ndjson": LocalFileFormat.JSONL,
}


def infer_format(path: Path, configured: LocalFileFormat) -> LocalFileFormat:
    """The extension decides when the format was left at its CSV default"""
    if configured != LocalFileFormat.CSV:
        return configured
    return EXTENSION_FORMATS.get(path.suffix.lower(), configured)


# Characters not allowed in a file name on Windows or POSIX
UNSAFE_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def expand_path_template(
    template: str,
    profile_name: str,
    file_format: LocalFileFormat = LocalFileFormat.CSV,
    now: Optional[datetime] = None
) -> str:
    """
    Fill {profile}, {timestamp}, {date}, {time}, {guid} and {format} in a
    local target path. Times are UTC; {profile} is made file-name safe.

    Example:
        "exports/{profile}_{date}.{format}" -> "exports/orders_20260118.csv"
    """
    now = now or datetime.utcnow()
    tokens = {
        "{profile}": UNSAFE_FILENAME_RE.sub("_", profile_name),
        "{timestamp}": now.strftime("%Y%m%d_%H%M%S"),
        "{date}": now.strftime("%Y%m%d"),
        "{time}": now.strftime("%H%M%S"),
        "{guid}": uuid.uuid4().hex,
        "{format}": file_format.value.lower(),
    }
    for token, value in tokens.items():
        template = template.replace(token, value)
    return template


def json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    return str(value)


def csv_value(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _header(rows: Sequence[Dict[str, Any]]) -> List[str]:
    """Union of row keys in first-seen order"""
    columns: Dict[str, None] = {}
    for row in rows:
        for column in row:
            columns.setdefault(column, None)
    return list(columns)


class LocalFileImportTarget(ImportTarget):
    """
    File sink for exports and dry runs.

    Append mode extends the existing file (merging the array for JSON);
    Overwrite replaces it. Full replace is always an overwrite.
    """

    @staticmethod
    def _path(context: ImportWriteContext) -> Path:
        path = context.local_file.path or context.table_name
        if not path:
            raise ConfigurationError(
                "Local file target requires a path",
                context={"field": "local_target.path"}
            )
        return Path(path)

    # ========================================================================
    # Writers
    # ========================================================================

    @staticmethod
    def _write_csv(path: Path, rows: List[Dict[str, Any]], append: bool):
        has_content = append and path.exists() and path.stat().st_size > 0

        if has_content:
            with open(path, "r", encoding="utf-8", newline="") as f:
                header = next(csv.reader(f), None) or _header(rows)
            extra = [c for c in _header(rows) if c not in header]
            if extra:
                logger.warning(f"Columns not in existing header of {path.name} are dropped: {', '.join(extra)}")
        else:
            header = _header(rows)

        mode = "a" if has_content else "w"
        with open(path, mode, encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=header, extrasaction="ignore", quoting=csv.QUOTE_MINIMAL)
            if not has_content:
                writer.writeheader()
            for row in rows:
                writer.writerow({k: csv_value(v) for k, v in row.items()})

    @staticmethod
    def _write_json(path: Path, rows: List[Dict[str, Any]], append: bool):
        existing: List[Any] = []
        if append and path.exists() and path.stat().st_size > 0:
            with open(path, "r", encoding="utf-8") as f:
                content = json.load(f)
            existing = content if isinstance(content, list) else [content]

        with open(path, "w", encoding="utf-8") as f:
            json.dump(existing + rows, f, default=json_default, ensure_ascii=False, indent=2)

    @staticmethod
    def _write_jsonl(path: Path, rows: List[Dict[str, Any]], append: bool):
        with open(path, "a" if append else "w", encoding="utf-8") as f:
            for row in rows:
                f.write(json.dumps(row, default=json_default, ensure_ascii=False))
                f.write("\n")

    def _write(self, path: Path, file_format: LocalFileFormat, rows: List[Dict[str, Any]], append: bool):
        path.parent.mkdir(parents=True, exist_ok=True)
        if file_format == LocalFileFormat.JSON:
            self._write_json(path, rows, append)
        elif file_format == LocalFileFormat.JSONL:
            self._write_jsonl(path, rows, append)
        else:
            self._write_csv(path, rows, append)

    async def _write_all(self, rows: List[Dict[str, Any]], context: ImportWriteContext, append: bool) -> ImportBatchResult:
        path = self._path(context)
        file_format = infer_format(path, context.local_file.format)

        try:
            await asyncio.to_thread(self._write, path, file_format, rows, append)
        except (OSError, ValueError, TypeError) as e:
            raise WriteError(
                f"Failed to write {len(rows)} rows to {path}",
                context={"table_name": str(path), "operation": "APPEND" if append else "OVERWRITE"},
                original_exception=e
            )

        logger.info(f"Wrote {len(rows)} rows to {path} ({file_format.value}, {'append' if append else 'overwrite'})")
        return ImportBatchResult(inserted=len(rows))

    # ========================================================================
    # ImportTarget
    # ========================================================================

    async def write_batch(
        self,
        rows: List[Dict[str, Any]],
        context: ImportWriteContext,
        row_numbers: Optional[Sequence[int]] = None,
        cancel: Optional[CancellationToken] = None
    ) -> ImportBatchResult:
        if not rows:
            return ImportBatchResult()
        check_cancelled(cancel, "write")
        append = context.local_file.write_mode == WriteMode.APPEND
        return await self._write_all(rows, context, append)

    async def full_replace(
        self,
        rows: List[Dict[str, Any]],
        context: ImportWriteContext,
        row_numbers: Optional[Sequence[int]] = None,
        cancel: Optional[CancellationToken] = None
    ) -> ImportBatchResult:
        check_cancelled(cancel, "write")
        return await self._write_all(rows, context, append=False)

    async def apply_deletes(self, keys: List[str], context: ImportWriteContext) -> int:
        if keys:
            logger.warning(f"Local file target cannot apply deletes; {len(keys)} deleted key(s) ignored")
        return 0

    async def get_table_schema(
        self,
        connection: Optional[TargetConnection],
        table: Optional[str]
    ) -> List[TargetColumnInfo]:
        return []

    async def test(
        self,
        connection: Optional[TargetConnection],
        table: Optional[str]
    ) -> Tuple[bool, str]:
        """Check the output directory is writable by creating a scratch file"""
        if not table:
            return False, "No output path configured"

        directory = Path(table).parent
        scratch = directory / f".reef_write_check_{uuid.uuid4().hex}"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            scratch.write_text("ok", encoding="utf-8")
            os.remove(scratch)
        except OSError as e:
            return False, f"Directory {directory} is not writable: {e}"
        return True, f"Directory {directory} is writable"
