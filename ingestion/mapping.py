"""
Map parsed source rows onto target-shaped rows
"""

import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional
import logging

from schemas.profile import ColumnMapping
from schemas.target import TargetColumnInfo

logger = logging.getLogger(__name__)

TRUE_VALUES = {"1", "yes", "true", "y"}
FALSE_VALUES = {"0", "no", "false", "n"}

INT_TYPES = {"int", "integer", "long", "bigint", "smallint", "tinyint"}
DECIMAL_TYPES = {"decimal", "numeric", "float", "double", "real", "money"}
BOOL_TYPES = {"bool", "boolean", "bit"}
DATETIME_TYPES = {"datetime", "date", "datetime2", "timestamp"}
STRING_TYPES = {"string", "varchar", "nvarchar", "text", "char", "nchar"}

FILTERS: Dict[str, Callable[[str], str]] = {
    "upper": str.upper,
    "upcase": str.upper,
    "lower": str.lower,
    "downcase": str.lower,
    "trim": str.strip,
    "strip": str.strip,
    "title": str.title,
    "capitalize": str.capitalize,
}

TEMPLATE_RE = re.compile(r"^\s*\{\{(.*)\}\}\s*$")


def _base_type(data_type: str) -> str:
    """varchar(50) -> varchar"""
    return data_type.split("(", 1)[0].strip().lower()


def cast_value(value: Any, data_type: Optional[str], date_format: Optional[str] = None) -> Any:
    """
    Parse and cast a value to a type hint.

    A failed cast returns the original value unchanged.
    """
    if value is None or not data_type:
        return value

    kind = _base_type(data_type)

    try:
        if kind in INT_TYPES:
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, float):
                return int(value) if value.is_integer() else value
            return int(str(value).strip())

        if kind in DECIMAL_TYPES:
            if isinstance(value, bool):
                return value
            return Decimal(str(value).strip())

        if kind in BOOL_TYPES:
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in TRUE_VALUES:
                return True
            if text in FALSE_VALUES:
                return False
            return value

        if kind in DATETIME_TYPES:
            if isinstance(value, datetime):
                return value
            text = str(value).strip()
            if date_format:
                try:
                    return datetime.strptime(text, date_format)
                except ValueError:
                    pass
            return datetime.fromisoformat(text.replace("Z", "+00:00"))

        if kind in STRING_TYPES:
            return str(value)

    except (ValueError, TypeError, InvalidOperation):
        logger.debug(f"Could not cast {value!r} to {data_type}, keeping original value")
        return value

    return value


def apply_transform(value: Any, expression: Optional[str]) -> Any:
    """
    Apply a filter pipeline such as "{{ value | upper | trim }}" or
    "upper|trim" to a string value.
    """
    if not expression or value is None:
        return value

    match = TEMPLATE_RE.match(expression)
    body = match.group(1) if match else expression
    steps = [s.strip().lower() for s in body.split("|")]

    result = str(value)
    for step in steps:
        if not step or step == "value":
            continue
        func = FILTERS.get(step)
        if func is None:
            logger.warning(f"Unknown transform filter '{step}' in '{expression}'")
            continue
        result = func(result)
    return result


class ColumnMapper:
    """
    Turn a source row into a target row.

    Handles:
    - Case-insensitive source column lookup
    - Defaults for missing or null values
    - SkipOnNull omission
    - Type hint casting with fallback to the original value
    - Transform filter pipelines
    """

    def __init__(
        self,
        mappings: Optional[List[ColumnMapping]] = None,
        date_format: Optional[str] = None,
        schema: Optional[List[TargetColumnInfo]] = None,
        auto_map_columns: bool = False,
        skip_unmapped_columns: bool = False
    ):
        self.mappings = list(mappings or [])
        self.date_format = date_format
        self.auto_map_columns = auto_map_columns
        self.skip_unmapped_columns = skip_unmapped_columns
        # lower-cased name -> target's own spelling
        self.schema_names = {col.name.lower(): col.name for col in (schema or [])}

    @staticmethod
    def _lookup(row: Dict[str, Any], column: str) -> Any:
        if column in row:
            return row[column]
        lowered = column.lower()
        for key, value in row.items():
            if key.lower() == lowered:
                return value
        return None

    def _auto_map(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Match source columns to target columns by case-insensitive name"""
        if not self.schema_names:
            return dict(row)

        result: Dict[str, Any] = {}
        for column, value in row.items():
            target = self.schema_names.get(column.lower())
            if target is not None:
                result[target] = value
            elif not self.skip_unmapped_columns:
                result[column] = value
        return result

    def map(self, row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Return the target-shaped row, or None when nothing is left to write.

        Without mappings the row passes through unchanged (or auto-mapped
        against the target schema when enabled).
        """
        if not self.mappings:
            passthrough = self._auto_map(row) if self.auto_map_columns else dict(row)
            return passthrough or None

        result: Dict[str, Any] = {}
        for mapping in self.mappings:
            value = self._lookup(row, mapping.source_column)

            if value is None and mapping.default_value is not None:
                value = mapping.default_value

            if value is None and mapping.skip_on_null:
                continue

            value = apply_transform(value, mapping.transform)
            result[mapping.target_column] = cast_value(value, mapping.data_type, self.date_format)

        return result or None
