"""
JSON document and JSON Lines parser
"""

import json
from typing import Any, AsyncIterator, BinaryIO, Dict, List, Optional

from core.cancellation import CancellationToken, check_cancelled
from ingestion.parsers.base import ImportParser, open_text, read_text
from ingestion.rows import ParsedRow
from schemas.profile import FormatConfig
import logging

logger = logging.getLogger(__name__)

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


def _parse_int(literal: str):
    value = int(literal)
    if INT64_MIN <= value <= INT64_MAX:
        return value
    return float(literal)


def loads(text: str) -> Any:
    """json.loads with 64-bit integer semantics"""
    return json.loads(text, parse_int=_parse_int)


def navigate(document: Any, root_path: Optional[str]) -> Any:
    """
    Follow a dotted root path ($.a.b, the $ is optional) through nested
    objects.

    Raises:
        ValueError: When a segment is missing or the parent is not an object
    """
    if not root_path:
        return document

    path = root_path.strip()
    if path.startswith("$."):
        path = path[2:]
    elif path.startswith("$"):
        path = path[1:]

    current = document
    for segment in path.split("."):
        if not segment:
            continue
        if not isinstance(current, dict):
            raise ValueError(f"Cannot navigate '{segment}': parent is not an object")
        if segment not in current:
            raise ValueError(f"Path segment '{segment}' not found")
        current = current[segment]
    return current


def to_column_value(value: Any) -> Any:
    """Nested containers become their JSON text; scalars stay native"""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return value


def to_columns(element: Any) -> Dict[str, Any]:
    if isinstance(element, dict):
        return {key: to_column_value(value) for key, value in element.items()}
    return {"value": to_column_value(element)}


class JsonParser(ImportParser):
    """
    Parse a JSON document (array, enveloped array or single object) or
    line-delimited JSON.

    Document mode is structural: any failure yields one error row at
    line 0. Lines mode isolates failures to the offending line.
    """

    format_name = "JSON"

    def __init__(self, force_json_lines: bool = False):
        self.force_json_lines = force_json_lines

    def parse(
        self,
        stream: BinaryIO,
        config: FormatConfig,
        cancel: Optional[CancellationToken] = None
    ) -> AsyncIterator[ParsedRow]:
        if self.force_json_lines or config.is_json_lines:
            return self._parse_lines(stream, config, cancel)
        return self._parse_document(stream, config, cancel)

    async def _parse_document(
        self,
        stream: BinaryIO,
        config: FormatConfig,
        cancel: Optional[CancellationToken]
    ) -> AsyncIterator[ParsedRow]:
        check_cancelled(cancel, "parse")

        try:
            document = loads(read_text(stream, config.encoding))
            records = navigate(document, config.data_root_path)
            if isinstance(records, list):
                elements: List[Any] = records
            elif isinstance(records, dict):
                elements = [records]
            else:
                raise ValueError(
                    f"Expected an array or object at '{config.data_root_path or '$'}', "
                    f"found {type(records).__name__}"
                )
        except (ValueError, UnicodeDecodeError) as e:
            # json.JSONDecodeError is a ValueError
            logger.error(f"JSON parse error: {e}")
            yield ParsedRow.error(0, f"JSON parse error: {e}")
            return

        for index, element in enumerate(elements, start=1):
            check_cancelled(cancel, "parse")
            yield ParsedRow(line_number=index, columns=to_columns(element))

        logger.debug(f"JSON parse complete: {len(elements)} rows")

    async def _parse_lines(
        self,
        stream: BinaryIO,
        config: FormatConfig,
        cancel: Optional[CancellationToken]
    ) -> AsyncIterator[ParsedRow]:
        reader = open_text(stream, config.encoding)
        line_number = 0
        failed = 0

        for raw_line in reader:
            check_cancelled(cancel, "parse")
            line_number += 1

            line = raw_line.strip()
            if not line:
                continue

            try:
                element = loads(line)
            except ValueError as e:
                failed += 1
                yield ParsedRow.error(line_number, f"Line {line_number}: {e}")
                continue

            yield ParsedRow(line_number=line_number, columns=to_columns(element))

        if failed:
            logger.warning(f"JSON Lines parse: {failed} of {line_number} lines could not be parsed")
