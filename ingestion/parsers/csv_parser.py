"""
Delimited text parser (CSV and TSV)
"""

import csv
from typing import Any, AsyncIterator, BinaryIO, Dict, List, Optional

from core.cancellation import CancellationToken, check_cancelled
from ingestion.parsers.base import ImportParser, open_text
from ingestion.rows import ParsedRow
from schemas.profile import FormatConfig
import logging

logger = logging.getLogger(__name__)

WHITESPACE = " \t\f\v"


class CsvParser(ImportParser):
    """
    Parse delimited text one physical line at a time.

    Supports:
    - Quoted fields with embedded delimiters and doubled-quote escapes
    - Leading banner lines (skip_rows) and optional header
    - Null sentinel and whitespace trimming
    - Per-line error rows; a bad line never stops the file
    """

    format_name = "CSV"

    def __init__(self, default_delimiter: Optional[str] = None):
        # TSV registers with a tab; an explicit non-comma delimiter still wins
        self.default_delimiter = default_delimiter

    def _delimiter(self, config: FormatConfig) -> str:
        if self.default_delimiter and config.delimiter == ",":
            return self.default_delimiter
        return config.delimiter

    async def parse(
        self,
        stream: BinaryIO,
        config: FormatConfig,
        cancel: Optional[CancellationToken] = None
    ) -> AsyncIterator[ParsedRow]:
        delimiter = self._delimiter(config)
        strip_chars = WHITESPACE.replace(delimiter, "")
        reader = open_text(stream, config.encoding)

        line_number = 0
        headers: Optional[List[str]] = None
        rows_emitted = 0

        for raw_line in reader:
            check_cancelled(cancel, "parse")
            line_number += 1

            if line_number <= config.skip_rows:
                continue

            line = raw_line.rstrip("\r\n")
            if config.trim_whitespace:
                line = line.strip(strip_chars)

            if not line.strip():
                continue

            try:
                fields = self._split(line, delimiter, config.quote_char)
            except csv.Error as e:
                if headers is None and config.has_header:
                    # The next line that parses becomes the header
                    logger.error(f"Could not parse CSV header at line {line_number}: {e}")
                    yield ParsedRow.error(line_number, f"Failed to parse header line {line_number}: {e}")
                    continue
                yield ParsedRow.error(line_number, f"Failed to parse line {line_number}: {e}")
                continue

            if config.trim_whitespace:
                fields = [f.strip(strip_chars) for f in fields]

            if headers is None:
                if config.has_header:
                    headers = fields
                    continue
                headers = [f"Col{i + 1}" for i in range(len(fields))]

            yield ParsedRow(line_number=line_number, columns=self._build_columns(headers, fields, config))
            rows_emitted += 1

        logger.debug(f"CSV parse complete: {rows_emitted} rows from {line_number} lines")

    @staticmethod
    def _split(line: str, delimiter: str, quote_char: str) -> List[str]:
        """Tokenise one line; strict mode rejects text after a closing quote"""
        return next(csv.reader([line], delimiter=delimiter, quotechar=quote_char, strict=True))

    @staticmethod
    def _build_columns(headers: List[str], fields: List[str], config: FormatConfig) -> Dict[str, Any]:
        columns: Dict[str, Any] = {}
        for i, header in enumerate(headers):
            value = fields[i] if i < len(fields) else ""
            if config.null_value is not None and value == config.null_value:
                value = None
            columns[header] = value
        return columns
