"""
Abstract base class for format parsers
"""

import codecs
import io
from abc import ABC, abstractmethod
from typing import AsyncIterator, BinaryIO, Optional

from core.cancellation import CancellationToken
from core.exceptions import ConfigurationError
from ingestion.rows import ParsedRow
from schemas.profile import FormatConfig

# Profile encoding names mapped to Python codecs. UTF-8 tolerates a BOM.
ENCODING_ALIASES = {
    "UTF-8": "utf-8-sig",
    "UTF8": "utf-8-sig",
    "UTF-16": "utf-16",
    "UNICODE": "utf-16",
    "ASCII": "ascii",
    "ISO-8859-1": "latin-1",
    "LATIN1": "latin-1",
    "LATIN-1": "latin-1",
}


def resolve_encoding(name: Optional[str]) -> str:
    """Translate a profile encoding name into a codec name"""
    if not name:
        return "utf-8-sig"

    alias = ENCODING_ALIASES.get(name.strip().upper())
    if alias:
        return alias

    try:
        return codecs.lookup(name.strip()).name
    except LookupError as e:
        raise ConfigurationError(
            f"Unsupported encoding: {name}",
            context={"field": "encoding"},
            original_exception=e
        )


def read_text(stream: BinaryIO, encoding: Optional[str]) -> str:
    """Read a whole binary stream as text"""
    return stream.read().decode(resolve_encoding(encoding))


def open_text(stream: BinaryIO, encoding: Optional[str]) -> io.TextIOWrapper:
    """Wrap a binary stream for line-by-line reading without newline translation"""
    return io.TextIOWrapper(stream, encoding=resolve_encoding(encoding), newline="")


class ImportParser(ABC):
    """
    Turns a byte stream into a lazy, single-pass sequence of ParsedRow.

    Structural failures collapse into a single error row. Cancellation
    surfaces as ImportCancelledError, never as an error row.
    """

    format_name: str = ""

    @abstractmethod
    def parse(
        self,
        stream: BinaryIO,
        config: FormatConfig,
        cancel: Optional[CancellationToken] = None
    ) -> AsyncIterator[ParsedRow]:
        """
        Parse the stream.

        Args:
            stream: Binary stream positioned at the start of the payload
            config: Format options
            cancel: Optional cancellation token checked per row

        Returns:
            Async iterator of ParsedRow
        """
        pass
