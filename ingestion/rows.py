"""
Row and file representations shared by sources, parsers and targets
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Dict, Optional


@dataclass(frozen=True)
class ParsedRow:
    """
    One record emitted by a parser.

    columns maps column name to a str, int, float, bool, bytes or None
    value in source order. A row with a parse_error has no columns and
    never reaches a target.
    """

    line_number: int
    columns: Dict[str, Any] = field(default_factory=dict)
    parse_error: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.parse_error is None

    @classmethod
    def error(cls, line_number: int, message: str) -> "ParsedRow":
        return cls(line_number=line_number, columns={}, parse_error=message)


@dataclass
class SourceFileInfo:
    """Listing entry for a file or endpoint"""

    identifier: str
    name: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None


@dataclass
class SourceFile:
    """
    One fetched unit of input. The caller owns content and closes it
    once parsing has consumed it.
    """

    identifier: str
    name: str
    content: BinaryIO
    size: int = 0
    last_modified: Optional[datetime] = None

    def close(self):
        self.content.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
