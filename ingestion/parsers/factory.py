"""
Parser selection by source format
"""

from typing import Callable, Dict, Union

from core.exceptions import ConfigurationError
from ingestion.parsers.base import ImportParser
from ingestion.parsers.csv_parser import CsvParser
from ingestion.parsers.json_parser import JsonParser
from ingestion.parsers.xml_parser import XmlParser
from models.base import SourceFormat

PARSERS: Dict[SourceFormat, Callable[[], ImportParser]] = {
    SourceFormat.CSV: CsvParser,
    SourceFormat.TSV: lambda: CsvParser(default_delimiter="\t"),
    SourceFormat.JSON: JsonParser,
    SourceFormat.JSONL: lambda: JsonParser(force_json_lines=True),
    SourceFormat.XML: XmlParser,
}

SUPPORTED_FORMATS = [fmt.value for fmt in PARSERS]


def create_parser(source_format: Union[SourceFormat, str]) -> ImportParser:
    """
    Create the parser for a source format (case-insensitive).

    Raises:
        ConfigurationError: If the format is not supported
    """
    try:
        fmt = SourceFormat(source_format)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported source format: {source_format}",
            context={"field": "source_format", "supported": ", ".join(SUPPORTED_FORMATS)}
        )
    return PARSERS[fmt]()
