"""
Format parsers turning byte streams into ParsedRow sequences.
"""

from ingestion.parsers.base import ImportParser
from ingestion.parsers.csv_parser import CsvParser
from ingestion.parsers.json_parser import JsonParser
from ingestion.parsers.xml_parser import XmlParser
from ingestion.parsers.factory import create_parser, SUPPORTED_FORMATS

__all__ = [
    "ImportParser",
    "CsvParser",
    "JsonParser",
    "XmlParser",
    "create_parser",
    "SUPPORTED_FORMATS",
]
