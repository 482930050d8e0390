"""
Import sources: local disk, SFTP and HTTP APIs.
"""

from ingestion.sources.base import ImportSource, select_files, archive_file_name
from ingestion.sources.local_source import LocalFileSource
from ingestion.sources.sftp_source import SftpSource
from ingestion.sources.http_source import HttpApiSource
from ingestion.sources.factory import create_source

__all__ = [
    "ImportSource",
    "LocalFileSource",
    "SftpSource",
    "HttpApiSource",
    "create_source",
    "select_files",
    "archive_file_name",
]
