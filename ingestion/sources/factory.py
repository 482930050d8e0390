"""
Source selection by source type
"""

from typing import Optional, Union

from core.exceptions import ConfigurationError
from ingestion.sources.base import Decryptor, ImportSource
from ingestion.sources.http_source import HttpApiSource
from ingestion.sources.local_source import LocalFileSource
from ingestion.sources.sftp_source import SftpSource
from models.base import SourceType

SOURCES = {
    SourceType.LOCAL: LocalFileSource,
    SourceType.SFTP: SftpSource,
    SourceType.HTTP: HttpApiSource,
}


def create_source(source_type: Union[SourceType, str], decrypt: Optional[Decryptor] = None) -> ImportSource:
    """
    Create the source for a profile's source type.

    Raises:
        ConfigurationError: If the type is not supported
    """
    try:
        kind = SourceType(source_type)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported source type: {source_type}",
            context={"field": "source_type"}
        )
    return SOURCES[kind](decrypt=decrypt)
