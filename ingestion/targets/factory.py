"""
Target selection by target type
"""

from typing import Optional, Union

from core.exceptions import ConfigurationError
from ingestion.sources.base import Decryptor
from ingestion.targets.base import ImportTarget
from ingestion.targets.database_target import DatabaseImportTarget
from ingestion.targets.local_file_target import LocalFileImportTarget
from models.base import TargetType


def create_target(target_type: Union[TargetType, str], decrypt: Optional[Decryptor] = None) -> ImportTarget:
    """
    Create the target for a profile's target type.

    Raises:
        ConfigurationError: If the type is not supported
    """
    try:
        kind = TargetType(target_type)
    except ValueError:
        raise ConfigurationError(
            f"Unsupported target type: {target_type}",
            context={"field": "target_type"}
        )
    if kind == TargetType.DATABASE:
        return DatabaseImportTarget(decrypt=decrypt)
    return LocalFileImportTarget()
