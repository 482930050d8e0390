"""
Abstract base class for import sources
"""

from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import PurePosixPath
from typing import Any, Callable, List, Optional, Tuple
import logging

from core.exceptions import ConfigurationError
from ingestion.rows import SourceFile, SourceFileInfo
from models.base import FileSelection, SourceType
from schemas.profile import ImportProfile

logger = logging.getLogger(__name__)

Decryptor = Callable[[str], str]


def _identity(value: str) -> str:
    return value


def select_files(files: List[SourceFileInfo], selection: FileSelection) -> List[SourceFileInfo]:
    """
    Apply the profile's selection mode to matching files.

    Latest/Oldest pick one file by modification time; All returns every
    file oldest first so they are imported in arrival order.
    """
    if not files:
        return []

    ordered = sorted(files, key=lambda f: (f.last_modified or datetime.min, f.name))

    if selection == FileSelection.LATEST:
        return [ordered[-1]]
    if selection == FileSelection.OLDEST:
        return [ordered[0]]
    return ordered


def archive_file_name(name: str, now: Optional[datetime] = None) -> str:
    """name.ext becomes name_YYYYmmddHHMMSS.ext"""
    stamp = (now or datetime.utcnow()).strftime("%Y%m%d%H%M%S")
    path = PurePosixPath(name)
    return f"{path.stem}_{stamp}{path.suffix}"


class ImportSource(ABC):
    """
    Fetch/list/archive/test contract shared by Local, SFTP and HTTP sources.

    Credentials stored on the profile are passed through the decrypt
    collaborator before use.
    """

    source_type: SourceType

    def __init__(self, decrypt: Optional[Decryptor] = None):
        self.decrypt = decrypt or _identity

    @abstractmethod
    async def fetch(self, profile: ImportProfile) -> List[SourceFile]:
        """
        Fetch the files selected by the profile.

        Returns:
            Source files whose content streams the caller must close

        Raises:
            ConfigurationError: If no location is configured
            SourceError: On fetch/connect failures
        """
        pass

    @abstractmethod
    async def list_files(self, profile: ImportProfile) -> List[SourceFileInfo]:
        """List existing files without consuming them"""
        pass

    @abstractmethod
    async def archive(self, profile: ImportProfile, identifier: str) -> bool:
        """Move a consumed file out of the active set; False if unsupported"""
        pass

    @abstractmethod
    async def test(self, profile: ImportProfile) -> Tuple[bool, str]:
        """Connectivity check returning (ok, message)"""
        pass

    def config_value(self, profile: ImportProfile, *keys: str, default: Any = None) -> Any:
        """First non-empty source_config value among the given keys"""
        for key in keys:
            value = profile.source_config.get(key)
            if value not in (None, ""):
                return value
        return default

    def secret(self, profile: ImportProfile, *keys: str) -> Optional[str]:
        value = self.config_value(profile, *keys)
        if value is None:
            return None
        return self.decrypt(str(value))

    def require(self, profile: ImportProfile, *keys: str) -> Any:
        value = self.config_value(profile, *keys)
        if value is None:
            raise ConfigurationError(
                f"Source setting '{keys[0]}' is required",
                context={"profile_id": profile.id, "field": keys[0], "source_type": self.source_type.value}
            )
        return value
