"""
Local disk source
"""

import asyncio
import fnmatch
import io
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Tuple
import logging

from core.exceptions import ConfigurationError, SourceError
from ingestion.rows import SourceFile, SourceFileInfo
from ingestion.sources.base import ImportSource, archive_file_name, select_files
from models.base import FileSelection, SourceType
from schemas.profile import ImportProfile

logger = logging.getLogger(__name__)


class LocalFileSource(ImportSource):
    """
    Read files from a local directory.

    Supports:
    - Exact path or glob pattern selection (Latest / Oldest / All)
    - Archive by timestamp-suffixed move
    - Blocking file I/O runs in a worker thread
    """

    source_type = SourceType.LOCAL

    def _resolve(self, profile: ImportProfile) -> Tuple[Path, str]:
        """Base directory and pattern for the profile"""
        base = None
        pattern = profile.source_file_pattern

        if profile.source_path:
            path = Path(profile.source_path)
            if path.is_dir():
                base = path
            else:
                # A file path (or a glob in the last segment) names its own pattern
                base = path.parent
                if not pattern or profile.source_file_selection == FileSelection.EXACT:
                    pattern = path.name

        if base is None:
            configured = self.config_value(profile, "path", "basePath")
            if configured:
                base = Path(configured)

        if base is None:
            raise ConfigurationError(
                "Local source requires source_path or source_config.path",
                context={"profile_id": profile.id, "field": "source_path"}
            )

        if not base.is_dir():
            raise ConfigurationError(
                f"Source directory not found: {base}",
                context={"profile_id": profile.id, "field": "source_path", "path": str(base)}
            )

        return base, pattern or "*"

    @staticmethod
    def _scan(base: Path, pattern: str) -> List[SourceFileInfo]:
        files = []
        for entry in base.iterdir():
            if entry.is_file() and fnmatch.fnmatch(entry.name, pattern):
                stat = entry.stat()
                files.append(SourceFileInfo(
                    identifier=str(entry),
                    name=entry.name,
                    size=stat.st_size,
                    last_modified=datetime.utcfromtimestamp(stat.st_mtime),
                ))
        return files

    async def list_files(self, profile: ImportProfile) -> List[SourceFileInfo]:
        base, pattern = self._resolve(profile)
        return await asyncio.to_thread(self._scan, base, pattern)

    async def fetch(self, profile: ImportProfile) -> List[SourceFile]:
        files = await self.list_files(profile)
        selected = select_files(files, profile.source_file_selection)

        if not selected:
            logger.warning(f"No files matched for profile {profile.id}")
            return []

        result = []
        for info in selected:
            try:
                data = await asyncio.to_thread(Path(info.identifier).read_bytes)
            except OSError as e:
                for fetched in result:
                    fetched.close()
                raise SourceError(
                    f"Failed to read {info.identifier}",
                    context={"source_type": self.source_type.value, "identifier": info.identifier},
                    original_exception=e
                )
            result.append(SourceFile(
                identifier=info.identifier,
                name=info.name,
                content=io.BytesIO(data),
                size=len(data),
                last_modified=info.last_modified,
            ))
            logger.info(f"Fetched {info.identifier} ({len(data)} bytes)")

        return result

    async def archive(self, profile: ImportProfile, identifier: str) -> bool:
        source = Path(identifier)
        if not source.is_file():
            logger.warning(f"Cannot archive missing file {identifier}")
            return False

        archive_dir = Path(profile.archive_path) if profile.archive_path else source.parent / "archive"
        destination = archive_dir / archive_file_name(source.name)

        def _move():
            archive_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(destination))

        try:
            await asyncio.to_thread(_move)
        except OSError as e:
            raise SourceError(
                f"Failed to archive {identifier}",
                context={"source_type": self.source_type.value, "identifier": identifier, "archive": str(destination)},
                original_exception=e
            )

        logger.info(f"Archived {identifier} to {destination}")
        return True

    async def test(self, profile: ImportProfile) -> Tuple[bool, str]:
        try:
            files = await self.list_files(profile)
        except ConfigurationError as e:
            return False, e.message
        return True, f"Directory accessible, {len(files)} matching file(s)"
