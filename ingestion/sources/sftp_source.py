"""
SFTP source over asyncssh
"""

import fnmatch
import io
import stat
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import PurePosixPath
from typing import AsyncIterator, List, Tuple
import asyncio
import logging

import asyncssh

from core.config import settings
from core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    NetworkError,
    ResourceNotFoundError,
    SourceError,
)
from ingestion.rows import SourceFile, SourceFileInfo
from ingestion.sources.base import ImportSource, archive_file_name, select_files
from models.base import SourceType
from schemas.profile import ImportProfile

logger = logging.getLogger(__name__)


class SftpSource(ImportSource):
    """
    Read files from a remote directory over SFTP.

    source_config keys:
        host, port (22), username, password or private_key
        (+ passphrase), remote_path, known_hosts (None disables
        host key verification)
    """

    source_type = SourceType.SFTP

    @asynccontextmanager
    async def _client(self, profile: ImportProfile) -> AsyncIterator[asyncssh.SFTPClient]:
        host = self.require(profile, "host")
        port = int(self.config_value(profile, "port", default=22))
        username = self.require(profile, "username")
        password = self.secret(profile, "password")
        private_key = self.secret(profile, "private_key", "privateKey")
        passphrase = self.secret(profile, "passphrase")

        options = {
            "username": username,
            "known_hosts": self.config_value(profile, "known_hosts", default=settings.SFTP_KNOWN_HOSTS),
            "connect_timeout": settings.SFTP_CONNECT_TIMEOUT,
        }
        if private_key:
            options["client_keys"] = [asyncssh.import_private_key(private_key, passphrase)]
        if password:
            options["password"] = password

        context = {"source_type": self.source_type.value, "host": host, "port": port}

        try:
            async with asyncssh.connect(host, port=port, **options) as conn:
                async with conn.start_sftp_client() as sftp:
                    yield sftp
        except asyncssh.PermissionDenied as e:
            raise AuthenticationError(f"SFTP authentication failed for {username}@{host}", context=context, original_exception=e)
        except asyncssh.SFTPNoSuchFile as e:
            raise ResourceNotFoundError(f"Remote path not found on {host}", context=context, original_exception=e)
        except (asyncssh.DisconnectError, asyncssh.ChannelOpenError, OSError, asyncio.TimeoutError) as e:
            raise NetworkError(f"SFTP connection to {host}:{port} failed", context=context, original_exception=e)
        except asyncssh.SFTPError as e:
            raise SourceError(f"SFTP operation failed on {host}", context=context, original_exception=e)

    def _location(self, profile: ImportProfile) -> Tuple[str, str]:
        """Remote directory and file pattern"""
        remote = self.config_value(profile, "remote_path", "remotePath") or profile.source_path
        if not remote:
            raise ConfigurationError(
                "SFTP source requires source_config.remote_path or source_path",
                context={"profile_id": profile.id, "field": "remote_path"}
            )

        path = PurePosixPath(remote)
        if profile.source_file_pattern:
            return str(path), profile.source_file_pattern
        if any(c in path.name for c in "*?[") or path.suffix:
            return str(path.parent), path.name
        return str(path), "*"

    @staticmethod
    async def _scan(sftp: asyncssh.SFTPClient, directory: str, pattern: str) -> List[SourceFileInfo]:
        files = []
        for entry in await sftp.readdir(directory):
            attrs = entry.attrs
            if attrs.permissions is not None:
                is_file = stat.S_ISREG(attrs.permissions)
            else:
                is_file = attrs.type == asyncssh.FILEXFER_TYPE_REGULAR
            if not is_file or not fnmatch.fnmatch(entry.filename, pattern):
                continue
            files.append(SourceFileInfo(
                identifier=str(PurePosixPath(directory) / entry.filename),
                name=entry.filename,
                size=attrs.size,
                last_modified=datetime.utcfromtimestamp(attrs.mtime) if attrs.mtime else None,
            ))
        return files

    async def list_files(self, profile: ImportProfile) -> List[SourceFileInfo]:
        directory, pattern = self._location(profile)
        async with self._client(profile) as sftp:
            return await self._scan(sftp, directory, pattern)

    async def fetch(self, profile: ImportProfile) -> List[SourceFile]:
        directory, pattern = self._location(profile)
        result = []

        async with self._client(profile) as sftp:
            selected = select_files(await self._scan(sftp, directory, pattern), profile.source_file_selection)
            if not selected:
                logger.warning(f"No remote files matched {directory}/{pattern} for profile {profile.id}")
                return []

            for info in selected:
                async with sftp.open(info.identifier, "rb") as remote_file:
                    data = await remote_file.read()
                result.append(SourceFile(
                    identifier=info.identifier,
                    name=info.name,
                    content=io.BytesIO(data),
                    size=len(data),
                    last_modified=info.last_modified,
                ))
                logger.info(f"Fetched sftp://{info.identifier} ({len(data)} bytes)")

        return result

    async def archive(self, profile: ImportProfile, identifier: str) -> bool:
        source = PurePosixPath(identifier)
        archive_dir = profile.archive_path or str(source.parent / "archive")
        destination = str(PurePosixPath(archive_dir) / archive_file_name(source.name))

        async with self._client(profile) as sftp:
            await sftp.makedirs(archive_dir, exist_ok=True)
            await sftp.rename(identifier, destination)

        logger.info(f"Archived sftp://{identifier} to {destination}")
        return True

    async def test(self, profile: ImportProfile) -> Tuple[bool, str]:
        try:
            directory, _ = self._location(profile)
            async with self._client(profile) as sftp:
                if not await sftp.exists(directory):
                    return False, f"Connected, but remote path {directory} does not exist"
            return True, f"Connected, remote path {directory} accessible"
        except (ConfigurationError, SourceError) as e:
            return False, e.message
