"""
Local folder provider -- a USB stick, a NAS mount, a synced folder.

Useful wherever another tool already moves files around. The
folder path travels in the ``url`` field of the credentials.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .base import (
    CloudStorageClient,
    CloudStorageCredentials,
    ConnectionFailedError,
    CredentialsRequirements,
    InvalidParameterError,
)

logger = logging.getLogger("notesync.cloud.local")


class LocalFolderCloudStorageClient(CloudStorageClient):
    """Stores the repository blob in a plain directory."""

    storage_id = "local"

    @property
    def credentials_requirements(self) -> CredentialsRequirements:
        return CredentialsRequirements.URL

    @staticmethod
    def _folder(credentials: CloudStorageCredentials) -> Path:
        if not credentials.url:
            raise InvalidParameterError("The folder path is missing.")
        folder = Path(credentials.url).expanduser()
        if not folder.is_dir():
            raise ConnectionFailedError(f"Folder not available: {folder}")
        return folder

    def _upload(self, filename: str, data: bytes, credentials: CloudStorageCredentials) -> None:
        target = self._folder(credentials) / filename
        tmp_path = target.with_name(target.name + ".tmp")
        try:
            tmp_path.write_bytes(data)
            tmp_path.replace(target)
        except OSError as exc:
            raise ConnectionFailedError(f"Could not write {target}: {exc}") from exc
        logger.info("Copied %s to %s", filename, target.parent)

    def _download(self, filename: str, credentials: CloudStorageCredentials) -> bytes:
        source = self._folder(credentials) / filename
        try:
            return source.read_bytes()
        except OSError as exc:
            raise ConnectionFailedError(f"Could not read {source}: {exc}") from exc

    def _delete(self, filename: str, credentials: CloudStorageCredentials) -> None:
        (self._folder(credentials) / filename).unlink(missing_ok=True)

    async def upload_file(self, filename, data, credentials):
        await asyncio.to_thread(self._upload, filename, data, credentials)

    async def download_file(self, filename, credentials):
        return await asyncio.to_thread(self._download, filename, credentials)

    async def exists_file(self, filename, credentials):
        return (self._folder(credentials) / filename).is_file()

    async def delete_file(self, filename, credentials):
        await asyncio.to_thread(self._delete, filename, credentials)

    async def list_file_names(self, credentials):
        folder = self._folder(credentials)
        return sorted(
            p.name for p in folder.iterdir()
            if p.is_file() and not p.name.endswith(".tmp")
        )
