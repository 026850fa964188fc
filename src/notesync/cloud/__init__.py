"""
Cloud storage clients and the provider registry.

The factory is the only place that knows which providers exist.
A provider that is not configured simply does not show up in
the storage choice.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .base import (
    AccessDeniedError,
    CloudStorageClient,
    CloudStorageCredentials,
    CloudStorageError,
    CloudStorageToken,
    ConnectionFailedError,
    CredentialsRequirements,
    InvalidParameterError,
    RefreshTokenExpiredError,
)
from .dropbox import DropboxCloudStorageClient
from .local import LocalFolderCloudStorageClient
from .oauth2 import OAuth2CloudStorageClient
from .webdav import WebdavCloudStorageClient

logger = logging.getLogger("notesync.cloud")

ClientBuilder = Callable[[], CloudStorageClient]


class CloudStorageClientFactory:
    """Creates and caches one client per provider id."""

    def __init__(
        self,
        builders: Optional[dict[str, ClientBuilder]] = None,
        *,
        oauth_redirect_url: Optional[str] = None,
        dropbox_client_id: Optional[str] = None,
    ):
        self._builders: dict[str, ClientBuilder] = {
            WebdavCloudStorageClient.storage_id: WebdavCloudStorageClient,
            LocalFolderCloudStorageClient.storage_id: LocalFolderCloudStorageClient,
        }
        if dropbox_client_id and oauth_redirect_url:
            self._builders[DropboxCloudStorageClient.storage_id] = (
                lambda: DropboxCloudStorageClient(dropbox_client_id, oauth_redirect_url)
            )
        if builders is not None:
            self._builders.update(builders)
        self._clients: dict[str, CloudStorageClient] = {}

    def __contains__(self, storage_id: str) -> bool:
        return storage_id in self._builders

    def storage_ids(self) -> list[str]:
        """Provider ids in registration order."""
        return list(self._builders)

    def get(self, storage_id: str) -> CloudStorageClient:
        """Return the client for ``storage_id``.

        Raises:
            InvalidParameterError: If no such provider is registered.
        """
        if storage_id not in self._clients:
            builder = self._builders.get(storage_id)
            if builder is None:
                raise InvalidParameterError(f"Unknown cloud storage: {storage_id}")
            self._clients[storage_id] = builder()
            logger.debug("Created cloud storage client %s", storage_id)
        return self._clients[storage_id]


__all__ = [
    "AccessDeniedError",
    "CloudStorageClient",
    "CloudStorageClientFactory",
    "CloudStorageCredentials",
    "CloudStorageError",
    "CloudStorageToken",
    "ConnectionFailedError",
    "CredentialsRequirements",
    "DropboxCloudStorageClient",
    "InvalidParameterError",
    "LocalFolderCloudStorageClient",
    "OAuth2CloudStorageClient",
    "RefreshTokenExpiredError",
    "WebdavCloudStorageClient",
]
