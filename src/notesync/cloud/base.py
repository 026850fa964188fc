"""
Cloud storage primitives -- credentials, tokens, errors and the client contract.

A cloud storage is treated as a dumb byte bucket. Every provider
implements the same five file operations; everything smarter
(merging, encryption, conflict handling) happens on the client.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Flag, auto
from typing import Optional

from pydantic import BaseModel, SecretStr

logger = logging.getLogger("notesync.cloud.base")


class CloudStorageError(Exception):
    """Base class of all errors raised by cloud storage clients."""


class ConnectionFailedError(CloudStorageError):
    """The storage could not be reached or answered unexpectedly."""


class AccessDeniedError(CloudStorageError):
    """The storage rejected the credentials."""


class InvalidParameterError(CloudStorageError):
    """A required credential or request parameter is missing or malformed."""


class RefreshTokenExpiredError(CloudStorageError):
    """The OAuth2 refresh token was revoked or expired, a new login is required."""


class CredentialsRequirements(Flag):
    """Which credential fields a provider needs the user to enter."""

    NONE = 0
    URL = auto()
    USERNAME = auto()
    PASSWORD = auto()
    SECURE_FLAG = auto()
    ACCEPT_UNSAFE_CERTIFICATE = auto()
    TOKEN = auto()


class CloudStorageToken(BaseModel):
    """OAuth2 token set as returned by a token endpoint."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expiry_date: Optional[datetime] = None

    def set_expiry_from_seconds(
        self,
        seconds: Optional[int],
        now: Optional[datetime] = None,
    ) -> None:
        """Set the expiry date from an ``expires_in`` value.

        A tolerance of ten percent, at most one minute, is subtracted so
        the token is refreshed a little before the server drops it.

        Args:
            seconds: Lifetime in seconds, or None if the server sent none.
            now: Reference time, defaults to the current UTC time.
        """
        if seconds is None:
            self.expiry_date = None
            return
        now = now or datetime.now(timezone.utc)
        tolerance = min(60, seconds // 10)
        self.expiry_date = now + timedelta(seconds=seconds - tolerance)

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        """Whether the access token should be refreshed before use.

        Only tokens that come with a refresh token can be refreshed. They
        need a refresh when they are expired or when their lifetime is
        unknown.
        """
        if not self.refresh_token:
            return False
        if self.expiry_date is None:
            return True
        now = now or datetime.now(timezone.utc)
        return self.expiry_date <= now


class CloudStorageCredentials(BaseModel):
    """Everything needed to talk to one cloud storage account."""

    cloud_storage_id: str
    url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    secure: bool = True
    accept_unsafe_certificate: bool = False
    token: Optional[CloudStorageToken] = None

    @property
    def plain_password(self) -> Optional[str]:
        """The password as plain text, for the HTTP layer only."""
        if self.password is None:
            return None
        return self.password.get_secret_value()

    def raise_if_invalid(self, requirements: CredentialsRequirements) -> None:
        """Check that every required field is filled in.

        Args:
            requirements: The requirements of the provider.

        Raises:
            InvalidParameterError: If a required field is empty.
        """
        if CredentialsRequirements.URL in requirements and not self.url:
            raise InvalidParameterError("The storage URL is missing.")
        if CredentialsRequirements.USERNAME in requirements and not self.username:
            raise InvalidParameterError("The user name is missing.")
        if CredentialsRequirements.PASSWORD in requirements and not self.plain_password:
            raise InvalidParameterError("The password is missing.")
        if CredentialsRequirements.TOKEN in requirements and (
            self.token is None or not self.token.access_token
        ):
            raise InvalidParameterError("The access token is missing.")


def raise_for_cloud_status(response, context: str) -> None:
    """Translate an HTTP status into the cloud error taxonomy.

    Args:
        response: A ``requests.Response``.
        context: Short description of the request, used in messages.

    Raises:
        AccessDeniedError: On 401 and 403.
        ConnectionFailedError: On any other non-success status.
    """
    status = response.status_code
    if status in (401, 403):
        raise AccessDeniedError(f"{context}: access denied (HTTP {status})")
    if status >= 400:
        raise ConnectionFailedError(f"{context}: HTTP {status}")


class CloudStorageClient(ABC):
    """Abstract cloud storage provider.

    Every operation receives the credentials explicitly, a client
    instance holds no account state and can be shared.
    """

    storage_id: str = ""

    @property
    @abstractmethod
    def credentials_requirements(self) -> CredentialsRequirements:
        """The credential fields this provider needs."""

    @abstractmethod
    async def upload_file(
        self, filename: str, data: bytes, credentials: CloudStorageCredentials
    ) -> None:
        """Store ``data`` under ``filename``, replacing an existing file."""

    @abstractmethod
    async def download_file(
        self, filename: str, credentials: CloudStorageCredentials
    ) -> bytes:
        """Return the content of ``filename``."""

    @abstractmethod
    async def exists_file(
        self, filename: str, credentials: CloudStorageCredentials
    ) -> bool:
        """Whether ``filename`` exists on the storage."""

    @abstractmethod
    async def delete_file(
        self, filename: str, credentials: CloudStorageCredentials
    ) -> None:
        """Remove ``filename`` from the storage."""

    @abstractmethod
    async def list_file_names(
        self, credentials: CloudStorageCredentials
    ) -> list[str]:
        """Names of the files in the storage folder."""
