"""
Local persistence -- repository, settings, sync state and OAuth2 hand-off.

Everything lives below the NoteSync home directory:

    ~/.notesync/
    ├── config.yaml           # static configuration
    ├── repository.json       # the local note repository
    ├── settings.json         # credentials, transfer codes, auto-sync mode
    ├── device.key            # Fernet key protecting stored passwords
    ├── sync_state.json       # fingerprint of the last synchronization
    └── pending_oauth.json    # login waiting for the browser redirect

Files are replaced atomically, a crash never leaves half a repository.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from pydantic import SecretStr, ValidationError

from .models import (
    NEWEST_SUPPORTED_REVISION,
    NoteRepository,
    PendingOAuth,
    SettingsModel,
    SyncState,
)

logger = logging.getLogger("notesync.storage")


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` without a torn intermediate state.

    The data goes to a temporary sibling first, is read back and
    compared, and only then renamed over the target.

    Raises:
        OSError: If writing or the verification fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_bytes(data)
    if tmp_path.read_bytes() != data:
        tmp_path.unlink(missing_ok=True)
        raise OSError(f"Verification of {tmp_path} failed")
    tmp_path.replace(path)


class RepositoryStorage:
    """Loads and saves the local note repository."""

    FILE_NAME = "repository.json"

    def __init__(self, home: Path):
        self.path = home / self.FILE_NAME
        self._cached: Optional[NoteRepository] = None

    def load_or_default(self) -> NoteRepository:
        """Return the local repository, creating an empty one if missing.

        A new repository is saved right away so its id stays stable.
        Callers get a copy and may modify it freely.

        Raises:
            UnsupportedRepositoryRevisionError: If the file is too new.
            RepositoryFormatError: If the file is corrupt.
        """
        if self._cached is None:
            if self.path.exists():
                self._cached = NoteRepository.from_bytes(self.path.read_bytes())
            else:
                repository = NoteRepository()
                logger.info("Created new empty repository %s", repository.id)
                self.try_save(repository)
                self._cached = repository
        return self._cached.model_copy(deep=True)

    def try_save(self, repository: NoteRepository) -> bool:
        """Persist ``repository``.

        Returns:
            bool: False if the revision is too new or writing failed.
        """
        if repository.revision > NEWEST_SUPPORTED_REVISION:
            logger.error(
                "Refusing to save repository of unsupported revision %d",
                repository.revision,
            )
            return False
        try:
            atomic_write_bytes(self.path, repository.to_bytes())
        except OSError as exc:
            logger.error("Failed to save repository: %s", exc)
            return False
        self._cached = repository.model_copy(deep=True)
        return True

    def clear_cache(self) -> None:
        self._cached = None


class SettingsService:
    """Loads and saves user settings.

    Storage passwords are never written in clear text: they are
    encrypted with a Fernet key that is created once per device.
    """

    FILE_NAME = "settings.json"
    KEY_FILE_NAME = "device.key"

    def __init__(self, home: Path):
        self.home = home
        self.path = home / self.FILE_NAME
        self.key_path = home / self.KEY_FILE_NAME
        self._cached: Optional[SettingsModel] = None

    def _fernet(self) -> Fernet:
        if not self.key_path.exists():
            atomic_write_bytes(self.key_path, Fernet.generate_key())
            os.chmod(self.key_path, 0o600)
        return Fernet(self.key_path.read_bytes().strip())

    def load_or_default(self) -> SettingsModel:
        """Return the settings, defaults if the file is missing or invalid."""
        if self._cached is None:
            self._cached = self._load()
        return self._cached.model_copy(deep=True)

    def _load(self) -> SettingsModel:
        if not self.path.exists():
            return SettingsModel()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            protected = None
            if isinstance(data.get("credentials"), dict):
                protected = data["credentials"].pop("protected_password", None)
            settings = SettingsModel(**data)
        except (json.JSONDecodeError, ValidationError, AttributeError, TypeError) as exc:
            logger.warning("Failed to load settings: %s", exc)
            return SettingsModel()

        if protected and settings.credentials is not None:
            try:
                password = self._fernet().decrypt(protected.encode("ascii")).decode("utf-8")
                settings.credentials.password = SecretStr(password)
            except InvalidToken:
                logger.warning("Stored password cannot be decrypted on this device")
        return settings

    def try_save(self, settings: SettingsModel) -> bool:
        """Persist ``settings``, returns False if writing failed."""
        data = settings.model_dump(mode="json")
        credentials = settings.credentials
        if credentials is not None:
            data["credentials"]["password"] = None
            if credentials.plain_password:
                data["credentials"]["protected_password"] = self._fernet().encrypt(
                    credentials.plain_password.encode("utf-8")
                ).decode("ascii")
        try:
            atomic_write_bytes(self.path, json.dumps(data, indent=2).encode("utf-8"))
        except OSError as exc:
            logger.error("Failed to save settings: %s", exc)
            return False
        self._cached = settings.model_copy(deep=True)
        return True


class StateStore:
    """Remembers the outcome of the last synchronization."""

    FILE_NAME = "sync_state.json"

    def __init__(self, home: Path):
        self.path = home / self.FILE_NAME

    def load(self) -> SyncState:
        if self.path.exists():
            try:
                return SyncState.model_validate_json(self.path.read_bytes())
            except ValidationError as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def save(self, state: SyncState) -> None:
        atomic_write_bytes(self.path, state.model_dump_json(indent=2).encode("utf-8"))


class PendingOAuthStore:
    """Keeps an OAuth2 login alive until the browser redirects back.

    The app may be closed while the user logs in, so the state and
    PKCE verifier have to survive on disk.
    """

    FILE_NAME = "pending_oauth.json"

    def __init__(self, home: Path):
        self.path = home / self.FILE_NAME

    def save(self, pending: PendingOAuth) -> None:
        data = pending.model_dump_json(
            indent=2, exclude={"credentials": {"password"}}
        )
        atomic_write_bytes(self.path, data.encode("utf-8"))
        os.chmod(self.path, 0o600)

    def pop(self) -> Optional[PendingOAuth]:
        """Load and delete the pending login, None if there is none."""
        if not self.path.exists():
            return None
        try:
            pending = PendingOAuth.model_validate_json(self.path.read_bytes())
        except ValidationError as exc:
            logger.warning("Discarding unreadable pending OAuth2 login: %s", exc)
            pending = None
        self.path.unlink(missing_ok=True)
        return pending
