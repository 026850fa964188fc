"""Tests for local persistence: repository, settings, state and OAuth hand-off."""

from __future__ import annotations

import json
import os
import stat
from unittest.mock import patch

import pytest
from pydantic import SecretStr

from notesync.cloud.base import CloudStorageCredentials, CloudStorageToken
from notesync.models import (
    NEWEST_SUPPORTED_REVISION,
    AutoSyncMode,
    Note,
    NoteRepository,
    PendingOAuth,
    RepositoryFormatError,
    SyncState,
    UnsupportedRepositoryRevisionError,
)
from notesync.storage import (
    PendingOAuthStore,
    RepositoryStorage,
    SettingsService,
    StateStore,
    atomic_write_bytes,
)


class TestAtomicWrite:
    """Replacing files in one step."""

    def test_write_and_replace(self, tmp_path):
        target = tmp_path / "sub" / "file.bin"
        atomic_write_bytes(target, b"first")
        atomic_write_bytes(target, b"second")
        assert target.read_bytes() == b"second"
        assert not (tmp_path / "sub" / "file.bin.tmp").exists()


class TestRepositoryStorage:
    """The local note repository."""

    def test_default_is_created_and_stable(self, home):
        storage = RepositoryStorage(home)
        first = storage.load_or_default()
        assert storage.path.exists()
        assert RepositoryStorage(home).load_or_default().id == first.id

    def test_save_and_reload(self, home):
        storage = RepositoryStorage(home)
        repository = storage.load_or_default()
        repository.notes.append(Note(html_content="<p>kept</p>"))
        assert storage.try_save(repository)

        reloaded = RepositoryStorage(home).load_or_default()
        assert [n.html_content for n in reloaded.notes] == ["<p>kept</p>"]

    def test_returns_copies(self, home):
        storage = RepositoryStorage(home)
        repository = storage.load_or_default()
        repository.notes.append(Note())
        assert storage.load_or_default().notes == []

    def test_refuses_too_new_revision(self, home):
        storage = RepositoryStorage(home)
        repository = NoteRepository(revision=NEWEST_SUPPORTED_REVISION + 1)
        assert not storage.try_save(repository)
        assert not storage.path.exists()

    def test_too_new_file(self, home):
        (home / RepositoryStorage.FILE_NAME).write_text(
            json.dumps({"revision": NEWEST_SUPPORTED_REVISION + 1})
        )
        with pytest.raises(UnsupportedRepositoryRevisionError):
            RepositoryStorage(home).load_or_default()

    def test_corrupt_file(self, home):
        (home / RepositoryStorage.FILE_NAME).write_text("{broken")
        with pytest.raises(RepositoryFormatError):
            RepositoryStorage(home).load_or_default()

    def test_write_failure(self, home):
        storage = RepositoryStorage(home)
        with patch("notesync.storage.atomic_write_bytes", side_effect=OSError("disk full")):
            assert not storage.try_save(NoteRepository())

    def test_clear_cache_rereads(self, home):
        storage = RepositoryStorage(home)
        storage.load_or_default()
        other = NoteRepository()
        RepositoryStorage(home).try_save(other)
        assert storage.load_or_default().id != other.id
        storage.clear_cache()
        assert storage.load_or_default().id == other.id


class TestSettingsService:
    """User settings with protected passwords."""

    def _credentials(self) -> CloudStorageCredentials:
        return CloudStorageCredentials(
            cloud_storage_id="webdav",
            url="https://dav.example.com/notes",
            username="alice",
            password=SecretStr("s3cret-pass"),
        )

    def test_defaults(self, home):
        settings = SettingsService(home).load_or_default()
        assert settings.credentials is None
        assert settings.auto_sync_mode == AutoSyncMode.COST_FREE_INTERNET_ONLY

    def test_password_encrypted_at_rest(self, home):
        service = SettingsService(home)
        settings = service.load_or_default()
        settings.credentials = self._credentials()
        assert service.try_save(settings)

        raw = service.path.read_text()
        assert "s3cret-pass" not in raw
        assert json.loads(raw)["credentials"]["password"] is None
        assert json.loads(raw)["credentials"]["protected_password"]

    def test_round_trip(self, home):
        service = SettingsService(home)
        settings = service.load_or_default()
        settings.credentials = self._credentials()
        settings.credentials.token = CloudStorageToken(access_token="a", refresh_token="r")
        settings.transfer_code = "ABCDEFGHJKMNPQRS"
        settings.transfer_code_history = ["abcdefghijkmnpqr"]
        settings.auto_sync_mode = AutoSyncMode.ALWAYS
        service.try_save(settings)

        loaded = SettingsService(home).load_or_default()
        assert loaded.credentials.plain_password == "s3cret-pass"
        assert loaded.credentials.token.refresh_token == "r"
        assert loaded.transfer_code == "ABCDEFGHJKMNPQRS"
        assert loaded.transfer_code_history == ["abcdefghijkmnpqr"]
        assert loaded.auto_sync_mode == AutoSyncMode.ALWAYS

    def test_device_key_permissions(self, home):
        service = SettingsService(home)
        settings = service.load_or_default()
        settings.credentials = self._credentials()
        service.try_save(settings)
        mode = stat.S_IMODE(os.stat(service.key_path).st_mode)
        assert mode == 0o600

    def test_foreign_device_key(self, home):
        service = SettingsService(home)
        settings = service.load_or_default()
        settings.credentials = self._credentials()
        service.try_save(settings)
        service.key_path.unlink()

        loaded = SettingsService(home).load_or_default()
        assert loaded.credentials.username == "alice"
        assert loaded.credentials.password is None

    def test_corrupt_file(self, home):
        (home / SettingsService.FILE_NAME).write_text("not json")
        assert SettingsService(home).load_or_default().credentials is None

    def test_returns_copies(self, home):
        service = SettingsService(home)
        service.load_or_default().transfer_code = "changed"
        assert service.load_or_default().transfer_code is None


class TestStateStore:
    """Outcome of the last synchronization."""

    def test_empty(self, home):
        assert StateStore(home).load() == SyncState()

    def test_round_trip(self, home):
        store = StateStore(home)
        store.save(SyncState(last_fingerprint="abc", last_error="offline"))
        loaded = StateStore(home).load()
        assert loaded.last_fingerprint == "abc"
        assert loaded.last_error == "offline"

    def test_corrupt(self, home):
        (home / StateStore.FILE_NAME).write_text("[]")
        assert StateStore(home).load() == SyncState()


class TestPendingOAuthStore:
    """OAuth2 logins waiting for the redirect."""

    def test_pop(self, home):
        store = PendingOAuthStore(home)
        store.save(PendingOAuth(
            credentials=CloudStorageCredentials(cloud_storage_id="dropbox"),
            state="state123",
            code_verifier="verifier",
        ))
        assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o600

        pending = store.pop()
        assert pending.state == "state123"
        assert pending.code_verifier == "verifier"
        assert pending.credentials.cloud_storage_id == "dropbox"
        assert store.pop() is None

    def test_password_not_stored(self, home):
        store = PendingOAuthStore(home)
        store.save(PendingOAuth(
            credentials=CloudStorageCredentials(
                cloud_storage_id="webdav", password=SecretStr("hidden")
            ),
            state="s",
            code_verifier="v",
        ))
        assert "password" not in store.path.read_text()

    def test_unreadable(self, home):
        store = PendingOAuthStore(home)
        store.path.write_text("{}")
        assert store.pop() is None
        assert not store.path.exists()
