"""Shared test fixtures for notesync."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from notesync.cloud import CloudStorageClientFactory
from notesync.cloud.base import (
    CloudStorageClient,
    CloudStorageCredentials,
    ConnectionFailedError,
    CredentialsRequirements,
)
from notesync.cloud.oauth2 import OAuth2CloudStorageClient, OAuth2Config, OAuth2Flow
from notesync.sync.engine import SyncEngine
from notesync.sync.ui import MergeChoice, SyncUi, ToastSeverity

TRANSFER_CODE = "ABCDEFGHJKMNPQRS"
OTHER_TRANSFER_CODE = "abcdefghijkmnpqr"


class _MemoryFiles:
    """Shared in-memory file operations for the fake providers."""

    def __init__(self):
        self.files: dict[str, bytes] = {}
        self.uploads = 0
        self.downloads = 0
        self.fail_with: Optional[Exception] = None

    def _check(self):
        if self.fail_with is not None:
            raise self.fail_with

    async def upload_file(self, filename, data, credentials):
        self._check()
        self.files[filename] = data
        self.uploads += 1

    async def download_file(self, filename, credentials):
        self._check()
        self.downloads += 1
        if filename not in self.files:
            raise ConnectionFailedError(f"{filename} not found")
        return self.files[filename]

    async def exists_file(self, filename, credentials):
        self._check()
        return filename in self.files

    async def delete_file(self, filename, credentials):
        self.files.pop(filename, None)

    async def list_file_names(self, credentials):
        return sorted(self.files)


class MemoryCloudStorageClient(_MemoryFiles, CloudStorageClient):
    """Cloud storage that lives in a dict."""

    storage_id = "memory"

    @property
    def credentials_requirements(self):
        return CredentialsRequirements.URL


class MemoryOAuthCloudStorageClient(_MemoryFiles, OAuth2CloudStorageClient):
    """In-memory storage behind an OAuth2 token-flow login."""

    storage_id = "oauth"

    def __init__(self):
        _MemoryFiles.__init__(self)
        OAuth2CloudStorageClient.__init__(
            self,
            OAuth2Config(
                authorize_service_endpoint="https://auth.example.com/authorize",
                token_service_endpoint="https://auth.example.com/token",
                client_id="notesync-test",
                redirect_url="http://localhost/callback",
                flow=OAuth2Flow.TOKEN,
            ),
        )

    @property
    def credentials_requirements(self):
        return CredentialsRequirements.TOKEN


class FakeUi(SyncUi):
    """Scripted answers, records everything it is asked to show."""

    def __init__(
        self,
        confirm: bool = True,
        storage_id: Optional[str] = "memory",
        credentials: Optional[CloudStorageCredentials] = None,
        transfer_codes: Optional[list[Optional[str]]] = None,
        merge_choice: Optional[MergeChoice] = None,
    ):
        self.confirm = confirm
        self.storage_id = storage_id
        self.credentials = credentials or CloudStorageCredentials(
            cloud_storage_id="memory", url="memory://notes"
        )
        self.transfer_codes = list(transfer_codes or [])
        self.merge_choice = merge_choice
        self.calls: list[str] = []
        self.toasts: list[tuple[str, ToastSeverity]] = []
        self.messages: list[str] = []
        self.oauth_urls: list[str] = []

    async def confirm_first_time(self):
        self.calls.append("confirm_first_time")
        return self.confirm

    async def choose_cloud_storage(self, storage_ids):
        self.calls.append("choose_cloud_storage")
        return self.storage_id

    async def enter_credentials(self, storage_id, requirements, current):
        self.calls.append("enter_credentials")
        return self.credentials

    async def open_oauth_url(self, url):
        self.calls.append("open_oauth_url")
        self.oauth_urls.append(url)

    async def enter_transfer_code(self):
        self.calls.append("enter_transfer_code")
        return self.transfer_codes.pop(0) if self.transfer_codes else None

    async def choose_merge_strategy(self):
        self.calls.append("choose_merge_strategy")
        return self.merge_choice

    def show_toast(self, text, severity=ToastSeverity.INFO):
        self.toasts.append((text, severity))

    async def show_message(self, text):
        self.messages.append(text)


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary NoteSync home directory."""
    notesync_home = tmp_path / ".notesync"
    notesync_home.mkdir()
    return notesync_home


@pytest.fixture
def cloud() -> MemoryCloudStorageClient:
    return MemoryCloudStorageClient()


@pytest.fixture
def oauth_cloud() -> MemoryOAuthCloudStorageClient:
    return MemoryOAuthCloudStorageClient()


@pytest.fixture
def ui() -> FakeUi:
    return FakeUi()


@pytest.fixture
def factory(cloud, oauth_cloud) -> CloudStorageClientFactory:
    return CloudStorageClientFactory(
        {"memory": lambda: cloud, "oauth": lambda: oauth_cloud}
    )


@pytest.fixture
def engine(home, ui, factory) -> SyncEngine:
    """Engine wired to the in-memory storage and the scripted UI."""
    return SyncEngine(home, ui=ui, cloud_factory=factory)


@pytest.fixture
def make_engine(home, factory):
    """Build an engine whose scripted UI takes the given answers."""

    def _make(**ui_answers) -> SyncEngine:
        return SyncEngine(home, ui=FakeUi(**ui_answers), cloud_factory=factory)

    return _make


@pytest.fixture
def configured_engine(engine) -> SyncEngine:
    """Engine with stored memory-storage credentials and a transfer code."""
    settings = engine.settings_service.load_or_default()
    settings.credentials = CloudStorageCredentials(
        cloud_storage_id="memory", url="memory://notes"
    )
    settings.transfer_code = TRANSFER_CODE
    assert engine.settings_service.try_save(settings)
    return engine
