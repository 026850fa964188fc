"""Tests for the sync engine entry points, silent runs and configuration."""

from __future__ import annotations

import logging
from unittest.mock import patch

import pytest
import yaml

from notesync.cloud.base import CloudStorageCredentials, ConnectionFailedError
from notesync.models import AutoSyncMode, Note, RepositoryFormatError
from notesync.sync.engine import (
    SilentSyncReport,
    SyncEngine,
    synchronize_at_shutdown,
    synchronize_at_startup,
)
from notesync.sync.vault import encrypt_repository

CODE = "ABCDEFGHJKMNPQRS"


def set_auto_sync_mode(engine: SyncEngine, mode: AutoSyncMode) -> None:
    settings = engine.settings_service.load_or_default()
    settings.auto_sync_mode = mode
    assert engine.settings_service.try_save(settings)


def upload_local(engine: SyncEngine, cloud) -> None:
    local = engine.repository_storage.load_or_default()
    cloud.files[engine.config.repository_file_name] = encrypt_repository(local, CODE)


class TestConfig:
    """Loading config.yaml."""

    def test_defaults(self, home, factory):
        engine = SyncEngine(home, cloud_factory=factory)
        assert engine.config.repository_file_name == "notesync_repository.notesync"
        assert engine.config.encryption_algorithm == "chacha20_poly1305"
        assert engine.config.compression is True

    def test_load_yaml(self, home, factory):
        (home / "config.yaml").write_text(yaml.dump({
            "repository_file_name": "notes.bin",
            "encryption_algorithm": "aes256_gcm",
            "maintained_at_horizon_days": 30,
        }))
        engine = SyncEngine(home, cloud_factory=factory)
        assert engine.config.repository_file_name == "notes.bin"
        assert engine.config.encryption_algorithm == "aes256_gcm"
        assert engine.config.maintained_at_horizon_days == 30

    def test_invalid_yaml_falls_back(self, home, factory, caplog):
        (home / "config.yaml").write_text("repository_file_name: [unclosed")
        with caplog.at_level(logging.WARNING, logger="notesync.sync.engine"):
            engine = SyncEngine(home, cloud_factory=factory)
        assert engine.config.repository_file_name == "notesync_repository.notesync"
        assert "Failed to load config" in caplog.text

    def test_invalid_value_falls_back(self, home, factory):
        (home / "config.yaml").write_text(yaml.dump({"compression": {"nested": True}}))
        engine = SyncEngine(home, cloud_factory=factory)
        assert engine.config.compression is True

    def test_save_config(self, home, factory):
        engine = SyncEngine(home, cloud_factory=factory)
        engine.config.repository_file_name = "saved.bin"
        engine.save_config()
        assert SyncEngine(home, cloud_factory=factory).config.repository_file_name == "saved.bin"

    def test_home_created(self, tmp_path, factory):
        home = tmp_path / "new" / "home"
        SyncEngine(home, cloud_factory=factory)
        assert home.is_dir()

    def test_default_factory(self, home):
        engine = SyncEngine(home)
        assert "webdav" in engine.cloud_factory
        assert "local" in engine.cloud_factory
        assert "dropbox" not in engine.cloud_factory

    def test_dropbox_needs_client_id(self, home):
        (home / "config.yaml").write_text(yaml.dump({"dropbox_client_id": "app-key"}))
        assert "dropbox" in SyncEngine(home).cloud_factory

    @pytest.mark.asyncio
    async def test_configured_algorithm_is_used(self, home, factory, cloud):
        (home / "config.yaml").write_text(yaml.dump({"encryption_algorithm": "aes256_gcm"}))
        engine = SyncEngine(home, cloud_factory=factory)
        settings = engine.settings_service.load_or_default()
        settings.credentials = CloudStorageCredentials(cloud_storage_id="memory", url="m")
        settings.transfer_code = CODE
        engine.settings_service.try_save(settings)

        await engine.synchronize()

        assert cloud.files[engine.config.repository_file_name].startswith(
            b"NoteSync v=2$aes256_gcm$"
        )


class TestAutoSyncMode:
    """Whether background runs may start."""

    @pytest.mark.asyncio
    async def test_never(self, configured_engine, cloud):
        set_auto_sync_mode(configured_engine, AutoSyncMode.NEVER)
        report = await configured_engine.synchronize_at_startup()
        assert report.skipped
        assert not report.succeeded
        assert cloud.downloads == 0

    @pytest.mark.asyncio
    async def test_cost_free_on_metered_connection(self, home, ui, factory, cloud):
        engine = SyncEngine(
            home, ui=ui, cloud_factory=factory, is_metered_connection=lambda: True
        )
        report = await engine.synchronize_at_startup()
        assert report.skipped

    @pytest.mark.asyncio
    async def test_always_on_metered_connection(self, home, ui, factory, cloud):
        engine = SyncEngine(
            home, ui=ui, cloud_factory=factory, is_metered_connection=lambda: True
        )
        set_auto_sync_mode(engine, AutoSyncMode.ALWAYS)
        report = await engine.synchronize_at_startup()
        assert not report.skipped


class TestSilentSynchronization:
    """Background runs never ask and never raise."""

    @pytest.mark.asyncio
    async def test_success(self, configured_engine, cloud, ui):
        upload_local(configured_engine, cloud)

        report = await configured_engine.synchronize_at_startup()

        assert report.succeeded
        assert not report.changed
        assert report.error is None
        assert ui.calls == []

    @pytest.mark.asyncio
    async def test_pulls_remote_changes(self, configured_engine, cloud):
        local = configured_engine.repository_storage.load_or_default()
        remote = local.model_copy(deep=True)
        remote.notes.append(Note(html_content="remote"))
        cloud.files[configured_engine.config.repository_file_name] = encrypt_repository(
            remote, CODE
        )

        report = await configured_engine.synchronize_at_startup()

        assert report.succeeded
        assert report.changed
        assert len(configured_engine.repository_storage.load_or_default().notes) == 1

    @pytest.mark.asyncio
    async def test_not_configured_needs_attention(self, engine, ui):
        report = await engine.synchronize_at_startup()

        assert report.needs_attention
        assert not report.succeeded
        assert report.error is None
        assert ui.calls == []

    @pytest.mark.asyncio
    async def test_missing_code_needs_attention(self, engine, cloud, ui):
        settings = engine.settings_service.load_or_default()
        settings.credentials = CloudStorageCredentials(cloud_storage_id="memory", url="m")
        engine.settings_service.try_save(settings)
        upload_local(engine, cloud)

        report = await engine.synchronize_at_startup()

        assert report.needs_attention
        assert ui.calls == []

    @pytest.mark.asyncio
    async def test_error_is_reported_not_raised(self, configured_engine, cloud, ui):
        cloud.fail_with = ConnectionFailedError("offline")

        report = await configured_engine.synchronize_at_startup()

        assert not report.succeeded
        assert "could not be reached" in report.error
        assert ui.toasts == []
        assert configured_engine.state_store.load().last_error == report.error

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self, configured_engine):
        with patch.object(
            configured_engine.repository_storage,
            "load_or_default",
            side_effect=RepositoryFormatError("broken"),
        ):
            report = await configured_engine.synchronize_at_startup()
        assert report.error == "The repository is damaged and cannot be read."

    @pytest.mark.asyncio
    async def test_shutdown_skips_unchanged(self, configured_engine, cloud):
        upload_local(configured_engine, cloud)
        assert (await configured_engine.synchronize_at_startup()).succeeded

        report = await configured_engine.synchronize_at_shutdown()

        assert report.skipped
        assert cloud.uploads == 0

    @pytest.mark.asyncio
    async def test_shutdown_pushes_local_changes(self, configured_engine, cloud):
        upload_local(configured_engine, cloud)
        assert (await configured_engine.synchronize_at_startup()).succeeded
        repository = configured_engine.repository_storage.load_or_default()
        repository.notes.append(Note(html_content="before closing"))
        configured_engine.repository_storage.try_save(repository)

        report = await configured_engine.synchronize_at_shutdown()

        assert report.succeeded
        assert cloud.uploads == 1

    def test_report_changed(self):
        assert SilentSyncReport(fingerprint_before="a", fingerprint_after="b").changed
        assert not SilentSyncReport(fingerprint_before="a", fingerprint_after="a").changed


class TestModuleEntryPoints:
    """Startup and shutdown helpers that build their own engine."""

    @pytest.mark.asyncio
    async def test_startup(self, home, factory):
        report = await synchronize_at_startup(home, cloud_factory=factory)
        assert report.needs_attention

    @pytest.mark.asyncio
    async def test_shutdown(self, home, factory):
        report = await synchronize_at_shutdown(home, cloud_factory=factory)
        assert report.needs_attention


class TestStatus:
    """Status summary."""

    def test_unconfigured(self, engine):
        status = engine.status()
        assert status["cloud_storage"] is None
        assert status["transfer_code"] is None
        assert status["note_count"] == 0
        assert status["in_sync"] is False
        assert status["oauth_pending"] is False
        assert status["auto_sync_mode"] == "cost_free_internet_only"

    @pytest.mark.asyncio
    async def test_after_sync(self, configured_engine, cloud):
        upload_local(configured_engine, cloud)
        await configured_engine.synchronize()

        status = configured_engine.status()

        assert status["cloud_storage"] == "memory"
        assert status["storage_url"] == "memory://notes"
        assert status["transfer_code"] == "ABCD EFGH JKMN PQRS"
        assert status["in_sync"] is True
        assert status["last_synchronized_at"] is not None
        assert status["last_error"] is None
