"""
Sync Engine -- wires the services together and starts stories.

This is the front door. It reads the configuration, builds the
context the steps work with and offers one method per entry point:

    notesync sync run               ->  IsCloudServiceSet ...
    notesync sync run --force       ->  ExistsCloudRepository ...
    notesync sync run --change-storage  ->  ShowCloudStorageChoice ...
    notesync sync oauth-redirect    ->  HandleOAuthRedirect ...
    notesync sync startup|shutdown  ->  silent runs, never raise
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import yaml

from .. import NOTESYNC_HOME
from ..cloud import CloudStorageClientFactory
from ..cloud.base import InvalidParameterError
from ..models import AutoSyncMode, NoteSyncConfig, SyncState
from ..storage import PendingOAuthStore, RepositoryStorage, SettingsService, StateStore
from .steps import STEP_HANDLERS
from .story import (
    StepId,
    StepResult,
    StoryMode,
    SyncContext,
    SynchronizationState,
    SynchronizationStory,
    SyncSession,
    describe_error,
)
from .transfer_code import format_for_display, is_code_set
from .ui import SilentUi, SyncUi

logger = logging.getLogger("notesync.sync.engine")


@dataclass
class SilentSyncReport:
    """Outcome of a background synchronization."""

    succeeded: bool = False
    skipped: bool = False
    needs_attention: bool = False
    fingerprint_before: Optional[str] = None
    fingerprint_after: Optional[str] = None
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.fingerprint_before != self.fingerprint_after


class SyncEngine:
    """Entry points of note synchronization.

    Args:
        home: NoteSync home directory. Defaults to ``NOTESYNC_HOME``.
        ui: Front end used by interactive runs.
        cloud_factory: Provider registry, built from the config if omitted.
        is_metered_connection: Reports whether the network costs money,
            consulted by the ``cost_free_internet_only`` auto-sync mode.
        synchronization_state: Shared active-story registry.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        *,
        ui: Optional[SyncUi] = None,
        cloud_factory: Optional[CloudStorageClientFactory] = None,
        is_metered_connection: Callable[[], bool] = lambda: False,
        synchronization_state: Optional[SynchronizationState] = None,
    ):
        self.home = Path(home or NOTESYNC_HOME).expanduser()
        self.home.mkdir(parents=True, exist_ok=True)
        self.config = self._load_config()

        self.ui = ui or SilentUi()
        self.is_metered_connection = is_metered_connection
        self.synchronization_state = synchronization_state or SynchronizationState()
        self.settings_service = SettingsService(self.home)
        self.repository_storage = RepositoryStorage(self.home)
        self.state_store = StateStore(self.home)
        self.pending_oauth_store = PendingOAuthStore(self.home)
        self.cloud_factory = cloud_factory or CloudStorageClientFactory(
            oauth_redirect_url=self.config.oauth_redirect_url,
            dropbox_client_id=self.config.dropbox_client_id,
        )

    def _load_config(self) -> NoteSyncConfig:
        """Load configuration from disk."""
        config_file = self.home / "config.yaml"
        if config_file.exists():
            try:
                data = yaml.safe_load(config_file.read_text()) or {}
                return NoteSyncConfig(**data)
            except (yaml.YAMLError, ValueError, TypeError) as exc:
                logger.warning("Failed to load config: %s", exc)
        return NoteSyncConfig()

    def save_config(self) -> None:
        """Persist configuration to disk."""
        config_file = self.home / "config.yaml"
        data = self.config.model_dump(mode="json")
        config_file.write_text(yaml.dump(data, default_flow_style=False))

    def _context(self, ui: SyncUi) -> SyncContext:
        return SyncContext(
            settings_service=self.settings_service,
            repository_storage=self.repository_storage,
            state_store=self.state_store,
            pending_oauth_store=self.pending_oauth_store,
            cloud_factory=self.cloud_factory,
            config=self.config,
            ui=ui,
            synchronization_state=self.synchronization_state,
        )

    def create_story(
        self,
        mode: StoryMode = StoryMode.INTERACTIVE,
        session: Optional[SyncSession] = None,
    ) -> SynchronizationStory:
        ui = self.ui if mode == StoryMode.INTERACTIVE else SilentUi()
        return SynchronizationStory(self._context(ui), mode, STEP_HANDLERS, session)

    async def synchronize(self, force: bool = False) -> StepResult:
        """Run an interactive synchronization.

        Args:
            force: Skip the setup check and use the stored credentials.
        """
        entry = StepId.EXISTS_CLOUD_REPOSITORY if force else StepId.IS_CLOUD_SERVICE_SET
        return await self.create_story().run(entry)

    async def change_cloud_storage(self) -> StepResult:
        """Pick another provider or account, then synchronize."""
        return await self.create_story().run(StepId.SHOW_CLOUD_STORAGE_CHOICE)

    async def resume_oauth(self, redirect_url: str) -> StepResult:
        """Continue a synchronization that waits for an OAuth2 redirect.

        Raises:
            InvalidParameterError: If no login is pending.
        """
        pending = self.pending_oauth_store.pop()
        if pending is None:
            raise InvalidParameterError("There is no OAuth2 login waiting for a redirect.")
        session = SyncSession(
            credentials=pending.credentials,
            oauth_state=pending.state,
            oauth_code_verifier=pending.code_verifier,
            oauth_redirect_url=redirect_url,
        )
        return await self.create_story(session=session).run(StepId.HANDLE_OAUTH_REDIRECT)

    def _auto_sync_allowed(self) -> bool:
        mode = self.settings_service.load_or_default().auto_sync_mode
        if mode == AutoSyncMode.NEVER:
            return False
        if mode == AutoSyncMode.COST_FREE_INTERNET_ONLY and self.is_metered_connection():
            logger.info("Skipping background synchronization on a metered connection")
            return False
        return True

    async def synchronize_silently(self, skip_if_unchanged: bool = False) -> SilentSyncReport:
        """Run the story without user interaction.

        Never raises: every failure ends up in the report and the log.

        Args:
            skip_if_unchanged: Do nothing if the local repository still
                has the fingerprint of the last synchronization.
        """
        report = SilentSyncReport()
        try:
            if not self._auto_sync_allowed():
                report.skipped = True
                return report

            report.fingerprint_before = self.repository_storage.load_or_default().fingerprint()
            if skip_if_unchanged:
                last = self.state_store.load().last_fingerprint
                if last == report.fingerprint_before:
                    logger.debug("Repository unchanged since last synchronization")
                    report.skipped = True
                    report.fingerprint_after = report.fingerprint_before
                    return report

            story = self.create_story(StoryMode.SILENT)
            result = await story.run(StepId.IS_CLOUD_SERVICE_SET)
            self.repository_storage.clear_cache()
            report.fingerprint_after = self.repository_storage.load_or_default().fingerprint()
            report.needs_attention = result.needs_attention
            if result.error is not None:
                report.error = describe_error(result.error)
                self._record_error(report.error)
            else:
                report.succeeded = not result.needs_attention and not story.superseded
        except Exception as exc:
            logger.warning("Background synchronization failed: %s", exc)
            report.error = describe_error(exc)
        return report

    def _record_error(self, text: str) -> None:
        state = self.state_store.load()
        state.last_error = text
        try:
            self.state_store.save(state)
        except OSError as exc:
            logger.warning("Failed to save sync state: %s", exc)

    async def synchronize_at_startup(self) -> SilentSyncReport:
        """Fetch changes from other devices when the app starts."""
        return await self.synchronize_silently()

    async def synchronize_at_shutdown(self) -> SilentSyncReport:
        """Push local changes when the app closes, only if there are any."""
        return await self.synchronize_silently(skip_if_unchanged=True)

    def status(self) -> dict:
        """Get current sync status.

        Returns:
            Dict with storage, transfer code, repository and last sync info.
        """
        settings = self.settings_service.load_or_default()
        state: SyncState = self.state_store.load()
        repository = self.repository_storage.load_or_default()
        credentials = settings.credentials
        return {
            "cloud_storage": credentials.cloud_storage_id if credentials else None,
            "storage_url": credentials.url if credentials else None,
            "transfer_code": (
                format_for_display(settings.transfer_code)
                if is_code_set(settings.transfer_code) else None
            ),
            "transfer_code_history": len(settings.transfer_code_history),
            "auto_sync_mode": settings.auto_sync_mode.value,
            "repository_id": str(repository.id),
            "note_count": len(repository.notes),
            "fingerprint": repository.fingerprint(),
            "in_sync": state.last_fingerprint == repository.fingerprint(),
            "last_synchronized_at": (
                state.last_synchronized_at.isoformat()
                if state.last_synchronized_at else None
            ),
            "last_error": state.last_error,
            "oauth_pending": self.pending_oauth_store.path.exists(),
        }


async def synchronize_at_startup(home: Optional[Path] = None, **kwargs) -> SilentSyncReport:
    """Background synchronization for app start, builds its own engine."""
    return await SyncEngine(home, **kwargs).synchronize_at_startup()


async def synchronize_at_shutdown(home: Optional[Path] = None, **kwargs) -> SilentSyncReport:
    """Background synchronization for app exit, builds its own engine."""
    return await SyncEngine(home, **kwargs).synchronize_at_shutdown()
