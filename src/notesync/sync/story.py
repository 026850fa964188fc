"""
Synchronization story -- the resumable workflow behind every sync.

A story is a chain of small steps. Each step looks at the world,
maybe asks the user, and names the step that comes next. The
orchestrator runs the chain, shows feedback in one place and makes
sure only the newest story may change anything.

    IsCloudServiceSet -> ExistsCloudRepository -> DownloadCloudRepository
        -> ExistsTransferCode -> DecryptCloudRepository -> IsSameRepository
        -> StoreMergedRepositoryAndQuit -> StopAndShowRepository

Background runs use the same chain in silent mode: they never ask
and stop as soon as the user would be needed.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Mapping, Optional

from ..cloud import CloudStorageClientFactory
from ..cloud.base import (
    AccessDeniedError,
    CloudStorageCredentials,
    CloudStorageError,
    ConnectionFailedError,
    InvalidParameterError,
    RefreshTokenExpiredError,
)
from ..models import (
    NoteRepository,
    NoteSyncConfig,
    RepositoryFormatError,
    UnsupportedRepositoryRevisionError,
    utcnow,
)
from ..storage import PendingOAuthStore, RepositoryStorage, SettingsService, StateStore
from .crypto import DecryptionError, InvalidCipherFormatError, UnsupportedCipherRevisionError
from .ui import SilentUi, SyncUi, ToastSeverity

logger = logging.getLogger("notesync.sync.story")


class StoryMode(str, Enum):
    """Whether the story may talk to the user."""

    INTERACTIVE = "interactive"
    SILENT = "silent"


class StepId(str, Enum):
    """Every step of the synchronization story."""

    IS_CLOUD_SERVICE_SET = "is_cloud_service_set"
    SHOW_FIRST_TIME_DIALOG = "show_first_time_dialog"
    SHOW_CLOUD_STORAGE_CHOICE = "show_cloud_storage_choice"
    SHOW_CLOUD_STORAGE_ACCOUNT = "show_cloud_storage_account"
    HANDLE_OAUTH_REDIRECT = "handle_oauth_redirect"
    EXISTS_CLOUD_REPOSITORY = "exists_cloud_repository"
    DOWNLOAD_CLOUD_REPOSITORY = "download_cloud_repository"
    EXISTS_TRANSFER_CODE = "exists_transfer_code"
    SHOW_TRANSFER_CODE = "show_transfer_code"
    DECRYPT_CLOUD_REPOSITORY = "decrypt_cloud_repository"
    IS_SAME_REPOSITORY = "is_same_repository"
    SHOW_MERGE_CHOICE = "show_merge_choice"
    STORE_MERGED_REPOSITORY_AND_QUIT = "store_merged_repository_and_quit"
    STORE_LOCAL_REPOSITORY_TO_CLOUD_AND_QUIT = "store_local_repository_to_cloud_and_quit"
    STORE_CLOUD_REPOSITORY_TO_DEVICE_AND_QUIT = "store_cloud_repository_to_device_and_quit"
    STOP_AND_SHOW_REPOSITORY = "stop_and_show_repository"

    @property
    def requires_user(self) -> bool:
        """Steps that cannot do anything without the user."""
        return self in USER_INTERACTION_STEPS


USER_INTERACTION_STEPS = frozenset({
    StepId.SHOW_FIRST_TIME_DIALOG,
    StepId.SHOW_CLOUD_STORAGE_CHOICE,
    StepId.SHOW_CLOUD_STORAGE_ACCOUNT,
    StepId.SHOW_TRANSFER_CODE,
    StepId.SHOW_MERGE_CHOICE,
})


@dataclass
class StepResult:
    """What a step decided.

    ``next_step`` None ends the run. An ``error`` also ends it, after
    the orchestrator has shown or logged it.
    """

    next_step: Optional[StepId] = None
    toast: Optional[str] = None
    message: Optional[str] = None
    error: Optional[Exception] = None
    needs_attention: bool = False

    @classmethod
    def go(cls, step: StepId, **kwargs) -> StepResult:
        """Continue with ``step``."""
        return cls(next_step=step, **kwargs)


@dataclass
class SyncSession:
    """Values handed from step to step during one run."""

    credentials: Optional[CloudStorageCredentials] = None
    binary_cloud_repository: Optional[bytes] = None
    cloud_repository: Optional[NoteRepository] = None
    user_entered_transfer_code: Optional[str] = None
    oauth_state: Optional[str] = None
    oauth_code_verifier: Optional[str] = None
    oauth_redirect_url: Optional[str] = None

    def clear(self) -> None:
        for item in fields(self):
            setattr(self, item.name, None)


class SynchronizationState:
    """Tracks the one story that is allowed to act.

    Starting a story supersedes the running one. The old story is not
    cancelled, it notices after its current step and drops its result.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Optional[SynchronizationStory] = None
        self._latest: Optional[SynchronizationStory] = None

    def activate(self, story: SynchronizationStory) -> Optional[SynchronizationStory]:
        """Make ``story`` the active one and return the superseded story."""
        with self._lock:
            previous, self._active = self._active, story
            self._latest = story
        if previous is not None and previous is not story:
            logger.info("New synchronization supersedes the running one")
            return previous
        return None

    def is_active(self, story: SynchronizationStory) -> bool:
        with self._lock:
            return self._active is story

    def is_superseded(self, story: SynchronizationStory) -> bool:
        """Whether a newer story was started after ``story``."""
        with self._lock:
            return self._latest is not story

    def deactivate(self, story: SynchronizationStory) -> None:
        """Forget ``story`` unless another one took over meanwhile."""
        with self._lock:
            if self._active is story:
                self._active = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._active is not None


@dataclass
class SyncContext:
    """Services the steps work with."""

    settings_service: SettingsService
    repository_storage: RepositoryStorage
    state_store: StateStore
    pending_oauth_store: PendingOAuthStore
    cloud_factory: CloudStorageClientFactory
    config: NoteSyncConfig = field(default_factory=NoteSyncConfig)
    ui: SyncUi = field(default_factory=SilentUi)
    synchronization_state: SynchronizationState = field(default_factory=SynchronizationState)
    clock: Callable[[], datetime] = utcnow


StepHandler = Callable[["SynchronizationStory"], Awaitable[StepResult]]


_ERROR_MESSAGES: list[tuple[type, str]] = [
    (RefreshTokenExpiredError, "The login to the cloud storage has expired, please log in again."),
    (AccessDeniedError, "The cloud storage denied access, please check your credentials."),
    (ConnectionFailedError, "The cloud storage could not be reached, please check the internet connection and the storage address."),
    (UnsupportedCipherRevisionError, "The cloud repository was written by a newer version of NoteSync, please update the app."),
    (UnsupportedRepositoryRevisionError, "The repository was written by a newer version of NoteSync, please update the app."),
    (InvalidCipherFormatError, "The cloud repository is damaged or was not written by NoteSync."),
    (RepositoryFormatError, "The repository is damaged and cannot be read."),
    (DecryptionError, "The cloud repository could not be opened with the transfer code."),
]


def describe_error(error: Exception) -> str:
    """Turn an exception into a message for the user.

    Args:
        error: Exception raised by a step.

    Returns:
        str: Readable message, technical details only where no
        friendlier text exists.
    """
    for error_type, text in _ERROR_MESSAGES:
        if isinstance(error, error_type):
            return text
    if isinstance(error, InvalidParameterError):
        return f"Invalid input: {error}"
    if isinstance(error, CloudStorageError):
        return f"Cloud storage error: {error}"
    return f"Synchronization failed: {error}"


class SynchronizationStory:
    """Runs the steps of one synchronization.

    Args:
        context: Shared services.
        mode: Interactive or silent.
        handlers: Step implementations, one for every ``StepId``.
        session: Pre-filled session, for resumed OAuth2 logins.
    """

    def __init__(
        self,
        context: SyncContext,
        mode: StoryMode,
        handlers: Mapping[StepId, StepHandler],
        session: Optional[SyncSession] = None,
    ):
        missing = set(StepId) - set(handlers)
        if missing:
            raise ValueError(
                "No handler for steps: " + ", ".join(sorted(s.value for s in missing))
            )
        self.context = context
        self.mode = mode
        self.handlers = handlers
        self.session = session or SyncSession()
        self.history: list[StepId] = []
        self.superseded = False

    @property
    def ui(self) -> SyncUi:
        return self.context.ui

    @property
    def is_silent(self) -> bool:
        return self.mode == StoryMode.SILENT

    @property
    def is_active(self) -> bool:
        return self.context.synchronization_state.is_active(self)

    async def run(self, entry_step: StepId) -> StepResult:
        """Run the story from ``entry_step`` until a step ends it.

        Returns:
            StepResult: The result of the last step. Silent runs that
            reach a step needing the user return ``needs_attention``.
        """
        self.context.synchronization_state.activate(self)
        step_id = entry_step
        try:
            while True:
                if self.is_silent and step_id.requires_user:
                    logger.info(
                        "Silent synchronization stops before %s, user attention needed",
                        step_id.value,
                    )
                    return StepResult(needs_attention=True)

                self.history.append(step_id)
                logger.debug("Running step %s", step_id.value)
                try:
                    result = await self.handlers[step_id](self)
                except Exception as exc:
                    logger.debug("Step %s raised", step_id.value, exc_info=True)
                    result = StepResult(error=exc)

                if self.context.synchronization_state.is_superseded(self):
                    self.superseded = True
                    logger.info("Dropping result of superseded step %s", step_id.value)
                    return result

                await self._show_feedback(result)
                if result.error is not None or result.next_step is None:
                    return result
                step_id = result.next_step
        finally:
            self.context.synchronization_state.deactivate(self)

    async def _show_feedback(self, result: StepResult) -> None:
        if result.error is not None:
            text = describe_error(result.error)
            if self.is_silent:
                logger.warning("Background synchronization failed: %s (%s)", text, result.error)
            else:
                logger.error("Synchronization failed: %s", result.error)
                self.ui.show_toast(text, ToastSeverity.ERROR)

        if self.is_silent:
            for text in (result.toast, result.message):
                if text:
                    logger.info("%s", text)
            return
        if result.toast:
            self.ui.show_toast(result.toast)
        if result.message:
            await self.ui.show_message(result.message)
