"""
Synchronization UI contract -- what the workflow may ask the user.

The workflow never talks to a screen directly. Interactive front
ends implement ``SyncUi``; background runs use ``SilentUi``, which
never asks and never shows anything.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from ..cloud.base import CloudStorageCredentials, CredentialsRequirements

logger = logging.getLogger("notesync.sync.ui")


class MergeChoice(str, Enum):
    """How to combine a cloud repository of a different lineage."""

    MERGE = "merge"
    USE_LOCAL = "use_local"
    USE_CLOUD = "use_cloud"


class ToastSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class SyncUi(ABC):
    """Dialogs and notifications used by the synchronization workflow."""

    @abstractmethod
    async def confirm_first_time(self) -> bool:
        """Explain cloud synchronization and ask whether to set it up."""

    @abstractmethod
    async def choose_cloud_storage(self, storage_ids: list[str]) -> Optional[str]:
        """Let the user pick a provider, None on cancel."""

    @abstractmethod
    async def enter_credentials(
        self,
        storage_id: str,
        requirements: CredentialsRequirements,
        current: Optional[CloudStorageCredentials],
    ) -> Optional[CloudStorageCredentials]:
        """Ask for the fields in ``requirements``, None on cancel."""

    @abstractmethod
    async def open_oauth_url(self, url: str) -> None:
        """Send the user to the provider's login page."""

    @abstractmethod
    async def enter_transfer_code(self) -> Optional[str]:
        """Ask for the transfer code of the cloud repository, None on cancel."""

    @abstractmethod
    async def choose_merge_strategy(self) -> Optional[MergeChoice]:
        """Ask how to handle a cloud repository of another lineage."""

    @abstractmethod
    def show_toast(self, text: str, severity: ToastSeverity = ToastSeverity.INFO) -> None:
        """Show a short, self dismissing notification."""

    @abstractmethod
    async def show_message(self, text: str) -> None:
        """Show a message the user has to acknowledge."""

    async def show_repository(self) -> None:
        """Return to the note list. Front ends without navigation ignore it."""


class SilentUi(SyncUi):
    """Answers every question with cancel and shows nothing."""

    async def confirm_first_time(self) -> bool:
        return False

    async def choose_cloud_storage(self, storage_ids):
        return None

    async def enter_credentials(self, storage_id, requirements, current):
        return None

    async def open_oauth_url(self, url):
        logger.debug("Silent UI ignores OAuth2 login request")

    async def enter_transfer_code(self):
        return None

    async def choose_merge_strategy(self):
        return None

    def show_toast(self, text, severity=ToastSeverity.INFO):
        logger.debug("Silent UI toast (%s): %s", severity.value, text)

    async def show_message(self, text):
        logger.debug("Silent UI message: %s", text)
