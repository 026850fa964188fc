"""
Synchronization steps -- one small async function per workflow step.

Every step receives the running story, reads what it needs from the
session and the services, and returns a ``StepResult`` naming the
next step. Steps raise freely; the story turns exceptions into
feedback. ``STEP_HANDLERS`` is the single dispatch table.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from ..cloud.base import (
    CloudStorageClient,
    CloudStorageCredentials,
    InvalidParameterError,
    RefreshTokenExpiredError,
)
from ..cloud.oauth2 import OAuth2CloudStorageClient, generate_random_base62
from ..models import PendingOAuth, SyncState
from .crypto import DecryptionError
from .merge import merge_repositories
from .story import StepHandler, StepId, StepResult, SynchronizationStory, describe_error
from .transfer_code import (
    format_for_display,
    generate_code,
    is_code_set,
    is_valid_code,
    sanitize_user_input,
)
from .ui import MergeChoice
from .vault import decrypt_with_candidates, encrypt_repository, list_candidate_codes

logger = logging.getLogger("notesync.sync.steps")

OAUTH_STATE_LENGTH = 16
OAUTH_CODE_VERIFIER_LENGTH = 64


def _session_credentials(story: SynchronizationStory) -> CloudStorageCredentials:
    """Credentials of this run, falling back to the stored ones."""
    if story.session.credentials is None:
        settings = story.context.settings_service.load_or_default()
        if settings.credentials is None:
            raise InvalidParameterError("No cloud storage is configured.")
        story.session.credentials = settings.credentials
    return story.session.credentials


def _client_for(story: SynchronizationStory) -> CloudStorageClient:
    credentials = _session_credentials(story)
    return story.context.cloud_factory.get(credentials.cloud_storage_id)


def _record_success(story: SynchronizationStory, fingerprint: str) -> None:
    story.context.state_store.save(
        SyncState(
            last_fingerprint=fingerprint,
            last_synchronized_at=story.context.clock(),
        )
    )


async def _upload(story: SynchronizationStory, repository, transfer_code: str) -> None:
    config = story.context.config
    blob = await asyncio.to_thread(
        encrypt_repository,
        repository,
        transfer_code,
        algorithm=config.encryption_algorithm,
        compress=config.compression,
    )
    await _client_for(story).upload_file(
        config.repository_file_name, blob, _session_credentials(story)
    )
    logger.info("Uploaded repository %s to the cloud", repository.id)


async def is_cloud_service_set(story: SynchronizationStory) -> StepResult:
    settings = story.context.settings_service.load_or_default()
    credentials = settings.credentials
    if credentials is not None and credentials.cloud_storage_id in story.context.cloud_factory:
        story.session.credentials = credentials
        return StepResult.go(StepId.EXISTS_CLOUD_REPOSITORY)
    return StepResult.go(StepId.SHOW_FIRST_TIME_DIALOG)


async def show_first_time_dialog(story: SynchronizationStory) -> StepResult:
    if await story.ui.confirm_first_time():
        return StepResult.go(StepId.SHOW_CLOUD_STORAGE_CHOICE)
    return StepResult.go(StepId.STOP_AND_SHOW_REPOSITORY)


async def show_cloud_storage_choice(story: SynchronizationStory) -> StepResult:
    storage_id = await story.ui.choose_cloud_storage(
        story.context.cloud_factory.storage_ids()
    )
    if storage_id is None:
        return StepResult.go(StepId.STOP_AND_SHOW_REPOSITORY)

    current = story.context.settings_service.load_or_default().credentials
    if current is not None and current.cloud_storage_id == storage_id:
        story.session.credentials = current
    else:
        story.session.credentials = CloudStorageCredentials(cloud_storage_id=storage_id)
    return StepResult.go(StepId.SHOW_CLOUD_STORAGE_ACCOUNT)


async def show_cloud_storage_account(story: SynchronizationStory) -> StepResult:
    """Collect credentials, or hand over to the browser for OAuth2.

    An OAuth2 login cannot finish inside this run. The state and PKCE
    verifier are stored, the run ends, and ``HandleOAuthRedirect``
    picks up once the redirect URL arrives.
    """
    credentials = story.session.credentials
    if credentials is None:
        return StepResult.go(StepId.SHOW_CLOUD_STORAGE_CHOICE)
    client = story.context.cloud_factory.get(credentials.cloud_storage_id)

    if isinstance(client, OAuth2CloudStorageClient):
        state = generate_random_base62(OAUTH_STATE_LENGTH)
        code_verifier = generate_random_base62(OAUTH_CODE_VERIFIER_LENGTH)
        story.session.oauth_state = state
        story.session.oauth_code_verifier = code_verifier
        story.context.pending_oauth_store.save(
            PendingOAuth(credentials=credentials, state=state, code_verifier=code_verifier)
        )
        await story.ui.open_oauth_url(
            client.build_authorization_request_url(state, code_verifier)
        )
        return StepResult(
            message="Please log in to the cloud storage in your browser, then continue with the redirect URL."
        )

    entered = await story.ui.enter_credentials(
        credentials.cloud_storage_id, client.credentials_requirements, credentials
    )
    if entered is None:
        return StepResult.go(StepId.STOP_AND_SHOW_REPOSITORY)
    entered.raise_if_invalid(client.credentials_requirements)
    story.session.credentials = entered
    return StepResult.go(StepId.EXISTS_CLOUD_REPOSITORY)


async def handle_oauth_redirect(story: SynchronizationStory) -> StepResult:
    session = story.session
    if not session.oauth_redirect_url or not session.oauth_state:
        raise InvalidParameterError("There is no OAuth2 login waiting for a redirect.")
    client = _client_for(story)
    if not isinstance(client, OAuth2CloudStorageClient):
        raise InvalidParameterError(
            f"{client.storage_id} does not log in with OAuth2."
        )

    token = await client.fetch_token(
        session.oauth_redirect_url, session.oauth_state, session.oauth_code_verifier
    )
    if token is None:
        return StepResult.go(
            StepId.STOP_AND_SHOW_REPOSITORY,
            toast="Access to the cloud storage was not granted.",
        )
    session.credentials.token = token
    return StepResult.go(StepId.EXISTS_CLOUD_REPOSITORY)


async def exists_cloud_repository(story: SynchronizationStory) -> StepResult:
    """Probe the storage, the first call that proves the credentials work.

    Working credentials are stored in the settings right away, so a
    token refresh or a new login is not lost if a later step fails.
    """
    credentials = _session_credentials(story)
    client = _client_for(story)
    try:
        if (
            isinstance(client, OAuth2CloudStorageClient)
            and credentials.token is not None
            and credentials.token.needs_refresh()
        ):
            credentials.token = await client.refresh_token(credentials.token)
        exists = await client.exists_file(
            story.context.config.repository_file_name, credentials
        )
    except RefreshTokenExpiredError as exc:
        return StepResult.go(StepId.SHOW_CLOUD_STORAGE_ACCOUNT, toast=describe_error(exc))

    settings_service = story.context.settings_service
    settings = settings_service.load_or_default()
    if settings.credentials != credentials:
        settings.credentials = credentials
        settings_service.try_save(settings)

    if exists:
        return StepResult.go(StepId.DOWNLOAD_CLOUD_REPOSITORY)
    return StepResult.go(StepId.STORE_LOCAL_REPOSITORY_TO_CLOUD_AND_QUIT)


async def download_cloud_repository(story: SynchronizationStory) -> StepResult:
    if story.session.binary_cloud_repository is None:
        story.session.binary_cloud_repository = await _client_for(story).download_file(
            story.context.config.repository_file_name, _session_credentials(story)
        )
        logger.info(
            "Downloaded cloud repository (%d bytes)",
            len(story.session.binary_cloud_repository),
        )
    return StepResult.go(StepId.EXISTS_TRANSFER_CODE)


async def exists_transfer_code(story: SynchronizationStory) -> StepResult:
    settings = story.context.settings_service.load_or_default()
    if is_code_set(settings.transfer_code):
        return StepResult.go(StepId.DECRYPT_CLOUD_REPOSITORY)
    return StepResult.go(StepId.SHOW_TRANSFER_CODE)


async def show_transfer_code(story: SynchronizationStory) -> StepResult:
    text = await story.ui.enter_transfer_code()
    if text is None:
        return StepResult.go(StepId.STOP_AND_SHOW_REPOSITORY)
    code = sanitize_user_input(text)
    if not is_valid_code(code):
        return StepResult.go(
            StepId.SHOW_TRANSFER_CODE,
            toast="This is not a valid transfer code, it has 16 letters and digits.",
        )
    story.session.user_entered_transfer_code = code
    return StepResult.go(StepId.DECRYPT_CLOUD_REPOSITORY)


async def decrypt_cloud_repository(story: SynchronizationStory) -> StepResult:
    """Open the cloud repository with the candidate transfer codes.

    A code that fits but is not the current one becomes current. A
    wrong code sends the user back to the code entry; a damaged or
    too new repository ends the run.
    """
    session = story.session
    if session.binary_cloud_repository is None:
        return StepResult.go(StepId.DOWNLOAD_CLOUD_REPOSITORY)

    settings_service = story.context.settings_service
    settings = settings_service.load_or_default()
    candidates = list_candidate_codes(settings, session.user_entered_transfer_code)
    try:
        outcome = await asyncio.to_thread(
            decrypt_with_candidates, session.binary_cloud_repository, candidates
        )
    except DecryptionError as exc:
        session.user_entered_transfer_code = None
        return StepResult.go(StepId.SHOW_TRANSFER_CODE, toast=describe_error(exc))

    if outcome.transfer_code != settings.transfer_code:
        settings.adopt_transfer_code(outcome.transfer_code)
        settings_service.try_save(settings)
        logger.info("Adopted the transfer code that opened the cloud repository")
    session.cloud_repository = outcome.repository
    return StepResult.go(StepId.IS_SAME_REPOSITORY)


async def is_same_repository(story: SynchronizationStory) -> StepResult:
    local = story.context.repository_storage.load_or_default()
    if local.id == story.session.cloud_repository.id:
        return StepResult.go(StepId.STORE_MERGED_REPOSITORY_AND_QUIT)
    return StepResult.go(StepId.SHOW_MERGE_CHOICE)


_MERGE_CHOICE_STEPS = {
    MergeChoice.MERGE: StepId.STORE_MERGED_REPOSITORY_AND_QUIT,
    MergeChoice.USE_LOCAL: StepId.STORE_LOCAL_REPOSITORY_TO_CLOUD_AND_QUIT,
    MergeChoice.USE_CLOUD: StepId.STORE_CLOUD_REPOSITORY_TO_DEVICE_AND_QUIT,
}


async def show_merge_choice(story: SynchronizationStory) -> StepResult:
    choice = await story.ui.choose_merge_strategy()
    if choice is None:
        return StepResult.go(StepId.STOP_AND_SHOW_REPOSITORY)
    return StepResult.go(_MERGE_CHOICE_STEPS[choice])


async def store_merged_repository_and_quit(story: SynchronizationStory) -> StepResult:
    """Merge, then write only the sides that actually changed."""
    context = story.context
    local = context.repository_storage.load_or_default()
    cloud = story.session.cloud_repository

    horizon: Optional[timedelta] = None
    if context.config.maintained_at_horizon_days is not None:
        horizon = timedelta(days=context.config.maintained_at_horizon_days)
    merged = merge_repositories(local, cloud, maintained_horizon=horizon, now=context.clock())
    merged_fingerprint = merged.fingerprint()

    if merged_fingerprint != local.fingerprint():
        if not context.repository_storage.try_save(merged):
            return StepResult.go(
                StepId.STOP_AND_SHOW_REPOSITORY,
                toast="The merged repository could not be saved on this device.",
            )
        logger.info("Saved merged repository locally")

    if merged_fingerprint != cloud.fingerprint():
        settings = context.settings_service.load_or_default()
        await _upload(story, merged, settings.transfer_code)

    _record_success(story, merged_fingerprint)
    return StepResult.go(StepId.STOP_AND_SHOW_REPOSITORY)


async def store_local_repository_to_cloud_and_quit(story: SynchronizationStory) -> StepResult:
    context = story.context
    settings = context.settings_service.load_or_default()
    message = None
    if not is_code_set(settings.transfer_code):
        settings.adopt_transfer_code(generate_code())
        context.settings_service.try_save(settings)
        message = (
            "Your notes are protected with a new transfer code. Write it down, "
            "you need it to synchronize other devices: "
            + format_for_display(settings.transfer_code)
        )
        logger.info("Generated a new transfer code")

    local = context.repository_storage.load_or_default()
    await _upload(story, local, settings.transfer_code)
    _record_success(story, local.fingerprint())
    return StepResult.go(StepId.STOP_AND_SHOW_REPOSITORY, message=message)


async def store_cloud_repository_to_device_and_quit(story: SynchronizationStory) -> StepResult:
    cloud = story.session.cloud_repository
    if not story.context.repository_storage.try_save(cloud):
        return StepResult.go(
            StepId.STOP_AND_SHOW_REPOSITORY,
            toast="The cloud repository could not be saved on this device.",
        )
    logger.info("Replaced local repository with cloud repository %s", cloud.id)
    _record_success(story, cloud.fingerprint())
    return StepResult.go(StepId.STOP_AND_SHOW_REPOSITORY)


async def stop_and_show_repository(story: SynchronizationStory) -> StepResult:
    story.session.clear()
    story.context.synchronization_state.deactivate(story)
    if not story.is_silent:
        await story.ui.show_repository()
    return StepResult()


STEP_HANDLERS: dict[StepId, StepHandler] = {
    StepId.IS_CLOUD_SERVICE_SET: is_cloud_service_set,
    StepId.SHOW_FIRST_TIME_DIALOG: show_first_time_dialog,
    StepId.SHOW_CLOUD_STORAGE_CHOICE: show_cloud_storage_choice,
    StepId.SHOW_CLOUD_STORAGE_ACCOUNT: show_cloud_storage_account,
    StepId.HANDLE_OAUTH_REDIRECT: handle_oauth_redirect,
    StepId.EXISTS_CLOUD_REPOSITORY: exists_cloud_repository,
    StepId.DOWNLOAD_CLOUD_REPOSITORY: download_cloud_repository,
    StepId.EXISTS_TRANSFER_CODE: exists_transfer_code,
    StepId.SHOW_TRANSFER_CODE: show_transfer_code,
    StepId.DECRYPT_CLOUD_REPOSITORY: decrypt_cloud_repository,
    StepId.IS_SAME_REPOSITORY: is_same_repository,
    StepId.SHOW_MERGE_CHOICE: show_merge_choice,
    StepId.STORE_MERGED_REPOSITORY_AND_QUIT: store_merged_repository_and_quit,
    StepId.STORE_LOCAL_REPOSITORY_TO_CLOUD_AND_QUIT: store_local_repository_to_cloud_and_quit,
    StepId.STORE_CLOUD_REPOSITORY_TO_DEVICE_AND_QUIT: store_cloud_repository_to_device_and_quit,
    StepId.STOP_AND_SHOW_REPOSITORY: stop_and_show_repository,
}
