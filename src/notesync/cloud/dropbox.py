"""
Dropbox provider -- HTTP API v2 with OAuth2 code flow and PKCE.

The repository lives in the app folder, so paths are relative to
the root that Dropbox assigns to the app.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import requests

from .base import (
    AccessDeniedError,
    CloudStorageCredentials,
    ConnectionFailedError,
    CredentialsRequirements,
    raise_for_cloud_status,
)
from .oauth2 import (
    OAuth2CloudStorageClient,
    OAuth2Config,
    build_authorization_request_url,
)

logger = logging.getLogger("notesync.cloud.dropbox")

AUTHORIZE_ENDPOINT = "https://www.dropbox.com/oauth2/authorize"
TOKEN_ENDPOINT = "https://api.dropboxapi.com/oauth2/token"
API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"


class DropboxCloudStorageClient(OAuth2CloudStorageClient):
    """Dropbox app-folder storage."""

    storage_id = "dropbox"

    def __init__(self, client_id: str, redirect_url: str, timeout: int = 30):
        super().__init__(
            OAuth2Config(
                authorize_service_endpoint=AUTHORIZE_ENDPOINT,
                token_service_endpoint=TOKEN_ENDPOINT,
                client_id=client_id,
                redirect_url=redirect_url,
            ),
            timeout=timeout,
        )

    @property
    def credentials_requirements(self) -> CredentialsRequirements:
        return CredentialsRequirements.TOKEN

    def build_authorization_request_url(self, state, code_verifier=None):
        # Without offline access Dropbox issues no refresh token
        return build_authorization_request_url(
            self.config, state, code_verifier, {"token_access_type": "offline"}
        )

    def _post(
        self,
        url: str,
        credentials: CloudStorageCredentials,
        *,
        api_arg: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
        data: Optional[bytes] = None,
    ) -> requests.Response:
        if credentials.token is None or not credentials.token.access_token:
            raise AccessDeniedError("Not logged in to Dropbox.")
        headers = {"Authorization": f"Bearer {credentials.token.access_token}"}
        if api_arg is not None:
            headers["Dropbox-API-Arg"] = json.dumps(api_arg)
        if data is not None:
            headers["Content-Type"] = "application/octet-stream"
        try:
            return requests.post(
                url, headers=headers, json=json_body, data=data, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise ConnectionFailedError(f"Dropbox request failed: {exc}") from exc

    def _upload(self, filename, data, credentials):
        response = self._post(
            f"{CONTENT_URL}/files/upload",
            credentials,
            api_arg={"path": f"/{filename}", "mode": "overwrite", "mute": True},
            data=data,
        )
        raise_for_cloud_status(response, f"Upload of {filename}")
        logger.info("Uploaded %s (%d bytes) to Dropbox", filename, len(data))

    def _download(self, filename, credentials):
        response = self._post(
            f"{CONTENT_URL}/files/download",
            credentials,
            api_arg={"path": f"/{filename}"},
        )
        raise_for_cloud_status(response, f"Download of {filename}")
        return response.content

    def _exists(self, filename, credentials):
        response = self._post(
            f"{API_URL}/files/get_metadata",
            credentials,
            json_body={"path": f"/{filename}"},
        )
        if response.status_code == 409 and "not_found" in response.text:
            return False
        raise_for_cloud_status(response, f"Lookup of {filename}")
        return response.json().get(".tag") == "file"

    def _delete(self, filename, credentials):
        response = self._post(
            f"{API_URL}/files/delete_v2",
            credentials,
            json_body={"path": f"/{filename}"},
        )
        if response.status_code == 409 and "not_found" in response.text:
            return
        raise_for_cloud_status(response, f"Delete of {filename}")

    def _list(self, credentials):
        names: list[str] = []
        response = self._post(
            f"{API_URL}/files/list_folder", credentials, json_body={"path": ""}
        )
        while True:
            raise_for_cloud_status(response, "Folder listing")
            page = response.json()
            names.extend(
                entry["name"] for entry in page.get("entries", [])
                if entry.get(".tag") == "file"
            )
            if not page.get("has_more"):
                return names
            response = self._post(
                f"{API_URL}/files/list_folder/continue",
                credentials,
                json_body={"cursor": page["cursor"]},
            )

    async def upload_file(self, filename, data, credentials):
        await asyncio.to_thread(self._upload, filename, data, credentials)

    async def download_file(self, filename, credentials):
        return await asyncio.to_thread(self._download, filename, credentials)

    async def exists_file(self, filename, credentials):
        return await asyncio.to_thread(self._exists, filename, credentials)

    async def delete_file(self, filename, credentials):
        await asyncio.to_thread(self._delete, filename, credentials)

    async def list_file_names(self, credentials):
        return await asyncio.to_thread(self._list, credentials)
