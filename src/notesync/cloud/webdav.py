"""
WebDAV provider -- Nextcloud, ownCloud, NAS boxes and friends.

Plain HTTP verbs against one folder URL: PUT to upload, GET to
download, HEAD to probe, DELETE to remove and PROPFIND to list.
Requests are blocking, so they run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
import xml.etree.ElementTree as ET
from typing import Optional
from urllib.parse import quote, unquote, urlparse

import requests

from .base import (
    CloudStorageClient,
    CloudStorageCredentials,
    ConnectionFailedError,
    CredentialsRequirements,
    InvalidParameterError,
    raise_for_cloud_status,
)

logger = logging.getLogger("notesync.cloud.webdav")

DAV_NAMESPACE = "{DAV:}"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:resourcetype/></d:prop></d:propfind>'
)


class WebdavCloudStorageClient(CloudStorageClient):
    """Cloud storage client speaking WebDAV with basic authentication."""

    storage_id = "webdav"

    def __init__(self, timeout: int = 30):
        self.timeout = timeout

    @property
    def credentials_requirements(self) -> CredentialsRequirements:
        return (
            CredentialsRequirements.URL
            | CredentialsRequirements.USERNAME
            | CredentialsRequirements.PASSWORD
            | CredentialsRequirements.ACCEPT_UNSAFE_CERTIFICATE
        )

    @staticmethod
    def _folder_url(credentials: CloudStorageCredentials) -> str:
        if not credentials.url:
            raise InvalidParameterError("The WebDAV URL is missing.")
        url = credentials.url
        if not url.endswith("/"):
            url += "/"
        return url

    def _file_url(self, filename: str, credentials: CloudStorageCredentials) -> str:
        return self._folder_url(credentials) + quote(filename)

    def _request(
        self,
        method: str,
        url: str,
        credentials: CloudStorageCredentials,
        data: Optional[bytes] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> requests.Response:
        auth = None
        if credentials.username:
            auth = (credentials.username, credentials.plain_password or "")
        try:
            return requests.request(
                method,
                url,
                data=data,
                headers=headers,
                auth=auth,
                verify=not credentials.accept_unsafe_certificate,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ConnectionFailedError(f"WebDAV {method} {url} failed: {exc}") from exc

    def _upload(self, filename: str, data: bytes, credentials: CloudStorageCredentials) -> None:
        response = self._request(
            "PUT",
            self._file_url(filename, credentials),
            credentials,
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        raise_for_cloud_status(response, f"Upload of {filename}")
        logger.info("Uploaded %s (%d bytes) via WebDAV", filename, len(data))

    def _download(self, filename: str, credentials: CloudStorageCredentials) -> bytes:
        response = self._request("GET", self._file_url(filename, credentials), credentials)
        raise_for_cloud_status(response, f"Download of {filename}")
        return response.content

    def _exists(self, filename: str, credentials: CloudStorageCredentials) -> bool:
        response = self._request("HEAD", self._file_url(filename, credentials), credentials)
        if response.status_code == 404:
            return False
        raise_for_cloud_status(response, f"Lookup of {filename}")
        return True

    def _delete(self, filename: str, credentials: CloudStorageCredentials) -> None:
        response = self._request("DELETE", self._file_url(filename, credentials), credentials)
        if response.status_code == 404:
            return
        raise_for_cloud_status(response, f"Delete of {filename}")

    def _list(self, credentials: CloudStorageCredentials) -> list[str]:
        folder_url = self._folder_url(credentials)
        response = self._request(
            "PROPFIND",
            folder_url,
            credentials,
            data=PROPFIND_BODY.encode("utf-8"),
            headers={"Depth": "1", "Content-Type": "application/xml"},
        )
        raise_for_cloud_status(response, "Folder listing")
        return parse_propfind_file_names(response.content)

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


def parse_propfind_file_names(content: bytes) -> list[str]:
    """Extract the file names of a PROPFIND multistatus answer.

    Collections (the folder itself and sub folders) are skipped.

    Args:
        content: Raw XML body of the 207 response.

    Returns:
        list[str]: Decoded file names in server order.

    Raises:
        ConnectionFailedError: If the body is not valid XML.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as exc:
        raise ConnectionFailedError(f"Invalid PROPFIND response: {exc}") from exc

    names: list[str] = []
    for response in root.iter(f"{DAV_NAMESPACE}response"):
        if response.find(f".//{DAV_NAMESPACE}collection") is not None:
            continue
        href = response.findtext(f"{DAV_NAMESPACE}href")
        if not href:
            continue
        path = unquote(urlparse(href).path).rstrip("/")
        name = path.rsplit("/", 1)[-1]
        if name:
            names.append(name)
    return names
