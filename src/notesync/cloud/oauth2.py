"""
OAuth2 support -- authorization URLs, redirect parsing and token exchange.

Installed apps cannot keep a client secret, so the code flow is
protected with PKCE. The login happens in the user's browser; the
app later receives the redirect URL and exchanges it for a token.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
import string
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from pydantic import BaseModel

from .base import (
    CloudStorageClient,
    CloudStorageError,
    CloudStorageToken,
    ConnectionFailedError,
    InvalidParameterError,
    RefreshTokenExpiredError,
    raise_for_cloud_status,
)

logger = logging.getLogger("notesync.cloud.oauth2")

BASE62_ALPHABET = string.ascii_letters + string.digits


class OAuth2Flow(str, Enum):
    """Authorization grant type requested from the provider."""

    CODE = "code"
    TOKEN = "token"


class OAuth2Config(BaseModel):
    """Provider endpoints and app registration."""

    authorize_service_endpoint: str
    token_service_endpoint: str
    client_id: str
    redirect_url: str
    scope: Optional[str] = None
    flow: OAuth2Flow = OAuth2Flow.CODE
    send_empty_client_secret: bool = False


class AuthorizationResponse(BaseModel):
    """Parameters the provider appended to the redirect URL."""

    token: Optional[str] = None
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    expires_in: Optional[int] = None

    @property
    def is_access_granted(self) -> bool:
        return self.error is None


def generate_random_base62(length: int) -> str:
    """Random string for OAuth2 ``state`` values and PKCE verifiers."""
    return "".join(secrets.choice(BASE62_ALPHABET) for _ in range(length))


def build_code_challenge(code_verifier: str) -> str:
    """S256 PKCE challenge: unpadded base64url of the SHA-256 digest."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def build_authorization_request_url(
    config: OAuth2Config,
    state: str,
    code_verifier: Optional[str] = None,
    extra_params: Optional[dict[str, str]] = None,
) -> str:
    """Build the URL the user opens to grant access.

    Args:
        config: Provider configuration.
        state: Random value echoed back by the provider.
        code_verifier: PKCE verifier; when given its challenge is sent.
        extra_params: Provider specific query parameters.

    Returns:
        str: The complete authorization URL.
    """
    params = {
        "response_type": config.flow.value,
        "client_id": config.client_id,
        "redirect_uri": config.redirect_url,
        "state": state,
    }
    if config.scope:
        params["scope"] = config.scope
    if code_verifier and config.flow == OAuth2Flow.CODE:
        params["code_challenge"] = build_code_challenge(code_verifier)
        params["code_challenge_method"] = "S256"
    if extra_params:
        params.update(extra_params)
    return f"{config.authorize_service_endpoint}?{urlencode(params)}"


def parse_authorization_response_url(redirect_url: str) -> AuthorizationResponse:
    """Read the authorization result from a redirect URL.

    The code flow puts the parameters into the query, the token flow
    into the fragment.

    Raises:
        InvalidParameterError: If the URL is empty.
    """
    if not redirect_url or not redirect_url.strip():
        raise InvalidParameterError("The redirect URL is empty.")
    parsed = urlparse(redirect_url.strip())
    raw = parsed.query or parsed.fragment
    values = {key: items[0] for key, items in parse_qs(raw).items() if items}
    expires_in = values.get("expires_in")
    return AuthorizationResponse(
        token=values.get("access_token"),
        code=values.get("code"),
        state=values.get("state"),
        error=values.get("error"),
        expires_in=int(expires_in) if expires_in and expires_in.isdigit() else None,
    )


class OAuth2CloudStorageClient(CloudStorageClient):
    """Base class of providers that authenticate with OAuth2.

    Subclasses implement the file operations, this class handles the
    login and token lifecycle.
    """

    def __init__(self, config: OAuth2Config, timeout: int = 30):
        self.config = config
        self.timeout = timeout

    def build_authorization_request_url(
        self, state: str, code_verifier: Optional[str] = None
    ) -> str:
        return build_authorization_request_url(self.config, state, code_verifier)

    async def fetch_token(
        self,
        redirect_url: str,
        state: str,
        code_verifier: Optional[str] = None,
    ) -> Optional[CloudStorageToken]:
        """Turn the redirect of the provider into a token.

        Args:
            redirect_url: The URL the browser was redirected to.
            state: The state sent with the authorization request.
            code_verifier: The PKCE verifier of the request.

        Returns:
            The token, or None if the user denied access.

        Raises:
            CloudStorageError: If the state does not match or the
                redirect carries neither a token nor a code.
        """
        if not state:
            raise InvalidParameterError("The OAuth2 state is missing.")
        response = parse_authorization_response_url(redirect_url)
        if not response.is_access_granted:
            logger.info("Authorization was not granted: %s", response.error)
            return None
        if response.state != state:
            raise CloudStorageError(
                "The authorization response has a wrong state, the request may have been tampered with."
            )

        if response.token:
            token = CloudStorageToken(access_token=response.token)
            token.set_expiry_from_seconds(response.expires_in)
            return token
        if response.code:
            return await asyncio.to_thread(
                self._exchange_code_for_token, response.code, code_verifier
            )
        raise CloudStorageError(
            "The authorization response contains neither a token nor a code."
        )

    async def refresh_token(self, token: CloudStorageToken) -> CloudStorageToken:
        """Get a fresh access token, keeping the refresh token.

        Raises:
            RefreshTokenExpiredError: If the provider rejects the grant.
        """
        if not token.refresh_token:
            raise InvalidParameterError("The token has no refresh token.")
        return await asyncio.to_thread(self._refresh, token)

    def _client_secret_param(self) -> dict[str, str]:
        return {"client_secret": ""} if self.config.send_empty_client_secret else {}

    def _post_token_request(self, form: dict[str, str]) -> requests.Response:
        try:
            return requests.post(
                self.config.token_service_endpoint,
                data=form,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ConnectionFailedError(f"Token request failed: {exc}") from exc

    def _exchange_code_for_token(
        self, code: str, code_verifier: Optional[str]
    ) -> CloudStorageToken:
        form = {
            "code": code,
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_url,
            "grant_type": "authorization_code",
            **self._client_secret_param(),
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        response = self._post_token_request(form)
        raise_for_cloud_status(response, "Token exchange")
        data = response.json()
        token = CloudStorageToken(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
        )
        token.set_expiry_from_seconds(data.get("expires_in"))
        logger.info("Exchanged authorization code for a token")
        return token

    def _refresh(self, token: CloudStorageToken) -> CloudStorageToken:
        form = {
            "refresh_token": token.refresh_token,
            "client_id": self.config.client_id,
            "grant_type": "refresh_token",
            **self._client_secret_param(),
        }
        response = self._post_token_request(form)
        # 400 per RFC 6749, 401 from Dropbox
        if response.status_code in (400, 401, 403) and "invalid_grant" in response.text.lower():
            raise RefreshTokenExpiredError("The refresh token is no longer valid.")
        raise_for_cloud_status(response, "Token refresh")
        data = response.json()
        refreshed = CloudStorageToken(
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token") or token.refresh_token,
        )
        refreshed.set_expiry_from_seconds(data.get("expires_in"))
        logger.debug("Refreshed OAuth2 access token")
        return refreshed
