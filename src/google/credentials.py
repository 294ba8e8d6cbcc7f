"""OAuth credential lifecycle — construction, code upgrade and silent refresh."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable, Mapping
from typing import Any

import httpx

from src.google.errors import (
    MissingCredential,
    UpstreamRejected,
    UpstreamUnreachable,
    json_object,
    response_error_message,
)
from src.google.types import Credential, TokenGrant

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"

# Refresh this many seconds before the provider's stated expiry
_DEFAULT_LEEWAY_SECONDS = 60


class CredentialManager:
    """Builds, upgrades and refreshes Google OAuth credentials.

    Never retries — a failed exchange surfaces immediately and retry/backoff
    is left to the caller (see MailboxWatcher).

    Usage::

        async with httpx.AsyncClient() as http:
            manager = CredentialManager.from_env(http)
            grant = await manager.upgrade_authorization_code(code, redirect_uri)
            credential = manager.credential_from_upgrade_response(grant)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http: httpx.AsyncClient,
        *,
        token_url: str = TOKEN_URL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = http
        self._token_url = token_url
        self._clock = clock

    @classmethod
    def from_env(cls, http: httpx.AsyncClient) -> CredentialManager:
        """Build a manager from GOOGLE_OAUTH_CLIENT_ID / GOOGLE_OAUTH_CLIENT_SECRET."""
        return cls(
            client_id=os.environ.get("GOOGLE_OAUTH_CLIENT_ID", ""),
            client_secret=os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET", ""),
            http=http,
        )

    # ── Construction ───────────────────────────────────────────────────────────

    @staticmethod
    def build_credential(
        access_token: str | None,
        refresh_token: str | None,
        expiry_timestamp: float,
    ) -> Credential:
        return Credential(
            access_token=access_token,
            refresh_token=refresh_token,
            expiry_timestamp=expiry_timestamp,
        )

    @staticmethod
    def credential_from_upgrade_response(grant: TokenGrant) -> Credential:
        """Turn a captured token grant into a credential with an absolute expiry."""
        return CredentialManager.build_credential(
            grant.access_token,
            grant.refresh_token,
            grant.captured_at + grant.expires_in,
        )

    # ── Token endpoint ─────────────────────────────────────────────────────────

    async def upgrade_authorization_code(self, code: str, redirect_uri: str) -> TokenGrant:
        """Exchange a one-time authorization code for a durable token pair."""
        payload = await self._post_token({
            "code": code,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        })
        logger.info("Authorization code upgraded to a token pair")
        return self._grant_from_payload(payload)

    async def refresh_credential(self, credential: Credential) -> Credential:
        """Mint a new access token from the credential's refresh token.

        Google usually omits ``refresh_token`` from refresh responses; the
        existing one is carried over in that case.
        """
        if credential is None or not credential.refresh_token:
            raise MissingCredential()

        payload = await self._post_token({
            "refresh_token": credential.refresh_token,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "grant_type": "refresh_token",
        })
        grant = self._grant_from_payload(payload)
        refreshed = self.build_credential(
            grant.access_token,
            grant.refresh_token or credential.refresh_token,
            grant.captured_at + grant.expires_in,
        )
        logger.debug("Access token refreshed; expires at %.0f", refreshed.expiry_timestamp)
        return refreshed

    async def ensure_fresh(
        self,
        credential: Credential,
        leeway: float = _DEFAULT_LEEWAY_SECONDS,
    ) -> Credential:
        """Return `credential` as-is unless it is about to expire, else refresh it."""
        if credential is None or not credential.is_valid:
            raise MissingCredential()
        if not credential.is_expired(self._clock(), leeway):
            return credential
        return await self.refresh_credential(credential)

    # ── Internal ───────────────────────────────────────────────────────────────

    async def _post_token(self, form: dict[str, str]) -> dict[str, Any]:
        logger.debug("POST %s grant_type=%s", self._token_url, form.get("grant_type"))
        try:
            response = await self._http.post(
                self._token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.TransportError as exc:
            raise UpstreamUnreachable(f"Token endpoint unreachable: {exc}") from exc

        if not response.is_success:
            raise UpstreamRejected(
                response.status_code,
                message=response_error_message(response),
                body=response.text,
                response=response,
            )
        return json_object(response)

    def _grant_from_payload(self, payload: Mapping[str, Any]) -> TokenGrant:
        captured_at = self._clock()
        return TokenGrant(
            access_token=payload.get("access_token"),
            refresh_token=payload.get("refresh_token"),
            expires_in=float(payload.get("expires_in", 0) or 0),
            captured_at=captured_at,
            raw={**payload, "captured_at": captured_at},
        )


def credential_from_env() -> Credential | None:
    """Read a stored token pair from GOOGLE_ACCESS_TOKEN / GOOGLE_REFRESH_TOKEN.

    GOOGLE_TOKEN_EXPIRY defaults to 0 so the first use forces a refresh.
    """
    access = os.environ.get("GOOGLE_ACCESS_TOKEN", "")
    refresh = os.environ.get("GOOGLE_REFRESH_TOKEN", "")
    if not access or not refresh:
        return None
    try:
        expiry = float(os.environ.get("GOOGLE_TOKEN_EXPIRY", "0"))
    except ValueError:
        logger.warning("Invalid GOOGLE_TOKEN_EXPIRY; treating token as expired")
        expiry = 0.0
    return CredentialManager.build_credential(access, refresh, expiry)
