"""OAuth token exchange and refresh for Gmail and Outlook connections."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from replyready.core.async_utils import run_async
from replyready.core.config import Settings
from replyready.core.encryption import decrypt_token, encrypt_token
from replyready.core.exceptions import TokenRefreshError
from replyready.core.structured_logging import build_log_context
from replyready.db.enums import ConnectionStatus, MailProvider
from replyready.db.models import Connection

logger = logging.getLogger(__name__)


GMAIL_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GMAIL_TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_SCOPES = [
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/userinfo.email",
]

MICROSOFT_AUTHORITY = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0"
OUTLOOK_SCOPES = ["offline_access", "Mail.ReadWrite", "Mail.Send", "User.Read"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenRefresher:
    """Exchanges authorization codes and keeps connection access tokens fresh."""

    def __init__(self, settings: Settings):
        self.settings = settings

    # ------------------------------------------------------------------
    # Authorization-code flow
    # ------------------------------------------------------------------

    def _redirect_uri(self, provider: MailProvider) -> str:
        if provider == MailProvider.GMAIL:
            return self.settings.GMAIL_REDIRECT_URI
        return self.settings.OUTLOOK_REDIRECT_URI

    def _token_url(self, provider: MailProvider) -> str:
        if provider == MailProvider.GMAIL:
            return GMAIL_TOKEN_URL
        authority = MICROSOFT_AUTHORITY.format(tenant=self.settings.MICROSOFT_TENANT)
        return f"{authority}/token"

    def _client_credentials(self, provider: MailProvider) -> dict[str, str]:
        if provider == MailProvider.GMAIL:
            return {
                "client_id": self.settings.GOOGLE_CLIENT_ID,
                "client_secret": self.settings.GOOGLE_CLIENT_SECRET,
            }
        return {
            "client_id": self.settings.MICROSOFT_CLIENT_ID,
            "client_secret": self.settings.MICROSOFT_CLIENT_SECRET,
        }

    def authorization_url(self, provider: MailProvider, state: str) -> str:
        """Consent URL for connecting a mailbox."""
        credentials = self._client_credentials(provider)
        if provider == MailProvider.GMAIL:
            params = {
                "client_id": credentials["client_id"],
                "redirect_uri": self._redirect_uri(provider),
                "response_type": "code",
                "scope": " ".join(GMAIL_SCOPES),
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
            return f"{GMAIL_AUTH_URL}?{urlencode(params)}"
        params = {
            "client_id": credentials["client_id"],
            "redirect_uri": self._redirect_uri(provider),
            "response_type": "code",
            "response_mode": "query",
            "scope": " ".join(OUTLOOK_SCOPES),
            "state": state,
        }
        authority = MICROSOFT_AUTHORITY.format(tenant=self.settings.MICROSOFT_TENANT)
        return f"{authority}/authorize?{urlencode(params)}"

    async def exchange_code(
        self, provider: MailProvider, code: str, redirect_uri: str
    ) -> dict[str, Any]:
        """Exchange authorization code for tokens.

        The redirect URI must match the one registered at connect time.
        """
        if redirect_uri != self._redirect_uri(provider):
            raise ValueError("redirect_uri does not match the registered redirect URI")
        data = {
            **self._client_credentials(provider),
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        if provider == MailProvider.OUTLOOK:
            data["scope"] = " ".join(OUTLOOK_SCOPES)
        async with httpx.AsyncClient(timeout=self.settings.PROVIDER_TIMEOUT_SECONDS) as client:
            response = await client.post(self._token_url(provider), data=data)
            response.raise_for_status()
            return response.json()

    # ------------------------------------------------------------------
    # Refresh-token flow
    # ------------------------------------------------------------------

    async def refresh(self, provider: MailProvider, refresh_token: str) -> dict[str, Any]:
        """Refresh an access token. Raises TokenRefreshError on any failure."""
        data = {
            **self._client_credentials(provider),
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if provider == MailProvider.OUTLOOK:
            data["scope"] = " ".join(OUTLOOK_SCOPES)
        try:
            async with httpx.AsyncClient(timeout=self.settings.PROVIDER_TIMEOUT_SECONDS) as client:
                response = await client.post(self._token_url(provider), data=data)
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"{provider.value} token refresh failed: {type(exc).__name__}")

        if response.status_code >= 400:
            error_code = None
            try:
                error_code = response.json().get("error")
            except ValueError:
                pass
            raise TokenRefreshError(
                f"{provider.value} token refresh failed: {response.status_code} {error_code or ''}".strip(),
                reconnect_required=error_code == "invalid_grant",
            )
        payload = response.json()
        if not payload.get("access_token"):
            raise TokenRefreshError(f"{provider.value} refresh did not return access_token")
        return payload

    def needs_refresh(self, connection: Connection, *, now: datetime | None = None) -> bool:
        if not connection.access_token_encrypted:
            return True
        if connection.token_expires_at is None:
            return False
        now = now or _now_utc()
        margin = timedelta(seconds=self.settings.TOKEN_REFRESH_MARGIN_SECONDS)
        return _as_utc(connection.token_expires_at) <= now + margin

    def get_access_token(self, db: Session, connection: Connection) -> str:
        """
        Valid access token for a connection, refreshing first when missing or
        within the expiry margin. The refreshed token (and a rotated refresh
        token, if returned) is persisted before it is handed out.
        """
        if not self.needs_refresh(connection):
            token = decrypt_token(self.settings, connection.access_token_encrypted)
            if token:
                return token

        refresh_token = decrypt_token(self.settings, connection.refresh_token_encrypted)
        if not refresh_token:
            self._mark_reconnect(db, connection, "missing_refresh_token")
            raise TokenRefreshError("Connection has no refresh token; reconnect required", reconnect_required=True)

        provider = MailProvider(connection.provider)
        try:
            result = run_async(
                self.refresh(provider, refresh_token),
                timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
            )
        except TokenRefreshError as exc:
            if exc.reconnect_required:
                self._mark_reconnect(db, connection, str(exc))
            raise
        except TimeoutError:
            raise TokenRefreshError(f"{provider.value} token refresh timed out")

        access_token = result["access_token"]
        now = _now_utc()
        connection.access_token_encrypted = encrypt_token(self.settings, access_token)
        expires_in = result.get("expires_in")
        if expires_in:
            connection.token_expires_at = now + timedelta(seconds=int(expires_in))
        rotated = result.get("refresh_token")
        if rotated and rotated != refresh_token:
            connection.refresh_token_encrypted = encrypt_token(self.settings, rotated)
        connection.updated_at = now
        db.add(connection)
        db.commit()

        logger.info(
            "Access token refreshed",
            extra=build_log_context(
                agent_id=connection.agent_id, connection_id=connection.id, provider=provider.value
            ),
        )
        return access_token

    def _mark_reconnect(self, db: Session, connection: Connection, reason: str) -> None:
        connection.status = ConnectionStatus.NEEDS_RECONNECT.value
        connection.last_error = reason[:500]
        connection.updated_at = _now_utc()
        db.add(connection)
        db.commit()
