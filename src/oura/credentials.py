"""Oura OAuth2 credential lifecycle (authorization code + refresh).

``CredentialManager.get_access_token()`` resolves a bearer token in this order:

1. the in-process ``TokenCache`` (no I/O),
2. the stored credential row, if its access token is still fresh,
3. a refresh-token exchange, persisted back to the store,
4. the static personal access token, if configured,

and raises ``CredentialMissing`` otherwise.  The cache belongs to one engine
instance; the store stays the source of truth and every path tolerates a
cold cache.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable
from urllib.parse import urlencode

import httpx

from src.oura.config_loader import CredentialConfig
from src.oura.errors import (
    CredentialMissing,
    ExpiredState,
    InvalidState,
    OAuthNotConfigured,
    TokenExchangeFailed,
)
from src.oura.models import PendingAuthorization, TokenResponse, utc_now
from src.oura.repository import SyncStore

logger = logging.getLogger("oura_sync.oura.credentials")

OURA_TOKEN_URL = "https://api.ouraring.com/oauth/token"
OURA_AUTHORIZE_URL = "https://cloud.ouraring.com/oauth/authorize"

DEFAULT_SUBJECT = "default"


# ---------------------------------------------------------------------------
# Token cache
# ---------------------------------------------------------------------------


@dataclass
class _CachedToken:
    access_token: str
    expires_at: datetime


class TokenCache:
    """Process-local access token cache, scoped to one engine instance."""

    def __init__(self) -> None:
        self._entry: _CachedToken | None = None

    def get(self, now: datetime, margin: timedelta) -> str | None:
        if self._entry is None or self._entry.expires_at <= now + margin:
            return None
        return self._entry.access_token

    def put(self, access_token: str, expires_at: datetime) -> None:
        self._entry = _CachedToken(access_token=access_token, expires_at=expires_at)

    def clear(self) -> None:
        self._entry = None


# ---------------------------------------------------------------------------
# Authorization server client
# ---------------------------------------------------------------------------


class OuraOAuthClient:
    """Talks to the Oura authorization server.

    Exchange failures are never retried here; they raise
    ``TokenExchangeFailed`` for the caller to handle.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        scopes: str,
        token_url: str = OURA_TOKEN_URL,
        authorize_url: str = OURA_AUTHORIZE_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        # Accept "+" or whitespace separated scopes
        self._scopes = " ".join(scopes.replace("+", " ").split())
        self._token_url = token_url
        self._authorize_url = authorize_url
        self._http_client = http_client

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        if not self._client_id:
            raise OAuthNotConfigured("Missing OURA_CLIENT_ID")
        params = {
            "response_type": "code",
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "scope": self._scopes,
            "state": state,
        }
        return f"{self._authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        return await self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            action="Token exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            action="Token refresh",
        )

    async def _token_request(self, form: dict[str, str], action: str) -> TokenResponse:
        if not self.configured:
            raise OAuthNotConfigured("Missing OURA_CLIENT_ID/OURA_CLIENT_SECRET")

        auth = httpx.BasicAuth(self._client_id, self._client_secret)
        if self._http_client:
            response = await self._http_client.post(self._token_url, data=form, auth=auth)
        else:
            async with httpx.AsyncClient(timeout=30) as client:
                response = await client.post(self._token_url, data=form, auth=auth)

        if not response.is_success:
            raise TokenExchangeFailed(
                f"{action} failed ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TokenExchangeFailed(f"{action} returned a non-JSON body") from exc

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise TokenExchangeFailed(f"{action} response missing access_token")

        expires_in = body.get("expires_in")
        return TokenResponse(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or None,
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            scope=body.get("scope"),
            token_type=body.get("token_type"),
        )


# ---------------------------------------------------------------------------
# Credential manager
# ---------------------------------------------------------------------------


class CredentialManager:
    """Owns the access-token lifecycle for one subject."""

    def __init__(
        self,
        store: SyncStore,
        oauth: OuraOAuthClient,
        config: CredentialConfig,
        redirect_uri: str,
        cache: TokenCache | None = None,
        personal_token: str = "",
        subject_id: str = DEFAULT_SUBJECT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._config = config
        self._redirect_uri = redirect_uri
        self._cache = cache or TokenCache()
        self._personal_token = personal_token
        self._subject_id = subject_id
        self._clock = clock

    @property
    def subject_id(self) -> str:
        return self._subject_id

    async def get_access_token(self) -> str:
        """Return a usable bearer token.

        Raises:
            CredentialMissing:   Nothing stored, nothing to refresh, no personal token.
            TokenExchangeFailed: The refresh exchange was rejected.
        """
        now = self._clock()
        margin = self._config.expiry_margin

        cached = self._cache.get(now, margin)
        if cached:
            return cached

        record = await self._store.get_credential(self._subject_id)
        if record is not None and record.is_fresh(now, margin):
            # No known expiry: keep it until the personal-token horizon
            expires_at = record.expires_at or now + timedelta(
                seconds=self._config.personal_token_ttl_seconds
            )
            self._cache.put(record.access_token, expires_at)
            return record.access_token

        if record is not None and record.refresh_token:
            token = await self._oauth.refresh(record.refresh_token)
            expires_at = token.expires_at(now)
            await self._store.upsert_credential(self._subject_id, token, expires_at)
            self._cache.put(
                token.access_token,
                expires_at or now + timedelta(seconds=self._config.personal_token_ttl_seconds),
            )
            logger.info("Oura token refreshed for %s", self._subject_id)
            return token.access_token

        if self._personal_token:
            self._cache.put(
                self._personal_token,
                now + timedelta(seconds=self._config.personal_token_ttl_seconds),
            )
            return self._personal_token

        raise CredentialMissing()

    async def start_authorization(self) -> str:
        """Create a single-use state token and return the provider redirect URL."""
        url_state = secrets.token_urlsafe(32)
        # Build the URL first so a missing client id leaves no dangling state row
        url = self._oauth.authorization_url(url_state, self._redirect_uri)
        await self._store.insert_pending_state(
            PendingAuthorization(
                state=url_state, subject_id=self._subject_id, created_at=self._clock()
            )
        )
        return url

    async def complete_authorization(self, code: str, state: str) -> None:
        """Consume ``state`` and store the token pair obtained for ``code``.

        Raises:
            InvalidState:        Unknown (or already consumed) state.
            ExpiredState:        State older than the configured TTL.
            TokenExchangeFailed: The code exchange was rejected.
        """
        pending = await self._store.get_pending_state(state)
        if pending is None:
            raise InvalidState()

        await self._store.delete_pending_state(state)
        now = self._clock()
        if pending.is_expired(now, self._config.state_ttl):
            raise ExpiredState()

        token = await self._oauth.exchange_code(code, self._redirect_uri)
        expires_at = token.expires_at(now)
        await self._store.upsert_credential(pending.subject_id, token, expires_at)
        if pending.subject_id == self._subject_id:
            self._cache.clear()
        logger.info("Oura authorization complete for %s", pending.subject_id)
