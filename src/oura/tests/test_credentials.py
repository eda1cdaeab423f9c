"""Tests for the OAuth credential lifecycle."""

from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from src.oura.errors import (
    CredentialMissing,
    ExpiredState,
    InvalidState,
    OAuthNotConfigured,
    TokenExchangeFailed,
)
from src.oura.models import CredentialRecord, PendingAuthorization


def token_endpoint(body: dict | str, status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    return handler


def form_of(request: httpx.Request) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode()).items()}


# ---------------------------------------------------------------------------
# Token resolution
# ---------------------------------------------------------------------------


class TestGetAccessToken:
    @pytest.mark.asyncio
    async def test_fresh_stored_token_returned_without_http(
        self, credential_factory, store, clock
    ) -> None:
        store.credentials["default"] = CredentialRecord(
            subject_id="default",
            access_token="A",
            refresh_token="R",
            expires_at=clock.now + timedelta(hours=1),
        )
        manager, transport = credential_factory(token_endpoint({}, status=500))
        assert await manager.get_access_token() == "A"
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, credential_factory, store, clock) -> None:
        store.credentials["default"] = CredentialRecord(
            subject_id="default", access_token="A", expires_at=clock.now + timedelta(hours=1)
        )
        manager, _ = credential_factory()
        assert await manager.get_access_token() == "A"
        store.credentials.clear()
        assert await manager.get_access_token() == "A"

    @pytest.mark.asyncio
    async def test_token_inside_margin_is_refreshed(self, credential_factory, store, clock) -> None:
        store.credentials["default"] = CredentialRecord(
            subject_id="default",
            access_token="old",
            refresh_token="R",
            expires_at=clock.now + timedelta(seconds=30),
        )
        manager, transport = credential_factory(
            token_endpoint({"access_token": "new", "refresh_token": "R2", "expires_in": 86400})
        )

        assert await manager.get_access_token() == "new"

        form = form_of(transport.requests[0])
        assert form == {"grant_type": "refresh_token", "refresh_token": "R"}
        assert transport.requests[0].headers["Authorization"].startswith("Basic ")
        saved = store.credentials["default"]
        assert saved.access_token == "new"
        assert saved.refresh_token == "R2"
        assert saved.expires_at == clock.now + timedelta(seconds=86400)

    @pytest.mark.asyncio
    async def test_refresh_without_new_refresh_token_keeps_old_one(
        self, credential_factory, store, clock
    ) -> None:
        store.credentials["default"] = CredentialRecord(
            subject_id="default",
            access_token="old",
            refresh_token="R",
            expires_at=clock.now - timedelta(minutes=5),
        )
        manager, _ = credential_factory(token_endpoint({"access_token": "new", "expires_in": 3600}))

        assert await manager.get_access_token() == "new"
        assert store.credentials["default"].refresh_token == "R"

    @pytest.mark.asyncio
    async def test_refresh_rejected_raises(self, credential_factory, store, clock) -> None:
        store.credentials["default"] = CredentialRecord(
            subject_id="default",
            access_token="old",
            refresh_token="R",
            expires_at=clock.now - timedelta(minutes=5),
        )
        manager, _ = credential_factory(token_endpoint({"error": "invalid_grant"}, status=400))
        with pytest.raises(TokenExchangeFailed) as exc_info:
            await manager.get_access_token()
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_personal_token_used_when_nothing_stored(self, credential_factory) -> None:
        manager, _ = credential_factory(personal_token="PAT")
        assert await manager.get_access_token() == "PAT"

    @pytest.mark.asyncio
    async def test_personal_token_cached_for_a_day(self, credential_factory, clock) -> None:
        manager, _ = credential_factory(personal_token="PAT")
        await manager.get_access_token()
        manager._personal_token = ""
        clock.advance(hours=23)
        assert await manager.get_access_token() == "PAT"
        clock.advance(hours=1)
        with pytest.raises(CredentialMissing):
            await manager.get_access_token()

    @pytest.mark.asyncio
    async def test_nothing_available_raises_credential_missing(self, credential_factory) -> None:
        manager, _ = credential_factory()
        with pytest.raises(CredentialMissing, match="/oauth/start"):
            await manager.get_access_token()

    @pytest.mark.asyncio
    async def test_stale_token_without_refresh_falls_back_to_personal(
        self, credential_factory, store, clock
    ) -> None:
        store.credentials["default"] = CredentialRecord(
            subject_id="default", access_token="old", expires_at=clock.now - timedelta(hours=1)
        )
        manager, _ = credential_factory(personal_token="PAT")
        assert await manager.get_access_token() == "PAT"


# ---------------------------------------------------------------------------
# Authorization flow
# ---------------------------------------------------------------------------


class TestAuthorizationFlow:
    @pytest.mark.asyncio
    async def test_start_authorization_records_state(self, credential_factory, store) -> None:
        manager, _ = credential_factory()
        url = await manager.start_authorization()

        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://cloud.ouraring.com/oauth/authorize?")
        assert query["response_type"] == ["code"]
        assert query["client_id"] == ["cid"]
        assert query["scope"] == ["daily heartrate workout"]
        assert query["redirect_uri"] == ["https://sync.example.com/oauth/callback"]
        state = query["state"][0]
        assert state in store.states

    @pytest.mark.asyncio
    async def test_states_are_unique(self, credential_factory, store) -> None:
        manager, _ = credential_factory()
        await manager.start_authorization()
        await manager.start_authorization()
        assert len(store.states) == 2

    @pytest.mark.asyncio
    async def test_start_without_client_id_leaves_no_state(self, credential_factory, store) -> None:
        manager, _ = credential_factory(client_id="")
        with pytest.raises(OAuthNotConfigured):
            await manager.start_authorization()
        assert store.states == {}

    @pytest.mark.asyncio
    async def test_complete_authorization_stores_credential(
        self, credential_factory, store, clock
    ) -> None:
        manager, transport = credential_factory(
            token_endpoint({"access_token": "A", "refresh_token": "R", "expires_in": 86400})
        )
        url = await manager.start_authorization()
        state = parse_qs(urlparse(url).query)["state"][0]

        await manager.complete_authorization("the-code", state)

        form = form_of(transport.requests[0])
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "the-code"
        assert form["redirect_uri"] == "https://sync.example.com/oauth/callback"
        assert store.credentials["default"].access_token == "A"
        assert store.credentials["default"].refresh_token == "R"
        assert state not in store.states
        assert await manager.get_access_token() == "A"

    @pytest.mark.asyncio
    async def test_state_is_single_use(self, credential_factory) -> None:
        manager, _ = credential_factory(token_endpoint({"access_token": "A", "expires_in": 60}))
        url = await manager.start_authorization()
        state = parse_qs(urlparse(url).query)["state"][0]

        await manager.complete_authorization("code", state)
        with pytest.raises(InvalidState):
            await manager.complete_authorization("code", state)

    @pytest.mark.asyncio
    async def test_unknown_state_rejected(self, credential_factory, store) -> None:
        manager, transport = credential_factory(token_endpoint({"access_token": "A"}))
        with pytest.raises(InvalidState):
            await manager.complete_authorization("code", "forged")
        assert transport.requests == []
        assert store.credentials == {}

    @pytest.mark.asyncio
    async def test_expired_state_rejected_and_deleted(
        self, credential_factory, store, clock
    ) -> None:
        store.states["s"] = PendingAuthorization(
            state="s", subject_id="default", created_at=clock.now - timedelta(minutes=16)
        )
        manager, transport = credential_factory(token_endpoint({"access_token": "A"}))
        with pytest.raises(ExpiredState):
            await manager.complete_authorization("code", "s")
        assert "s" not in store.states
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_state_just_inside_ttl_accepted(self, credential_factory, store, clock) -> None:
        store.states["s"] = PendingAuthorization(
            state="s", subject_id="default", created_at=clock.now - timedelta(minutes=14)
        )
        manager, _ = credential_factory(token_endpoint({"access_token": "A"}))
        await manager.complete_authorization("code", "s")
        assert store.credentials["default"].access_token == "A"

    @pytest.mark.asyncio
    async def test_exchange_failure_consumes_state(self, credential_factory, store, clock) -> None:
        store.states["s"] = PendingAuthorization(state="s", subject_id="default", created_at=clock.now)
        manager, _ = credential_factory(token_endpoint("server exploded", status=500))
        with pytest.raises(TokenExchangeFailed):
            await manager.complete_authorization("code", "s")
        assert "s" not in store.states
        assert store.credentials == {}

    @pytest.mark.asyncio
    async def test_exchange_without_access_token_fails(
        self, credential_factory, store, clock
    ) -> None:
        store.states["s"] = PendingAuthorization(state="s", subject_id="default", created_at=clock.now)
        manager, _ = credential_factory(token_endpoint({"token_type": "Bearer"}))
        with pytest.raises(TokenExchangeFailed, match="access_token"):
            await manager.complete_authorization("code", "s")
