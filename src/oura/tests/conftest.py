"""Shared fixtures for the Oura sync engine tests.

``FakeStore`` keeps everything in dicts and applies the same merge rule as
the Postgres repository: a write touches only the columns it names.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Sequence

import httpx
import pytest

from src.oura.config_loader import SyncConfig, load_sync_config
from src.oura.credentials import CredentialManager, OuraOAuthClient, TokenCache
from src.oura.models import (
    CredentialRecord,
    PendingAuthorization,
    QueryMode,
    RawArchiveEntry,
    ResourceDescriptor,
    TokenResponse,
)

TEST_NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)
TEST_TODAY = date(2026, 2, 23)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class FakeStore:
    def __init__(self) -> None:
        self.credentials: dict[str, CredentialRecord] = {}
        self.states: dict[str, PendingAuthorization] = {}
        self.tables: dict[str, dict[Any, dict[str, Any]]] = {}
        self.raw: dict[tuple[str, str, str], RawArchiveEntry] = {}
        self.sync_state: dict[tuple[str, str], dict[str, Any]] = {}
        self.upsert_calls: list[tuple[str, int]] = []
        self.read_only_calls: list[tuple[str, tuple]] = []
        self.stats: dict[str, dict[str, Any]] = {}
        self.stats_refreshes = 0

    async def get_credential(self, subject_id: str) -> CredentialRecord | None:
        return self.credentials.get(subject_id)

    async def upsert_credential(
        self, subject_id: str, token: TokenResponse, expires_at: datetime | None
    ) -> None:
        previous = self.credentials.get(subject_id)
        refresh = token.refresh_token or (previous.refresh_token if previous else None)
        self.credentials[subject_id] = CredentialRecord(
            subject_id=subject_id,
            access_token=token.access_token,
            refresh_token=refresh,
            expires_at=expires_at,
            scope=token.scope,
            token_type=token.token_type,
        )

    async def insert_pending_state(self, pending: PendingAuthorization) -> None:
        self.states[pending.state] = pending

    async def get_pending_state(self, state: str) -> PendingAuthorization | None:
        return self.states.get(state)

    async def delete_pending_state(self, state: str) -> None:
        self.states.pop(state, None)

    async def upsert_rows(
        self, table: str, key: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> None:
        self.upsert_calls.append((table, len(rows)))
        target = self.tables.setdefault(table, {})
        for row in rows:
            values = dict(zip(columns, row))
            target.setdefault(values[key], {}).update(values)

    async def save_raw_documents(
        self, subject_id: str, resource: str, entries: Sequence[RawArchiveEntry]
    ) -> None:
        for entry in entries:
            self.raw[(subject_id, resource, entry.document_id)] = entry

    async def record_sync_state(
        self, subject_id: str, resource: str, at: datetime, error: str | None = None
    ) -> None:
        state = self.sync_state.setdefault((subject_id, resource), {})
        if error is None:
            state["last_success_at"] = at
        else:
            state["last_error_at"] = at
            state["last_error"] = error

    async def fetch_daily_summaries(
        self, start: date | None = None, end: date | None = None
    ) -> list[dict[str, Any]]:
        rows = self.tables.get("daily_summaries", {})
        return [
            dict(rows[day])
            for day in sorted(rows)
            if (start is None or day >= start) and (end is None or day <= end)
        ]

    async def run_read_only(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        self.read_only_calls.append((sql, tuple(params)))
        return [{"day": TEST_TODAY, "readiness_score": 80}]

    async def refresh_table_stats(self) -> None:
        self.stats_refreshes += 1
        for table, rows in self.tables.items():
            self.stats[table] = {"resource": table, "record_count": len(rows)}

    async def fetch_table_stats(self) -> list[dict[str, Any]]:
        return [self.stats[name] for name in sorted(self.stats)]

    def row(self, table: str, key: Any) -> dict[str, Any]:
        return self.tables[table][key]


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


def make_client(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[httpx.AsyncClient, RecordingTransport]:
    transport = RecordingTransport(handler)
    return httpx.AsyncClient(transport=transport), transport


class FakeClock:
    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """The bundled config, as loaded in production."""
    return load_sync_config()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def credential_factory(store: FakeStore, sync_config: SyncConfig, clock: FakeClock) -> Callable:
    """Build a CredentialManager around ``store`` with an optional mocked token endpoint."""

    def _build(
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
        personal_token: str = "",
        client_id: str = "cid",
        client_secret: str = "csecret",
    ) -> tuple[CredentialManager, RecordingTransport | None]:
        http_client, transport = make_client(handler) if handler else (None, None)
        oauth = OuraOAuthClient(
            client_id=client_id,
            client_secret=client_secret,
            scopes="daily+heartrate  workout",
            http_client=http_client,
        )
        manager = CredentialManager(
            store=store,
            oauth=oauth,
            config=sync_config.credentials,
            redirect_uri="https://sync.example.com/oauth/callback",
            cache=TokenCache(),
            personal_token=personal_token,
            clock=clock,
        )
        return manager, transport

    return _build


def descriptor(name: str, mode: QueryMode = QueryMode.DATE, paginated: bool = True) -> ResourceDescriptor:
    return ResourceDescriptor(
        name=name, path=f"/v2/usercollection/{name}", query_mode=mode, paginated=paginated
    )


@pytest.fixture
def make_descriptor() -> Callable[..., ResourceDescriptor]:
    return descriptor


@pytest.fixture
def fast_config(sync_config: SyncConfig) -> SyncConfig:
    """Bundled config with a tiny page cap for pagination tests."""
    return replace(sync_config, max_pages=5)


@pytest.fixture
def other_store() -> FakeStore:
    """A second, independent store for order-comparison tests."""
    return FakeStore()
