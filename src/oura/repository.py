"""Store adapter for the sync engine (PostgreSQL via asyncpg).

All SQL the engine issues lives here.  Components depend on the
``SyncStore`` protocol, so tests can substitute an in-memory store.

Merge semantics: normalized rows are written with
``INSERT ... ON CONFLICT (key) DO UPDATE`` restricted to the columns the
writing resource owns, so two resources sharing a ``daily_summaries`` row
never clobber each other's fields.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Protocol, Sequence

import asyncpg

from src.oura.models import (
    CredentialRecord,
    PendingAuthorization,
    RawArchiveEntry,
    TokenResponse,
)

logger = logging.getLogger("oura_sync.oura.repository")

#: Tables holding OAuth secrets; never readable through the query surface.
CREDENTIAL_TABLES: tuple[str, ...] = ("oura_oauth_tokens", "oura_oauth_states")

#: Normalized tables summarized in ``table_stats``, with the expression giving a row's day.
STATS_TABLES: dict[str, str] = {
    "daily_summaries": "day",
    "heart_rate_samples": "timestamp::date",
    "sleep_episodes": "day",
    "activity_logs": "start_datetime::date",
    "user_tags": "day",
}

#: Tables that carry an ``updated_at`` column refreshed on every merge.
_TOUCHED_TABLES = frozenset({"daily_summaries"})


class SyncStore(Protocol):
    async def get_credential(self, subject_id: str) -> CredentialRecord | None: ...

    async def upsert_credential(
        self, subject_id: str, token: TokenResponse, expires_at: datetime | None
    ) -> None: ...

    async def insert_pending_state(self, pending: PendingAuthorization) -> None: ...

    async def get_pending_state(self, state: str) -> PendingAuthorization | None: ...

    async def delete_pending_state(self, state: str) -> None: ...

    async def upsert_rows(
        self, table: str, key: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> None: ...

    async def save_raw_documents(
        self, subject_id: str, resource: str, entries: Sequence[RawArchiveEntry]
    ) -> None: ...

    async def record_sync_state(
        self, subject_id: str, resource: str, at: datetime, error: str | None = None
    ) -> None: ...

    async def fetch_daily_summaries(
        self, start: date | None = None, end: date | None = None
    ) -> list[dict[str, Any]]: ...

    async def run_read_only(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]: ...

    async def refresh_table_stats(self) -> None: ...

    async def fetch_table_stats(self) -> list[dict[str, Any]]: ...


def quote_ident(name: str) -> str:
    """Quote ``name`` as a PostgreSQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def build_upsert_query(
    table: str,
    columns: Sequence[str],
    conflict_columns: Sequence[str],
    update_columns: Sequence[str] | None = None,
    touch_updated_at: bool = False,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Generates idempotent writes, safe to call multiple times with the same
    data.  On conflict, only ``update_columns`` are overwritten; every other
    column already on the row is preserved.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        touch_updated_at: Also set ``updated_at = NOW()`` on conflict.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    assignments = [f"{col} = EXCLUDED.{col}" for col in update_columns]
    if touch_updated_at:
        assignments.append("updated_at = NOW()")

    if assignments:
        do_clause = f"DO UPDATE SET {', '.join(assignments)}"
    else:
        do_clause = "DO NOTHING"

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )


_UPSERT_CREDENTIAL = """
    INSERT INTO oura_oauth_tokens (user_id, access_token, refresh_token, expires_at, scope, token_type)
    VALUES ($1, $2, $3, $4, $5, $6)
    ON CONFLICT (user_id) DO UPDATE SET
        access_token = EXCLUDED.access_token,
        refresh_token = COALESCE(EXCLUDED.refresh_token, oura_oauth_tokens.refresh_token),
        expires_at = EXCLUDED.expires_at,
        scope = EXCLUDED.scope,
        token_type = EXCLUDED.token_type,
        updated_at = NOW()
"""

_UPSERT_RAW_DOCUMENT = """
    INSERT INTO oura_raw_documents (user_id, resource, document_id, payload_json, day, start_at, end_at, fetched_at)
    VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, NOW())
    ON CONFLICT (user_id, resource, document_id) DO UPDATE SET
        payload_json = EXCLUDED.payload_json,
        day = EXCLUDED.day,
        start_at = EXCLUDED.start_at,
        end_at = EXCLUDED.end_at,
        fetched_at = EXCLUDED.fetched_at
"""

_UPSERT_TABLE_STATS = """
    INSERT INTO table_stats (resource, min_day, max_day, record_count, updated_at)
    SELECT $1, min({day}), max({day}), count(*), NOW() FROM {table}
    ON CONFLICT (resource) DO UPDATE SET
        min_day = EXCLUDED.min_day,
        max_day = EXCLUDED.max_day,
        record_count = EXCLUDED.record_count,
        updated_at = EXCLUDED.updated_at
"""


class PostgresRepository:
    """``SyncStore`` backed by an asyncpg pool.

    ``reader_role`` is the role ad-hoc queries run as (``SET LOCAL ROLE``);
    ``None`` leaves them on the pool's own user.
    """

    def __init__(self, pool: asyncpg.Pool, reader_role: str | None = None) -> None:
        self._pool = pool
        self._reader_role = reader_role

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def get_credential(self, subject_id: str) -> CredentialRecord | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT access_token, refresh_token, expires_at, scope, token_type "
                "FROM oura_oauth_tokens WHERE user_id = $1",
                subject_id,
            )
        if row is None:
            return None
        return CredentialRecord(
            subject_id=subject_id,
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
            scope=row["scope"],
            token_type=row["token_type"],
        )

    async def upsert_credential(
        self, subject_id: str, token: TokenResponse, expires_at: datetime | None
    ) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                _UPSERT_CREDENTIAL,
                subject_id,
                token.access_token,
                token.refresh_token,
                expires_at,
                token.scope,
                token.token_type,
            )

    async def insert_pending_state(self, pending: PendingAuthorization) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO oura_oauth_states (state, user_id, created_at) VALUES ($1, $2, $3)",
                pending.state,
                pending.subject_id,
                pending.created_at,
            )

    async def get_pending_state(self, state: str) -> PendingAuthorization | None:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT user_id, created_at FROM oura_oauth_states WHERE state = $1", state
            )
        if row is None:
            return None
        return PendingAuthorization(
            state=state, subject_id=row["user_id"], created_at=row["created_at"]
        )

    async def delete_pending_state(self, state: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute("DELETE FROM oura_oauth_states WHERE state = $1", state)

    # ------------------------------------------------------------------
    # Normalized records
    # ------------------------------------------------------------------

    async def upsert_rows(
        self, table: str, key: str, columns: Sequence[str], rows: Sequence[Sequence[Any]]
    ) -> None:
        """Merge ``rows`` into ``table`` in one transaction, keyed by ``key``.

        ``columns`` must start with ``key``; only the remaining columns are
        updated on conflict.
        """
        if not rows:
            return
        query = build_upsert_query(
            table, columns, [key], touch_updated_at=table in _TOUCHED_TABLES
        )
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(query, rows)

    async def save_raw_documents(
        self, subject_id: str, resource: str, entries: Sequence[RawArchiveEntry]
    ) -> None:
        if not entries:
            return
        args = [
            (
                subject_id,
                resource,
                e.document_id,
                json.dumps(e.payload, default=str),
                e.day,
                e.start_at,
                e.end_at,
            )
            for e in entries
        ]
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(_UPSERT_RAW_DOCUMENT, args)

    async def record_sync_state(
        self, subject_id: str, resource: str, at: datetime, error: str | None = None
    ) -> None:
        if error is None:
            query = (
                "INSERT INTO oura_sync_state (user_id, resource, last_success_at) VALUES ($1, $2, $3) "
                "ON CONFLICT (user_id, resource) DO UPDATE SET last_success_at = EXCLUDED.last_success_at"
            )
            args: tuple = (subject_id, resource, at)
        else:
            query = (
                "INSERT INTO oura_sync_state (user_id, resource, last_error_at, last_error) "
                "VALUES ($1, $2, $3, $4) "
                "ON CONFLICT (user_id, resource) DO UPDATE SET "
                "last_error_at = EXCLUDED.last_error_at, last_error = EXCLUDED.last_error"
            )
            args = (subject_id, resource, at, error[:500])
        async with self._pool.acquire() as conn:
            await conn.execute(query, *args)

    # ------------------------------------------------------------------
    # Read surface
    # ------------------------------------------------------------------

    async def fetch_daily_summaries(
        self, start: date | None = None, end: date | None = None
    ) -> list[dict[str, Any]]:
        conditions: list[str] = []
        params: list[Any] = []
        if start:
            params.append(start)
            conditions.append(f"day >= ${len(params)}")
        if end:
            params.append(end)
            conditions.append(f"day <= ${len(params)}")
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM daily_summaries {where} ORDER BY day ASC", *params
            )
        return [dict(r) for r in rows]

    async def run_read_only(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Execute an already-validated query inside a READ ONLY transaction.

        With a reader role configured the statement runs as that role, which
        holds no privileges on the credential tables.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction(readonly=True):
                if self._reader_role:
                    await conn.execute(f"SET LOCAL ROLE {quote_ident(self._reader_role)}")
                rows = await conn.fetch(sql, *params)
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Table stats
    # ------------------------------------------------------------------

    async def refresh_table_stats(self) -> None:
        """Recompute the day range and row count of every normalized table."""
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for table, day in STATS_TABLES.items():
                    await conn.execute(_UPSERT_TABLE_STATS.format(table=table, day=day), table)
        logger.debug("Refreshed table stats for %d tables", len(STATS_TABLES))

    async def fetch_table_stats(self) -> list[dict[str, Any]]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT resource, min_day, max_day, record_count, updated_at "
                "FROM table_stats ORDER BY resource"
            )
        return [dict(r) for r in rows]
