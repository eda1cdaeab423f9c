"""Oura Ring sync engine.

Pulls every collection the Oura v2 API publishes into Postgres, windowed
and paginated, with idempotent merge writes, and exposes a read-only
query surface over the result.

Core modules:
    credentials   : OAuth2 authorization, refresh and the token cache
    catalog       : Resource discovery from the published OpenAPI document
    fetcher       : Windowed, paginated GETs with retry/backoff
    mapper        : Raw record normalization and merge writes
    orchestrator  : Concurrent per-resource sync with failure isolation
    query_gateway : Read-only SQL validation
    repository    : asyncpg-backed store
    scheduler     : Daily trailing re-sync
    config_loader : Load/validate/hot-reload sync_config.yaml
"""

from src.oura.config_loader import SyncConfig, get_sync_config
from src.oura.errors import (
    CredentialMissing,
    NotReadOnly,
    OuraSyncError,
    RemoteFetchFailed,
)
from src.oura.models import (
    QueryMode,
    ResourceDescriptor,
    ResourceOutcome,
    SyncSummary,
    TimeWindow,
)

__all__ = [
    "CredentialMissing",
    "NotReadOnly",
    "OuraSyncError",
    "QueryMode",
    "RemoteFetchFailed",
    "ResourceDescriptor",
    "ResourceOutcome",
    "SyncConfig",
    "SyncSummary",
    "TimeWindow",
    "get_sync_config",
]
