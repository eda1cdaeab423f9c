"""Wire the sync engine components for one running instance."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from src.config import Settings
from src.oura.catalog import CatalogLoader
from src.oura.config_loader import SyncConfig, get_sync_config
from src.oura.credentials import CredentialManager, OuraOAuthClient, TokenCache
from src.oura.fetcher import WindowedFetcher
from src.oura.mapper import UpsertMapper
from src.oura.orchestrator import SyncOrchestrator
from src.oura.repository import SyncStore
from src.services.cache import InMemoryTTLCache, KeyValueCache


@dataclass
class SyncEngine:
    """Everything the HTTP layer and the scheduler call into."""

    store: SyncStore
    credentials: CredentialManager
    catalog: CatalogLoader
    mapper: UpsertMapper
    fetcher: WindowedFetcher
    orchestrator: SyncOrchestrator


def build_engine(
    settings: Settings,
    store: SyncStore,
    http_client: httpx.AsyncClient | None = None,
    cache: KeyValueCache | None = None,
    config: SyncConfig | None = None,
) -> SyncEngine:
    """Assemble a ``SyncEngine``.

    The token cache and key-value cache are created here, so each engine
    instance owns its own; nothing is shared through module globals.
    """
    cfg = config or get_sync_config()
    credentials = CredentialManager(
        store=store,
        oauth=OuraOAuthClient(
            client_id=settings.oura_client_id,
            client_secret=settings.oura_client_secret,
            scopes=settings.oura_scopes,
            http_client=http_client,
        ),
        config=cfg.credentials,
        redirect_uri=settings.oura_redirect_uri,
        cache=TokenCache(),
        personal_token=settings.oura_personal_token,
    )
    catalog = CatalogLoader(
        cfg.catalog,
        cache=cache or InMemoryTTLCache(),
        openapi_url=settings.oura_openapi_url,
        http_client=http_client,
    )
    mapper = UpsertMapper(store, subject_id=credentials.subject_id, batch_size=cfg.batch_size)
    fetcher = WindowedFetcher(
        credentials, mapper, cfg, http_client=http_client, api_base=settings.oura_api_base
    )
    orchestrator = SyncOrchestrator(
        catalog, fetcher, cfg, store=store, subject_id=credentials.subject_id
    )
    return SyncEngine(
        store=store,
        credentials=credentials,
        catalog=catalog,
        mapper=mapper,
        fetcher=fetcher,
        orchestrator=orchestrator,
    )
