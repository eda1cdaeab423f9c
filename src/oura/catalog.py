"""Discover syncable Oura collections from the published OpenAPI document.

Every ``GET /v2/usercollection/<name>`` endpoint without path parameters
becomes a ``ResourceDescriptor``.  The query mode is inferred from the
declared parameters and pagination from a ``next_token`` parameter.

The resulting list is cached for a day.  Cache problems only cost a refetch,
and a failed remote fetch yields an empty catalog, which callers treat as
"nothing to sync this run".
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from src.oura.config_loader import CatalogConfig
from src.oura.models import QueryMode, ResourceDescriptor
from src.services.cache import KeyValueCache

logger = logging.getLogger("oura_sync.oura.catalog")

OURA_OPENAPI_URL = "https://cloud.ouraring.com/v2/static/json/openapi-1.27.json"

_CACHE_KEY = "oura:catalog:v1"


def parse_openapi(document: Any, config: CatalogConfig) -> list[ResourceDescriptor]:
    """Extract resource descriptors from a parsed OpenAPI document.

    Pure function; malformed sections are skipped rather than raised.

    Args:
        document:   Parsed OpenAPI JSON.
        config: Catalog settings (path prefixes, date-window overrides).

    Returns:
        Descriptors sorted by name.
    """
    paths = document.get("paths") if isinstance(document, dict) else None
    if not isinstance(paths, dict):
        return []

    resources: list[ResourceDescriptor] = []
    for path, methods in paths.items():
        if not isinstance(path, str) or not path.startswith(config.path_prefix):
            continue
        if path.startswith(config.sandbox_prefix) or "{" in path:
            continue
        if not isinstance(methods, dict) or not isinstance(methods.get("get"), dict):
            continue

        name = path[len(config.path_prefix):]
        if not name:
            continue

        params = methods["get"].get("parameters")
        param_names = {
            p["name"]
            for p in (params if isinstance(params, list) else [])
            if isinstance(p, dict) and isinstance(p.get("name"), str)
        }

        if {"start_datetime", "end_datetime"} & param_names:
            mode = QueryMode.DATETIME
        elif {"start_date", "end_date"} & param_names:
            mode = QueryMode.DATE
        elif name in config.force_date_window:
            mode = QueryMode.DATE
        else:
            mode = QueryMode.NONE

        resources.append(
            ResourceDescriptor(
                name=name,
                path=path,
                query_mode=mode,
                paginated="next_token" in param_names,
            )
        )

    resources.sort(key=lambda r: r.name)
    return resources


class CatalogLoader:
    """Loads and caches the resource catalog."""

    def __init__(
        self,
        config: CatalogConfig,
        cache: KeyValueCache | None = None,
        openapi_url: str = OURA_OPENAPI_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._cache = cache
        self._openapi_url = openapi_url
        self._http_client = http_client

    async def list_resources(self) -> list[ResourceDescriptor]:
        cached = await self._read_cache()
        if cached is not None:
            return cached

        document = await self._fetch_document()
        if document is None:
            return []

        resources = parse_openapi(document, self._config)
        logger.info("Discovered %d Oura resources", len(resources))
        if resources:
            await self._write_cache(resources)
        return resources

    async def _fetch_document(self) -> Any | None:
        try:
            if self._http_client:
                response = await self._http_client.get(self._openapi_url)
            else:
                async with httpx.AsyncClient(timeout=30) as client:
                    response = await client.get(self._openapi_url)
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch Oura OpenAPI document: %s", exc)
            return None

        if not response.is_success:
            logger.warning("Failed to fetch Oura OpenAPI document: HTTP %s", response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            logger.warning("Oura OpenAPI document is not valid JSON")
            return None

    async def _read_cache(self) -> list[ResourceDescriptor] | None:
        if self._cache is None:
            return None
        try:
            cached = await self._cache.get(_CACHE_KEY)
            if not cached:
                return None
            return [ResourceDescriptor.from_json(item) for item in cached]
        except Exception as exc:
            logger.debug("Catalog cache read failed, refetching: %s", exc)
            return None

    async def _write_cache(self, resources: list[ResourceDescriptor]) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.put(
                _CACHE_KEY, [r.to_json() for r in resources], self._config.ttl_seconds
            )
        except Exception as exc:
            logger.debug("Catalog cache write failed: %s", exc)
