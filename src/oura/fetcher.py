"""Windowed, paginated fetching of one Oura resource.

One ``WindowedFetcher.fetch()`` call covers one resource over one window:
it follows ``next_token`` until the cursor runs out or the page cap is hit,
and hands every page to the upsert mapper before requesting the next one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import httpx

from src.oura.config_loader import RetryConfig, SyncConfig
from src.oura.credentials import CredentialManager
from src.oura.errors import RemoteFetchFailed
from src.oura.mapper import UpsertMapper
from src.oura.models import QueryMode, ResourceDescriptor, TimeWindow

logger = logging.getLogger("oura_sync.oura.fetcher")

OURA_API_BASE = "https://api.ouraring.com"

#: Time of day appended to window bounds for datetime-range resources.
WINDOW_TIME_OF_DAY = "T00:00:00Z"

Sleep = Callable[[float], Awaitable[Any]]


def is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def build_query_params(
    resource: ResourceDescriptor,
    window: TimeWindow | None,
    next_token: str | None = None,
) -> dict[str, str]:
    """Encode ``window`` and the pagination cursor the way ``resource`` expects."""
    params: dict[str, str] = {}
    if window is not None:
        if resource.query_mode is QueryMode.DATE:
            params["start_date"] = window.start.isoformat()
            params["end_date"] = window.end.isoformat()
        elif resource.query_mode is QueryMode.DATETIME:
            params["start_datetime"] = window.start.isoformat() + WINDOW_TIME_OF_DAY
            params["end_datetime"] = window.end.isoformat() + WINDOW_TIME_OF_DAY
    if next_token:
        params["next_token"] = next_token
    return params


async def fetch_with_retry(
    client: httpx.AsyncClient,
    url: str,
    params: dict[str, str],
    headers: dict[str, str],
    retry: RetryConfig,
    sleep: Sleep = asyncio.sleep,
) -> tuple[httpx.Response, int]:
    """GET ``url``, retrying 429 and 5xx responses with exponential backoff.

    Other responses return immediately.  When the retry budget is spent the
    last failing response is returned rather than raised.

    Returns:
        ``(response, attempts)`` where attempts is at most ``1 + max_retries``.
    """
    attempt = 0
    while True:
        response = await client.get(url, params=params, headers=headers)
        attempt += 1
        if not is_retryable(response.status_code) or attempt > retry.max_retries:
            return response, attempt
        delay = retry.delay_seconds(attempt)
        logger.warning(
            "Oura %s returned %s; retrying in %.2fs (attempt %d/%d)",
            url, response.status_code, delay, attempt, retry.max_retries,
        )
        await sleep(delay)


class WindowedFetcher:
    """Fetches one resource/window and feeds every page to the mapper."""

    def __init__(
        self,
        credentials: CredentialManager,
        mapper: UpsertMapper,
        config: SyncConfig,
        http_client: httpx.AsyncClient | None = None,
        api_base: str = OURA_API_BASE,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._credentials = credentials
        self._mapper = mapper
        self._config = config
        self._http_client = http_client
        self._api_base = api_base.rstrip("/")
        self._sleep = sleep

    async def fetch(self, resource: ResourceDescriptor, window: TimeWindow | None) -> int:
        """Fetch ``resource`` over ``window`` (``None`` = unwindowed).

        Returns:
            Number of HTTP requests issued, retries included.

        Raises:
            CredentialMissing:   No usable token.
            RemoteFetchFailed:   A page came back non-2xx after retries.
        """
        if self._http_client:
            return await self._fetch_pages(self._http_client, resource, window)
        async with httpx.AsyncClient(timeout=60) as client:
            return await self._fetch_pages(client, resource, window)

    async def _fetch_pages(
        self,
        client: httpx.AsyncClient,
        resource: ResourceDescriptor,
        window: TimeWindow | None,
    ) -> int:
        url = f"{self._api_base}{resource.path}"
        token = await self._credentials.get_access_token()
        headers = {"Authorization": f"Bearer {token}"}

        requests = 0
        pages = 0
        next_token: str | None = None
        while True:
            params = build_query_params(resource, window, next_token)
            response, attempts = await fetch_with_retry(
                client, url, params, headers, self._config.retry, sleep=self._sleep
            )
            requests += attempts

            if not response.is_success:
                excerpt = response.text[:500]
                logger.warning(
                    "Oura fetch failed: resource=%s status=%s body=%s",
                    resource.name, response.status_code, excerpt,
                )
                raise RemoteFetchFailed(
                    resource.name, response.status_code, excerpt, requests=requests
                )

            body = self._json_or_none(response, resource)
            if isinstance(body, dict):
                data = body.get("data")
                if isinstance(data, list):
                    if data:
                        await self._mapper.apply(resource.name, data)
                else:
                    await self._mapper.archive_singleton(resource.name, body)

            if not resource.paginated or not isinstance(body, dict):
                return requests
            cursor = body.get("next_token")
            next_token = cursor if isinstance(cursor, str) and cursor else None
            pages += 1
            if next_token is None:
                return requests
            if pages >= self._config.max_pages:
                logger.warning(
                    "Oura pagination safeguard triggered for %s after %d pages",
                    resource.name, pages,
                )
                return requests

    @staticmethod
    def _json_or_none(response: httpx.Response, resource: ResourceDescriptor) -> Any:
        try:
            return response.json()
        except ValueError:
            logger.warning("Oura %s returned a non-JSON body; skipping page", resource.name)
            return None
