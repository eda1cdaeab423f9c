"""Tests for windowed, paginated fetching with retry."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import httpx
import pytest

from src.oura.config_loader import SyncConfig
from src.oura.errors import CredentialMissing, RemoteFetchFailed
from src.oura.fetcher import WindowedFetcher, build_query_params, fetch_with_retry, is_retryable
from src.oura.models import QueryMode, TimeWindow

WINDOW = TimeWindow(start=date(2026, 2, 20), end=date(2026, 2, 23))


def fetcher_for(handler, config: SyncConfig, credential_factory, mapper=None, sleep=None):
    manager, _ = credential_factory(personal_token="PAT")
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    mapper = mapper or AsyncMock()
    return (
        WindowedFetcher(
            manager,
            mapper,
            config,
            http_client=client,
            sleep=sleep or AsyncMock(),
        ),
        mapper,
    )


class TestQueryParams:
    def test_date_window(self, make_descriptor) -> None:
        params = build_query_params(make_descriptor("daily_sleep"), WINDOW)
        assert params == {"start_date": "2026-02-20", "end_date": "2026-02-23"}

    def test_datetime_window_uses_midnight_utc(self, make_descriptor) -> None:
        params = build_query_params(make_descriptor("heartrate", QueryMode.DATETIME), WINDOW)
        assert params == {
            "start_datetime": "2026-02-20T00:00:00Z",
            "end_datetime": "2026-02-23T00:00:00Z",
        }

    def test_unwindowed_only_carries_cursor(self, make_descriptor) -> None:
        params = build_query_params(make_descriptor("personal_info", QueryMode.NONE), None, "abc")
        assert params == {"next_token": "abc"}

    @pytest.mark.parametrize("status,expected", [(429, True), (500, True), (503, True), (404, False), (401, False), (200, False)])
    def test_is_retryable(self, status: int, expected: bool) -> None:
        assert is_retryable(status) is expected


class TestFetchWithRetry:
    @pytest.mark.asyncio
    async def test_persistent_503_makes_four_attempts(self, sync_config: SyncConfig) -> None:
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(503, text="unavailable")

        sleep = AsyncMock()
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        response, count = await fetch_with_retry(
            client, "https://api.example.com/x", {}, {}, sync_config.retry, sleep=sleep
        )

        assert response.status_code == 503
        assert count == 4
        assert len(attempts) == 4
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.25, 0.5, 1.0])

    @pytest.mark.asyncio
    async def test_recovers_after_429(self, sync_config: SyncConfig) -> None:
        statuses = iter([429, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses), json={"data": []})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        response, count = await fetch_with_retry(
            client, "https://api.example.com/x", {}, {}, sync_config.retry, sleep=AsyncMock()
        )
        assert response.status_code == 200
        assert count == 2

    @pytest.mark.asyncio
    async def test_404_not_retried(self, sync_config: SyncConfig) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404)))
        sleep = AsyncMock()
        response, count = await fetch_with_retry(
            client, "https://api.example.com/x", {}, {}, sync_config.retry, sleep=sleep
        )
        assert response.status_code == 404
        assert count == 1
        sleep.assert_not_awaited()


class TestWindowedFetcher:
    @pytest.mark.asyncio
    async def test_single_page_sends_bearer_and_window(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"data": [{"day": "2026-02-23", "score": 80}], "next_token": None})

        fetcher, mapper = fetcher_for(handler, sync_config, credential_factory)
        requests = await fetcher.fetch(make_descriptor("daily_sleep"), WINDOW)

        assert requests == 1
        assert seen[0].url.path == "/v2/usercollection/daily_sleep"
        assert seen[0].url.params["start_date"] == "2026-02-20"
        assert seen[0].headers["Authorization"] == "Bearer PAT"
        mapper.apply.assert_awaited_once_with("daily_sleep", [{"day": "2026-02-23", "score": 80}])

    @pytest.mark.asyncio
    async def test_follows_next_token(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        pages = {
            None: {"data": [{"id": "1"}], "next_token": "p2"},
            "p2": {"data": [{"id": "2"}], "next_token": "p3"},
            "p3": {"data": [{"id": "3"}], "next_token": None},
        }

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=pages[request.url.params.get("next_token")])

        fetcher, mapper = fetcher_for(handler, sync_config, credential_factory)
        requests = await fetcher.fetch(make_descriptor("workout"), WINDOW)

        assert requests == 3
        assert [c.args[1] for c in mapper.apply.await_args_list] == [[{"id": "1"}], [{"id": "2"}], [{"id": "3"}]]

    @pytest.mark.asyncio
    async def test_page_cap_stops_endless_cursor(
        self, fast_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [], "next_token": "again"})

        fetcher, _ = fetcher_for(handler, fast_config, credential_factory)
        assert await fetcher.fetch(make_descriptor("tag"), WINDOW) == fast_config.max_pages

    @pytest.mark.asyncio
    async def test_bundled_page_cap_is_1000_requests(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [], "next_token": "again"})

        fetcher, _ = fetcher_for(handler, sync_config, credential_factory)
        assert await fetcher.fetch(make_descriptor("tag"), WINDOW) == 1000

    @pytest.mark.asyncio
    async def test_empty_page_not_mapped(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        fetcher, mapper = fetcher_for(
            lambda r: httpx.Response(200, json={"data": []}), sync_config, credential_factory
        )
        await fetcher.fetch(make_descriptor("daily_sleep"), WINDOW)
        mapper.apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bare_object_archived(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        payload = {"id": "u1", "age": 40, "email": "a@example.com"}
        fetcher, mapper = fetcher_for(
            lambda r: httpx.Response(200, json=payload), sync_config, credential_factory
        )
        requests = await fetcher.fetch(make_descriptor("personal_info", QueryMode.NONE, paginated=False), None)
        assert requests == 1
        mapper.archive_singleton.assert_awaited_once_with("personal_info", payload)

    @pytest.mark.asyncio
    async def test_non_json_page_skipped(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        fetcher, mapper = fetcher_for(
            lambda r: httpx.Response(200, text="not json"), sync_config, credential_factory
        )
        assert await fetcher.fetch(make_descriptor("daily_sleep"), WINDOW) == 1
        mapper.apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_raises_with_request_count(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        fetcher, mapper = fetcher_for(
            lambda r: httpx.Response(503, text="down"), sync_config, credential_factory
        )
        with pytest.raises(RemoteFetchFailed) as exc_info:
            await fetcher.fetch(make_descriptor("daily_sleep"), WINDOW)

        assert exc_info.value.status_code == 503
        assert exc_info.value.requests == 4
        assert exc_info.value.body_excerpt == "down"
        mapper.apply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_client_error_fails_after_one_request(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        fetcher, _ = fetcher_for(lambda r: httpx.Response(401), sync_config, credential_factory)
        with pytest.raises(RemoteFetchFailed) as exc_info:
            await fetcher.fetch(make_descriptor("daily_sleep"), WINDOW)
        assert exc_info.value.requests == 1

    @pytest.mark.asyncio
    async def test_missing_credential_propagates(
        self, sync_config: SyncConfig, credential_factory, make_descriptor
    ) -> None:
        manager, _ = credential_factory()
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        fetcher = WindowedFetcher(manager, AsyncMock(), sync_config, http_client=client)
        with pytest.raises(CredentialMissing):
            await fetcher.fetch(make_descriptor("daily_sleep"), WINDOW)
