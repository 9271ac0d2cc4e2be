from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from conftest import RecordingHandler, page, too_many
from listing_search.providers.fetcher import RetryingFetcher, parse_retry_after
from listing_search.providers.models import ProviderConfig, SearchQuery
from listing_search.providers.throttling import TokenBucket
from listing_search.utils.errors import (
    ProviderError,
    ProviderNetworkError,
    ProviderRateLimitError,
    RateLimitError,
    UpstreamError,
)

ZIP_QUERY = SearchQuery.parse({"zip": "72601"})


@pytest.fixture
def make_fetcher(config, registry, clock):
    def _make(handler, **overrides) -> RetryingFetcher:
        cfg = ProviderConfig(**{**config.__dict__, **overrides})
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        limiter = registry.get(cfg.name, cfg.max_calls_per_min)
        return RetryingFetcher(cfg, client, limiter, clock=clock, rng=random.Random(1))
    return _make


@pytest.mark.asyncio
async def test_three_429s_then_success_makes_four_attempts(make_fetcher):
    handler = RecordingHandler(too_many(), too_many(), too_many(), page([{"id": "ok"}]))
    fetcher = make_fetcher(handler, max_retries=3)

    body = await fetcher.fetch_page(ZIP_QUERY, 1)

    assert handler.calls == 4
    assert body["properties"] == [{"id": "ok"}]


@pytest.mark.asyncio
async def test_persistent_429_exhausts_retries(make_fetcher):
    handler = RecordingHandler(too_many())
    fetcher = make_fetcher(handler, max_retries=2)

    with pytest.raises(ProviderRateLimitError) as excinfo:
        await fetcher.fetch_page(ZIP_QUERY, 1)

    assert handler.calls == 3
    err = excinfo.value
    assert err.provider_name == "realtor16"
    assert isinstance(err, RateLimitError)
    assert isinstance(err, ProviderError)
    assert "429" in str(err)


@pytest.mark.asyncio
async def test_backoff_without_retry_after_is_exponential_with_jitter(make_fetcher, clock):
    handler = RecordingHandler(too_many(), too_many(), page([]))
    fetcher = make_fetcher(handler, initial_backoff_ms=100, jitter_ms=200)

    await fetcher.fetch_page(ZIP_QUERY, 1)

    first, second = clock.sleeps
    assert 0.1 <= first <= 0.3
    assert 0.2 <= second <= 0.4


@pytest.mark.asyncio
async def test_backoff_is_capped(make_fetcher, clock):
    handler = RecordingHandler(too_many(), too_many(), page([]))
    fetcher = make_fetcher(handler, initial_backoff_ms=20000, jitter_ms=0)

    await fetcher.fetch_page(ZIP_QUERY, 1)

    assert clock.sleeps == [pytest.approx(8.0), pytest.approx(8.0)]


@pytest.mark.asyncio
async def test_retry_after_seconds_header_is_respected(make_fetcher, clock):
    handler = RecordingHandler(too_many({"Retry-After": "1"}), page([]))
    fetcher = make_fetcher(handler)

    await fetcher.fetch_page(ZIP_QUERY, 1)

    assert handler.calls == 2
    assert clock.sleeps == [pytest.approx(1.0)]


@pytest.mark.asyncio
async def test_every_attempt_takes_a_token(make_fetcher, registry):
    handler = RecordingHandler(too_many({"Retry-After": "0"}), too_many({"Retry-After": "0"}), page([]))
    fetcher = make_fetcher(handler)
    limiter = registry.get("realtor16")
    before = limiter.available()

    await fetcher.fetch_page(ZIP_QUERY, 1)

    assert limiter.available() == pytest.approx(before - 3)


@pytest.mark.asyncio
async def test_attempts_wait_on_an_empty_limiter(config, clock):
    handler = RecordingHandler(too_many({"Retry-After": "0"}), page([]))
    limiter = TokenBucket(rate=1.0, capacity=1, clock=clock)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    fetcher = RetryingFetcher(config, client, limiter, clock=clock)

    await fetcher.fetch_page(ZIP_QUERY, 1)

    # Retry-After 0 adds no delay; the second attempt waits a full second for a token
    assert sum(clock.sleeps) == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_other_http_errors_fail_immediately(make_fetcher):
    handler = RecordingHandler(httpx.Response(500, text="boom"))
    fetcher = make_fetcher(handler)

    with pytest.raises(UpstreamError) as excinfo:
        await fetcher.fetch_page(ZIP_QUERY, 1)

    assert handler.calls == 1
    assert excinfo.value.status_code == 500
    assert excinfo.value.body_snippet == "boom"


@pytest.mark.asyncio
async def test_non_json_body_is_an_upstream_error(make_fetcher):
    handler = RecordingHandler(httpx.Response(200, text="<html>"))
    fetcher = make_fetcher(handler)

    with pytest.raises(UpstreamError):
        await fetcher.fetch_page(ZIP_QUERY, 1)


@pytest.mark.asyncio
async def test_network_errors_are_retried(make_fetcher, clock):
    request = httpx.Request("GET", "https://realtor.test")
    handler = RecordingHandler(
        httpx.ConnectError("refused", request=request),
        httpx.ReadTimeout("slow", request=request),
        page([{"id": "a"}]),
    )
    fetcher = make_fetcher(handler, initial_backoff_ms=10)

    body = await fetcher.fetch_page(ZIP_QUERY, 1)

    assert handler.calls == 3
    assert body["properties"] == [{"id": "a"}]
    assert clock.sleeps == [pytest.approx(0.01), pytest.approx(0.02)]


@pytest.mark.asyncio
async def test_network_exhaustion_raises_last_error(make_fetcher):
    request = httpx.Request("GET", "https://realtor.test")
    handler = RecordingHandler(httpx.ConnectError("refused", request=request))
    fetcher = make_fetcher(handler, max_retries=2)

    with pytest.raises(ProviderNetworkError) as excinfo:
        await fetcher.fetch_page(ZIP_QUERY, 1)

    assert handler.calls == 3
    assert isinstance(excinfo.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_request_shape_and_auth_headers(make_fetcher):
    handler = RecordingHandler(page([]))
    fetcher = make_fetcher(handler)

    await fetcher.fetch_page(SearchQuery.parse({"city": "Harrison", "state": "AR"}), 2)

    request = handler.requests[0]
    assert request.url.path == "/properties/city"
    assert request.url.params["city"] == "Harrison"
    assert request.url.params["state_code"] == "AR"
    assert request.url.params["radius"] == "10"
    assert request.url.params["page"] == "2"
    assert request.url.params["limit"] == "40"
    assert request.headers["X-RapidAPI-Key"] == "test-key"
    assert request.headers["X-RapidAPI-Host"] == "realtor16.p.rapidapi.com"


def test_build_request_variants(make_fetcher):
    fetcher = make_fetcher(RecordingHandler(page([])))

    url, params = fetcher.build_request(SearchQuery.parse({"zip": "72601", "radius": 25}), 1)
    assert url == "https://realtor.test/properties/zip"
    assert params["zip_code"] == "72601"
    assert params["radius"] == 25

    url, params = fetcher.build_request(SearchQuery.parse({"bbox": [-93.3, 36.4, -93.1, 36.6]}), 1)
    assert url == "https://realtor.test/properties/coordinates"
    assert params["lat"] == pytest.approx(36.5)
    assert params["lon"] == pytest.approx(-93.2)
    assert isinstance(params["radius"], int) and params["radius"] > 0


def test_parse_retry_after():
    now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    assert parse_retry_after(None) is None
    assert parse_retry_after("") is None
    assert parse_retry_after("garbage") is None
    assert parse_retry_after("3") == 3.0
    assert parse_retry_after("-3") == 0.0
    assert parse_retry_after(format_datetime(now + timedelta(seconds=30), usegmt=True), now=now) == 30.0
    assert parse_retry_after(format_datetime(now - timedelta(seconds=30), usegmt=True), now=now) == 0.0


@pytest.mark.asyncio
async def test_retry_after_http_date(make_fetcher, clock):
    retry_at = datetime.now(timezone.utc) + timedelta(seconds=120)
    handler = RecordingHandler(too_many({"Retry-After": format_datetime(retry_at, usegmt=True)}), page([]))
    fetcher = make_fetcher(handler)

    await fetcher.fetch_page(ZIP_QUERY, 1)

    assert 100 <= clock.sleeps[0] <= 121


@pytest.mark.asyncio
async def test_final_429_raises_without_waiting(make_fetcher, clock, caplog):
    handler = RecordingHandler(too_many({"Retry-After": "5"}))
    fetcher = make_fetcher(handler, max_retries=0)

    with caplog.at_level(logging.WARNING):
        with pytest.raises(ProviderRateLimitError) as excinfo:
            await fetcher.fetch_page(ZIP_QUERY, 1)

    assert handler.calls == 1
    assert clock.sleeps == []
    assert excinfo.value.retry_after == 5.0
    assert "Waiting" not in caplog.text
