from __future__ import annotations

import asyncio
import random
import sys
from pathlib import Path

import httpx
import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


from listing_search.providers.base import Clock
from listing_search.providers.models import ProviderConfig
from listing_search.providers.realtor import RealtorProvider
from listing_search.providers.storage import InMemoryCacheStore, QueryCache
from listing_search.providers.throttling import RateLimiterRegistry


class FakeClock(Clock):
    """Virtual time: sleeping just advances the clock."""

    def __init__(self, start: float = 1000.0):
        self.t = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += max(0.0, seconds)
        # Still yield so other tasks get to run
        await asyncio.sleep(0)


class RecordingHandler:
    """httpx.MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.url}")
        nxt = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(nxt, Exception):
            raise nxt
        # Fresh copy: the last response may be replayed several times
        return httpx.Response(nxt.status_code, headers=nxt.headers, content=nxt.content)

    @property
    def calls(self) -> int:
        return len(self.requests)


def page(listings, **extra) -> httpx.Response:
    return httpx.Response(200, json={"properties": listings, **extra})


def too_many(headers=None) -> httpx.Response:
    return httpx.Response(429, headers=headers or {})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    reg = RateLimiterRegistry(max_calls_per_min=600, clock=clock)
    yield reg
    reg.reset()


@pytest.fixture
def config():
    return ProviderConfig(
        api_key="test-key",
        base_url="https://realtor.test",
        max_retries=3,
        initial_backoff_ms=10,
        max_calls_per_min=600,
    )


@pytest.fixture
def cache_store():
    return InMemoryCacheStore()


@pytest.fixture
def make_provider(config, cache_store, registry, clock):
    """Build a RealtorProvider wired to a RecordingHandler."""
    def _make(handler, **overrides) -> RealtorProvider:
        cfg = ProviderConfig(**{**config.__dict__, **overrides})
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return RealtorProvider(
            config=cfg,
            cache=QueryCache(cache_store, ttl_hours=cfg.ttl_hours),
            registry=registry,
            client=client,
            clock=clock,
            rng=random.Random(7),
        )
    return _make
