"""
RapidAPI "realtor16" listings provider.

Public entry point of the provider client: validates a search, serves it
from the query cache when fresh, otherwise walks every page upstream and
caches the result.

Reference: https://rapidapi.com/ (realtor16.p.rapidapi.com)
"""

import logging
import random
from typing import Any, Dict, List, Optional

import httpx

from .base import Clock, ListingProvider
from .fetcher import RetryingFetcher
from .models import ProviderConfig, SearchQuery
from .normalizers import ListingNormalizer
from .pagination import PaginationDriver
from .storage import DuckDBCacheStore, InMemoryCacheStore, QueryCache
from .throttling import RateLimiterRegistry

logger = logging.getLogger(__name__)


class RealtorProvider(ListingProvider):
    """
    Search orchestrator for the realtor16 API.

    validate -> hash -> cache lookup (hit returns with no network I/O) ->
    paginate upstream -> cache non-empty results -> return.

    Retry exhaustion is raised to the caller (ProviderRateLimitError or
    ProviderNetworkError); degrading to "no results" is left to the
    aggregating layer.
    """

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        cache: Optional[QueryCache] = None,
        registry: Optional[RateLimiterRegistry] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the provider.

        Args:
            config: Provider config (defaults to ProviderConfig.from_settings())
            cache: Query cache (defaults to an in-memory store with the config TTL)
            registry: Limiter registry shared with sibling providers (a private one if omitted)
            client: Async HTTP client; one is created and owned if omitted
            clock: Time source for the retry backoff
            rng: Jitter source for the retry backoff
        """
        self.config = config or ProviderConfig.from_settings()
        self.provider_name = self.config.name
        self.cache = cache or QueryCache(InMemoryCacheStore(), ttl_hours=self.config.ttl_hours)
        self.registry = registry if registry is not None else RateLimiterRegistry(self.config.max_calls_per_min)
        self.limiter = self.registry.get(self.provider_name, self.config.max_calls_per_min)

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.config.timeout_s)

        self.fetcher = RetryingFetcher(self.config, self.client, self.limiter, clock=clock, rng=rng)
        self.normalizer = ListingNormalizer(source=self.provider_name)
        self.driver = PaginationDriver(
            self.fetcher,
            self.normalizer,
            page_size=self.config.page_size,
            max_pages=self.config.max_pages,
        )

        if not self.config.api_key:
            logger.warning(f"[{self.provider_name}] REALTOR_API_KEY is not set; upstream calls will be rejected")
        else:
            logger.info(
                f"Initialized {self.provider_name} provider with API key {self.config.api_key[:4]}..., "
                f"retries={self.config.max_retries}, {self.config.max_calls_per_min} calls/min"
            )

    @classmethod
    def from_settings(cls, settings=None, **kwargs: Any) -> "RealtorProvider":
        """Provider with config from settings and a DuckDB-backed cache at settings.cache_db_path."""
        if settings is None:
            from ..settings import get_settings
            settings = get_settings()
        config = ProviderConfig.from_settings(settings)
        cache = QueryCache(DuckDBCacheStore(settings.cache_db_path), ttl_hours=config.ttl_hours)
        return cls(config=config, cache=cache, **kwargs)

    async def search(self, params: "SearchQuery | Dict[str, Any]") -> List[Dict[str, Any]]:
        """
        Search listings, from cache when possible.

        Args:
            params: A SearchQuery or a raw mapping with bbox/polygon/city/state/zip/radius

        Returns:
            Normalized features (possibly empty)

        Raises:
            SearchValidationError: params do not match the query schema (no I/O happens)
            ProviderRateLimitError, ProviderNetworkError, UpstreamError: a page could not be fetched
        """
        try:
            query = SearchQuery.parse(params)
        except Exception as e:
            logger.error(f"[{self.provider_name}] Invalid search parameters: {e}")
            raise

        logger.info(f"[{self.provider_name}] Search {query.describe()} (hash {self.cache.key(query)})")

        cached = await self.cache.lookup(query)
        if cached is not None:
            return cached

        logger.info(f"[{self.provider_name}] Starting API fetch sequence")
        try:
            features = await self.driver.collect_all(query)
        except Exception as e:
            logger.error(f"[{self.provider_name}] Search failed: {e}")
            raise

        await self.cache.store(query, features)
        return features

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
        await self.cache.backend.close()

    async def __aenter__(self) -> "RealtorProvider":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
