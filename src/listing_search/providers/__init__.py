"""
- Models: Data structures (SearchQuery, RawListing, CacheEntry, ProviderConfig, ...)
- Base classes: Abstract interfaces
- Throttling: Rate limiting for API calls
- Fetcher: Single-page fetch with retries
- Normalizers: Listing -> GeoJSON Feature
- Pagination: Page walking
- Storage: Cache stores and the query cache
- Realtor: The realtor16 provider
"""

from .models import (
    Locality,
    FetchState,
    SearchQuery,
    RawListing,
    CacheEntry,
    ProviderConfig,
    PAGE_SIZE,
    compute_query_hash,
)

from .base import (
    Clock,
    RateLimiter,
    CacheStore,
    ListingProvider,
)

from .throttling import (
    SystemClock,
    TokenBucket,
    NoOpRateLimiter,
    RateLimiterRegistry,
)

from .fetcher import (
    RetryingFetcher,
    parse_retry_after,
)

from .normalizers import (
    ListingNormalizer,
    parse_price,
    to_feature_collection,
)

from .pagination import (
    PaginationDriver,
    extract_listings,
    total_pages_from,
)

from .storage import (
    InMemoryCacheStore,
    DuckDBCacheStore,
    QueryCache,
)

from .realtor import (
    RealtorProvider,
)

__all__ = [
    # Models
    "Locality",
    "FetchState",
    "SearchQuery",
    "RawListing",
    "CacheEntry",
    "ProviderConfig",
    "PAGE_SIZE",
    "compute_query_hash",
    # Base classes
    "Clock",
    "RateLimiter",
    "CacheStore",
    "ListingProvider",
    # Throttling
    "SystemClock",
    "TokenBucket",
    "NoOpRateLimiter",
    "RateLimiterRegistry",
    # Fetching
    "RetryingFetcher",
    "parse_retry_after",
    # Normalizers
    "ListingNormalizer",
    "parse_price",
    "to_feature_collection",
    # Pagination
    "PaginationDriver",
    "extract_listings",
    "total_pages_from",
    # Storage
    "InMemoryCacheStore",
    "DuckDBCacheStore",
    "QueryCache",
    # Providers
    "RealtorProvider",
]
