"""
Abstract base classes for the listing provider client.

These define the interfaces that all concrete implementations must follow.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .models import CacheEntry, SearchQuery


class Clock(ABC):
    """
    Source of time and suspension for the limiter and retry loop.

    Injected everywhere a delay happens so tests can run against virtual time.
    """

    @abstractmethod
    def now(self) -> float:
        """Monotonic time in seconds."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the current task without blocking the event loop."""
        pass


class RateLimiter(ABC):
    """
    Abstract base for rate limiters.

    Rate limiters control the rate at which requests are made,
    useful for respecting API rate limits.
    """

    @abstractmethod
    async def wait_for_token(self) -> None:
        """Suspend until it's safe to make another request."""
        pass

    @abstractmethod
    async def acquire(self, count: int = 1) -> None:
        """
        Acquire one or more request slots.

        Args:
            count: Number of requests to acquire (for bulk operations)
        """
        pass


class CacheStore(ABC):
    """
    Abstract base for the key/value store behind the query cache.

    Entries are addressed by query hash and carry their creation timestamp.
    Implementations raise CacheError when the store itself is unavailable.
    """

    @abstractmethod
    async def find_by_hash(self, hash: str) -> Optional[CacheEntry]:
        """Return the entry for `hash`, or None."""
        pass

    @abstractmethod
    async def upsert_by_hash(self, hash: str, payload: str) -> None:
        """Insert or overwrite the entry for `hash` with a fresh timestamp."""
        pass

    @abstractmethod
    async def delete_by_hash(self, hash: str) -> None:
        """Remove the entry for `hash` if present."""
        pass

    async def close(self) -> None:
        """Close connections/cleanup resources."""
        pass


class ListingProvider(ABC):
    """
    Abstract base for upstream listing providers.

    Providers turn a search query into a list of GeoJSON Feature dicts.
    """

    provider_name: str

    @abstractmethod
    async def search(self, params: "SearchQuery | Dict[str, Any]") -> List[Dict[str, Any]]:
        """
        Run a search against the provider.

        Args:
            params: A SearchQuery or the raw parameter mapping to validate

        Returns:
            List of normalized listing features
        """
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        pass
