"""
Aggregated search across several listing providers.

Providers are queried concurrently. A provider that fails (including retry
exhaustion) is recorded in the outcome and skipped; it never cancels or
hides results from the others.

Search flow: caller -> aggregated_search() -> provider.search() per provider -> dedupe -> polygon filter
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .providers.base import ListingProvider
from .providers.models import SearchQuery
from .providers.normalizers import feature_center, to_feature_collection
from .providers.realtor import RealtorProvider
from .providers.throttling import RateLimiterRegistry
from .settings import get_settings
from .utils.geo_utils import point_in_polygon, ring_from_geometry

logger = logging.getLogger(__name__)


@dataclass
class SearchOutcome:
    """Features from every provider that succeeded, plus the failures."""
    features: List[Dict[str, Any]] = field(default_factory=list)
    failures: Dict[str, BaseException] = field(default_factory=dict)
    provider_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def to_feature_collection(self) -> Dict[str, Any]:
        return to_feature_collection(self.features, meta={
            "providers": self.provider_counts,
            "failed_providers": sorted(self.failures),
        })


def deduplicate(features: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep the first feature for each (source, listing_id) pair, preserving order."""
    seen = set()
    unique = []
    for feature in features:
        props = feature.get("properties", {})
        key = (props.get("source"), props.get("listing_id"))
        if key in seen:
            continue
        seen.add(key)
        unique.append(feature)
    return unique


def filter_by_polygon(features: Iterable[Dict[str, Any]], polygon) -> List[Dict[str, Any]]:
    """Features whose centre lies inside `polygon` (GeoJSON Polygon or ring of [lng, lat])."""
    ring = ring_from_geometry(polygon)
    return [f for f in features if point_in_polygon(feature_center(f), ring)]


async def aggregated_search(
    params: "SearchQuery | Dict[str, Any]",
    providers: Sequence[ListingProvider],
    polygon: Optional[Any] = None,
) -> SearchOutcome:
    """
    Run one search against every provider concurrently.

    Args:
        params: Search parameters, validated once up front
        providers: Providers to query
        polygon: Optional polygon to filter results by; defaults to the query's polygon

    Returns:
        SearchOutcome with merged, deduplicated features and per-provider failures

    Raises:
        SearchValidationError: params are invalid (no provider is called)
    """
    query = SearchQuery.parse(params)
    polygon = polygon if polygon is not None else query.polygon

    logger.info(f"Fetching {query.describe()} from {len(providers)} providers")
    results = await asyncio.gather(
        *(provider.search(query) for provider in providers),
        return_exceptions=True,
    )

    outcome = SearchOutcome()
    merged: List[Dict[str, Any]] = []
    for provider, result in zip(providers, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                # CancelledError / KeyboardInterrupt are not provider failures
                raise result
            logger.error(f"Provider {provider.provider_name} failed: {result}")
            outcome.failures[provider.provider_name] = result
            continue
        outcome.provider_counts[provider.provider_name] = len(result)
        merged.extend(result)

    features = deduplicate(merged)
    if polygon is not None and features:
        features = filter_by_polygon(features, polygon)
    outcome.features = features

    logger.info(
        f"Aggregated {len(features)} features "
        f"({len(outcome.failures)} of {len(providers)} providers failed)"
    )
    return outcome


def build_providers(settings=None, registry: Optional[RateLimiterRegistry] = None) -> List[ListingProvider]:
    """Providers enabled for this deployment, sharing one limiter registry."""
    if settings is None:
        settings = get_settings()
    if registry is None:
        registry = RateLimiterRegistry(settings.realtor_max_calls_per_min)
    return [RealtorProvider.from_settings(settings, registry=registry)]
