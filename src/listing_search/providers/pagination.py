"""Walk every page of a provider query."""

import logging
import math
from typing import Any, Dict, List, Optional

from .fetcher import RetryingFetcher
from .models import PAGE_SIZE, SearchQuery
from .normalizers import ListingNormalizer

logger = logging.getLogger(__name__)

# Response keys that may hold the listing array, in priority order
LISTING_KEYS = ("properties", "listings", "results")


def extract_listings(response: Any) -> List[Any]:
    """First non-empty listing array among LISTING_KEYS, else []."""
    if not isinstance(response, dict):
        return []
    for key in LISTING_KEYS:
        value = response.get(key)
        if isinstance(value, list) and value:
            return value
    return []


def total_pages_from(response: Dict[str, Any], page_size: int = PAGE_SIZE) -> int:
    """
    Page count reported by a response.

    Uses total_pages/totalPages when present, else ceil(total / page_size),
    else 1.
    """
    for key in ("total_pages", "totalPages"):
        value = response.get(key)
        if value:
            try:
                return max(1, int(value))
            except (TypeError, ValueError):
                logger.debug(f"Ignoring non-numeric {key}={value!r}")
    total = response.get("total")
    if total:
        try:
            return max(1, math.ceil(float(total) / page_size))
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric total={total!r}")
    return 1


class PaginationDriver:
    """
    Fetch pages 1..N sequentially and accumulate normalized features.

    Stops on the first empty page, when the reported page count is reached,
    or at `max_pages`. Any page that fails after retries aborts the walk and
    the error propagates.
    """

    def __init__(
        self,
        fetcher: RetryingFetcher,
        normalizer: ListingNormalizer,
        page_size: int = PAGE_SIZE,
        max_pages: Optional[int] = None,
    ):
        self.fetcher = fetcher
        self.normalizer = normalizer
        self.page_size = page_size
        self.max_pages = max_pages

    async def collect_all(self, query: SearchQuery) -> List[Dict[str, Any]]:
        features: List[Dict[str, Any]] = []
        page = 1
        total_pages = 1

        while True:
            response = await self.fetcher.fetch_page(query, page)
            listings = extract_listings(response)

            if not listings:
                if page == 1:
                    logger.info(f"No listings found for query {query.describe()}")
                logger.info(f"Page {page} is empty, stopping")
                break

            total_pages = total_pages_from(response, self.page_size)
            logger.info(f"Page {page}/{total_pages}: received {len(listings)} listings")

            features.extend(self.normalizer.transform_many(listings))
            logger.debug(f"Total features collected so far: {len(features)}")

            if page >= total_pages:
                logger.info(f"Reached last page: {page}")
                break
            if self.max_pages is not None and page >= self.max_pages:
                logger.warning(f"Stopping at max_pages={self.max_pages} of reported {total_pages}")
                break
            page += 1

        logger.info(f"Finished collection: {len(features)} features")
        return features
