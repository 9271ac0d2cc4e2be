"""
Single-page fetch with rate limiting, 429 handling and retries.

The retry loop is an explicit state machine:

    ATTEMPTING --429 / transport error--> BACKOFF --sleep--> ATTEMPTING
    ATTEMPTING --2xx--> SUCCEEDED
    ATTEMPTING --429 with no attempts left--> raise ProviderRateLimitError
    ATTEMPTING --transport error, no attempts left--> EXHAUSTED --> raise ProviderNetworkError
    ATTEMPTING --other non-2xx--> raise UpstreamError (no retry)

Every attempt, retries included, first takes a token from the provider's
limiter.
"""

import logging
import math
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Tuple

import httpx

from .base import Clock, RateLimiter
from .models import FetchState, Locality, ProviderConfig, SearchQuery
from .throttling import SystemClock
from ..utils.errors import (
    ProviderNetworkError,
    ProviderRateLimitError,
    SearchValidationError,
    UpstreamError,
)
from ..utils.geo_utils import bbox_to_center_radius

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_KM = 10


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    Accepts delta-seconds ("120") or an HTTP date. Dates in the past give 0.
    Returns None when the header is missing or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return float(max(0, int(value)))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return float(max(0, math.ceil((retry_at - now).total_seconds())))


class RetryingFetcher:
    """
    Fetch one page of listings from the upstream API.

    Handles rate limiting and retries; knows the three endpoint shapes of the
    listings API (coordinates, city, zip).
    """

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient,
        limiter: RateLimiter,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            config: Provider configuration (base URL, auth, retry budget)
            client: Shared async HTTP client
            limiter: Limiter shared by every caller of this provider
            clock: Sleep/time source for backoff; defaults to SystemClock
            rng: Jitter source; defaults to an unseeded random.Random
        """
        self.config = config
        self.client = client
        self.limiter = limiter
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()

    def build_request(self, query: SearchQuery, page: int) -> Tuple[str, Dict[str, Any]]:
        """
        Map a query to (url, params) for the upstream API.

        Raises:
            SearchValidationError: if the query has no usable locality
        """
        base = self.config.base_url.rstrip("/")
        params: Dict[str, Any] = {"page": page, "limit": self.config.page_size}
        locality = query.locality

        if locality is Locality.COORDINATES:
            lat, lon, radius_km = bbox_to_center_radius(query.search_bbox())
            logger.debug(f"Bbox converted: lat={lat}, lon={lon}, radius={radius_km}km")
            params.update({"lat": lat, "lon": lon, "radius": radius_km})
            return f"{base}/properties/coordinates", params
        if locality is Locality.CITY:
            params.update({
                "city": query.city,
                "state_code": query.state,
                "radius": query.radius or DEFAULT_RADIUS_KM,
            })
            return f"{base}/properties/city", params
        if locality is Locality.ZIP:
            params.update({"zip_code": query.zip, "radius": query.radius or DEFAULT_RADIUS_KM})
            return f"{base}/properties/zip", params

        raise SearchValidationError(f"No usable locality in query: {query.describe()}")

    def _rate_limit_wait_ms(self, response: httpx.Response, attempt: int) -> float:
        retry_after = parse_retry_after(response.headers.get("retry-after"))
        if retry_after is not None:
            wait_ms = retry_after * 1000
            logger.warning(
                f"[{self.config.name}] 429 received. Retry-After: "
                f"{response.headers.get('retry-after')}. Waiting {wait_ms:.0f}ms"
            )
            return wait_ms
        wait_ms = self._backoff_ms(attempt) + self.rng.uniform(0, self.config.jitter_ms)
        logger.warning(
            f"[{self.config.name}] 429 received without Retry-After. "
            f"Exponential backoff: {wait_ms:.0f}ms"
        )
        return wait_ms

    def _backoff_ms(self, attempt: int) -> float:
        return min(self.config.max_backoff_ms, self.config.initial_backoff_ms * (2 ** attempt))

    def _log_quota(self, response: httpx.Response) -> None:
        remaining = response.headers.get("x-ratelimit-remaining")
        if remaining is not None:
            logger.info(f"[{self.config.name}] Quota remaining: {remaining}")

    async def fetch_page(self, query: SearchQuery, page: int) -> Dict[str, Any]:
        """
        Fetch and parse one page.

        Args:
            query: Validated search query
            page: 1-based page number

        Returns:
            Parsed JSON body of the upstream response

        Raises:
            ProviderRateLimitError: 429 on every allowed attempt
            ProviderNetworkError: transport errors on every allowed attempt
            UpstreamError: any other non-2xx status, or a body that is not JSON
        """
        url, params = self.build_request(query, page)
        max_retries = self.config.max_retries

        state = FetchState.ATTEMPTING
        attempt = 0
        delay_ms = 0.0
        last_error: Optional[Exception] = None
        response: Optional[httpx.Response] = None

        while True:
            if state is FetchState.ATTEMPTING:
                await self.limiter.wait_for_token()
                logger.info(f"[{self.config.name}] FETCH page {page} attempt {attempt}: {url}")
                try:
                    response = await self.client.get(
                        url,
                        params=params,
                        headers=self.config.auth_headers(),
                        timeout=self.config.timeout_s,
                    )
                except httpx.TransportError as e:
                    logger.warning(f"[{self.config.name}] Fetch attempt {attempt} failed: {e!r}")
                    last_error = e
                    if attempt >= max_retries:
                        state = FetchState.EXHAUSTED
                    else:
                        delay_ms = self._backoff_ms(attempt)
                        state = FetchState.BACKOFF
                    continue

                self._log_quota(response)

                if response.status_code == 429:
                    if attempt >= max_retries:
                        logger.error(f"[{self.config.name}] 429 received and max retries ({max_retries}) reached")
                        raise ProviderRateLimitError(
                            f"{self.config.name} responded with 429 and max retries ({max_retries}) reached",
                            self.config.name,
                            retry_after=parse_retry_after(response.headers.get("retry-after")),
                        )
                    delay_ms = self._rate_limit_wait_ms(response, attempt)
                    state = FetchState.BACKOFF
                    continue

                if not response.is_success:
                    snippet = response.text[:500]
                    logger.error(f"[{self.config.name}] API error {response.status_code}: {snippet}")
                    raise UpstreamError(
                        f"{self.config.name} responded with {response.status_code}",
                        self.config.name,
                        status_code=response.status_code,
                        body_snippet=snippet,
                    )

                state = FetchState.SUCCEEDED

            elif state is FetchState.BACKOFF:
                await self.clock.sleep(delay_ms / 1000)
                attempt += 1
                state = FetchState.ATTEMPTING

            elif state is FetchState.EXHAUSTED:
                raise ProviderNetworkError(
                    f"Failed to fetch page {page} from {self.config.name} after {max_retries} retries: {last_error!r}",
                    self.config.name,
                ) from last_error

            elif state is FetchState.SUCCEEDED:
                assert response is not None
                try:
                    data = response.json()
                except ValueError as e:
                    raise UpstreamError(
                        f"{self.config.name} returned a non-JSON body",
                        self.config.name,
                        status_code=response.status_code,
                        body_snippet=response.text[:500],
                    ) from e
                logger.debug(f"[{self.config.name}] Page {page} received")
                return data
