"""
Core data models for the listing provider client.

Search queries and raw listings are pydantic models so that upstream input is
validated (or at least shaped) at the boundary; cache entries and runtime
config are plain dataclasses.
"""

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import StrEnum
from hashlib import sha256
from typing import Any, Optional, Dict, List
import json
import math
import os

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
    model_validator,
)

from ..utils.errors import SearchValidationError
from ..utils.geo_utils import polygon_bbox, ring_from_geometry

PAGE_SIZE = 40


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class Locality(StrEnum):
    """Which upstream endpoint a query maps to."""
    COORDINATES = "coordinates"
    CITY = "city"
    ZIP = "zip"


class FetchState(StrEnum):
    """States of the single-page retry loop."""
    ATTEMPTING = "attempting"
    BACKOFF = "backoff"
    EXHAUSTED = "exhausted"
    SUCCEEDED = "succeeded"


class SearchQuery(BaseModel):
    """
    A spatial search request.

    Exactly one locality is used for the upstream call, picked in priority
    order bbox -> polygon -> city+state -> zip. A polygon without a bbox is
    searched through its bounding box.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    bbox: Optional[tuple[StrictFloat, StrictFloat, StrictFloat, StrictFloat]] = None
    polygon: Optional[Dict[str, Any] | List[List[StrictFloat]]] = None
    city: Optional[StrictStr] = None
    state: Optional[StrictStr] = None
    zip: Optional[StrictStr] = None
    radius: Optional[StrictInt] = Field(default=None, gt=0)

    @field_validator("bbox")
    @classmethod
    def _check_bbox(cls, v):
        if v is None:
            return v
        west, south, east, north = v
        if not (-180 <= west <= 180 and -180 <= east <= 180):
            raise ValueError("bbox longitudes must be within [-180, 180]")
        if not (-90 <= south <= 90 and -90 <= north <= 90):
            raise ValueError("bbox latitudes must be within [-90, 90]")
        if south > north:
            raise ValueError("bbox south must not exceed north")
        return v

    @field_validator("polygon")
    @classmethod
    def _check_polygon(cls, v):
        if v is None:
            return v
        try:
            ring = ring_from_geometry(v)
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"malformed polygon: {e}") from e
        if len(ring) < 4 or any(len(p) < 2 for p in ring):
            raise ValueError("polygon ring needs at least 4 [lng, lat] pairs")
        for point in ring:
            if not all(_is_finite_number(c) for c in point[:2]):
                raise ValueError(f"polygon coordinates must be finite numbers, got {point}")
        return v

    @model_validator(mode="after")
    def _check_locality(self):
        if self.locality is None:
            raise ValueError("query needs one of bbox, polygon, city+state or zip")
        return self

    @classmethod
    def parse(cls, params: "SearchQuery | Dict[str, Any]") -> "SearchQuery":
        """Validate raw params, raising SearchValidationError on any problem."""
        if isinstance(params, cls):
            return params
        try:
            return cls.model_validate(params)
        except ValidationError as e:
            raise SearchValidationError.from_pydantic(e) from e

    @property
    def locality(self) -> Optional[Locality]:
        if self.bbox is not None or self.polygon is not None:
            return Locality.COORDINATES
        if self.city and self.state:
            return Locality.CITY
        if self.zip:
            return Locality.ZIP
        return None

    def search_bbox(self) -> Optional[tuple[float, float, float, float]]:
        """Bounding box used for the coordinates endpoint (explicit bbox wins over the polygon's)."""
        if self.bbox is not None:
            return self.bbox
        if self.polygon is not None:
            return polygon_bbox(ring_from_geometry(self.polygon))
        return None

    def describe(self) -> str:
        """Short label for log lines."""
        if self.bbox is not None:
            return f"bbox {list(self.bbox)}"
        if self.polygon is not None:
            return f"polygon bbox {list(self.search_bbox())}"
        if self.zip:
            return f"zip {self.zip}"
        if self.city:
            return f"{self.city}, {self.state}"
        return "unknown query"


def compute_query_hash(query: SearchQuery) -> str:
    """
    Deterministic SHA-256 of the explicitly set query parameters.

    Keys are sorted before serialization so that insertion order never changes
    the hash:

        compute_query_hash(SearchQuery.parse({"zip": "72601", "radius": 5}))
        == compute_query_hash(SearchQuery.parse({"radius": 5, "zip": "72601"}))
    """
    payload = query.model_dump(mode="json", exclude_none=True)
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return sha256(encoded.encode("utf-8")).hexdigest()


def _first_present(*values: Any) -> Any:
    for v in values:
        if v is not None and v != "":
            return v
    return None


class RawListing(BaseModel):
    """
    Upstream listing with the fields the normalizer knows how to read.

    Every field is optional; anything else the provider sends is kept as an
    extra so it can be merged into the feature properties. Each canonical
    value is resolved from a fixed priority list:

    - latitude:  latitude -> lat -> location.address.coordinate.lat
    - longitude: longitude -> lon -> location.address.coordinate.lon
    - price:     price -> list_price
    - id:        listing_id -> id
    """
    model_config = ConfigDict(extra="allow")

    latitude: Any = None
    longitude: Any = None
    lat: Any = None
    lon: Any = None
    location: Any = None
    price: Any = None
    list_price: Any = None
    listing_id: Any = None
    id: Any = None
    beds: Any = None
    baths: Any = None

    def _nested_coordinate(self) -> Dict[str, Any]:
        loc = self.location
        if not isinstance(loc, dict):
            return {}
        address = loc.get("address")
        if not isinstance(address, dict):
            return {}
        coordinate = address.get("coordinate")
        return coordinate if isinstance(coordinate, dict) else {}

    def resolve_latitude(self) -> Any:
        return _first_present(self.latitude, self.lat, self._nested_coordinate().get("lat"))

    def resolve_longitude(self) -> Any:
        return _first_present(self.longitude, self.lon, self._nested_coordinate().get("lon"))

    def resolve_price(self) -> Any:
        return _first_present(self.price, self.list_price)

    def resolve_id(self) -> Any:
        return _first_present(self.listing_id, self.id)


@dataclass(frozen=True)
class CacheEntry:
    """A stored search result: JSON payload of features keyed by query hash."""
    hash: str
    payload: str
    created_at: datetime

    def age_hours(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds() / 3600

    def features(self) -> List[Dict[str, Any]]:
        return json.loads(self.payload)


@dataclass
class ProviderConfig:
    """Runtime configuration for one upstream provider."""
    name: str = "realtor16"
    api_key: Optional[str] = None
    base_url: str = "https://realtor16.p.rapidapi.com"
    host: str = "realtor16.p.rapidapi.com"
    timeout_s: float = 10.0

    # Caching
    ttl_hours: float = 24

    # Rate limiting / retries
    max_calls_per_min: int = 30
    max_retries: int = 5
    initial_backoff_ms: int = 500
    max_backoff_ms: int = 8000
    jitter_ms: int = 200

    # Pagination
    page_size: int = PAGE_SIZE
    max_pages: int = 50

    @staticmethod
    def _read_key_from_file(path: str) -> Optional[str]:
        try:
            with open(path, "r", encoding="utf8") as fh:
                return fh.read().strip() or None
        except OSError:
            return None

    @classmethod
    def from_settings(cls, settings=None, **overrides: Any) -> "ProviderConfig":
        """
        Build a config from application settings plus explicit overrides.

        Priority for api_key resolution:
        1. explicit `api_key` in `overrides`
        2. `REALTOR_API_KEY` via settings (environment or .env)
        3. file path in env `REALTOR_API_KEY_FILE`
        4. None (the provider warns but still constructs)
        """
        if settings is None:
            from ..settings import get_settings
            settings = get_settings()

        values: Dict[str, Any] = {
            "api_key": settings.realtor_api_key,
            "base_url": settings.realtor_base_url,
            "timeout_s": settings.realtor_timeout_s,
            "ttl_hours": settings.realtor_ttl_hours,
            "max_calls_per_min": settings.realtor_max_calls_per_min,
            "max_retries": settings.realtor_max_retries,
            "initial_backoff_ms": settings.realtor_initial_backoff_ms,
            "max_pages": settings.realtor_max_pages,
        }
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown ProviderConfig fields: {sorted(unknown)}")
        values.update(overrides)

        if not values.get("api_key"):
            key_file = os.getenv("REALTOR_API_KEY_FILE")
            if key_file:
                values["api_key"] = cls._read_key_from_file(key_file)

        return cls(**values)

    def auth_headers(self) -> Dict[str, str]:
        return {
            "X-RapidAPI-Key": self.api_key or "",
            "X-RapidAPI-Host": self.host,
        }
