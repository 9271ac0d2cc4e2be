"""
Listing normalizers.

Turn upstream listing payloads of varying shape into GeoJSON Features with a
canonical set of properties.
"""

import logging
import math
import re
import uuid
from typing import Any, Dict, Iterable, List, Optional

from .models import RawListing

logger = logging.getLogger(__name__)

# Half-width in degrees of the square drawn around each listing (~10m)
POINT_OFFSET_DEG = 0.0001

_RE_NON_NUMERIC = re.compile(r"[^0-9.]")
_RE_LEADING_NUMBER = re.compile(r"^\s*(-?\d+(?:\.\d+)?)")


def _to_float(value: Any) -> float:
    """Parse a coordinate; anything unusable becomes NaN."""
    if value is None or isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def parse_price(value: Any) -> int:
    """
    Parse a price given as a number or a currency-formatted string.

    "$1,250,000" -> 1250000, "249,900.99" -> 249900. Unparseable, missing or
    negative prices become 0.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, str):
        cleaned = _RE_NON_NUMERIC.sub("", value)
        try:
            number = float(cleaned)
        except ValueError:
            return 0
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, math.floor(number))


def _parse_count(value: Any, as_int: bool) -> int | float:
    """Beds/baths: numbers pass through, numeric strings are parsed, everything else is 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else 0
    if isinstance(value, str):
        m = _RE_LEADING_NUMBER.match(value)
        if not m:
            return 0
        number = float(m.group(1))
        return int(number) if as_int else number
    return 0


def square_ring(lon: float, lat: float, offset: float = POINT_OFFSET_DEG) -> List[List[float]]:
    """Closed 5-point ring around (lon, lat); first and last pair are identical."""
    return [
        [lon - offset, lat - offset],
        [lon + offset, lat - offset],
        [lon + offset, lat + offset],
        [lon - offset, lat + offset],
        [lon - offset, lat - offset],
    ]


def feature_center(feature: Dict[str, Any]) -> tuple[float, float]:
    """(lng, lat) of a feature produced by ListingNormalizer."""
    ring = feature["geometry"]["coordinates"][0]
    return (ring[0][0] + ring[2][0]) / 2, (ring[0][1] + ring[2][1]) / 2


def to_feature_collection(features: Iterable[Dict[str, Any]], meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    collection: Dict[str, Any] = {"type": "FeatureCollection", "features": list(features)}
    if meta:
        collection["meta"] = meta
    return collection


class ListingNormalizer:
    """
    Map raw provider listings to GeoJSON Features.

    The transform is best effort: missing coordinates, prices or counts fall
    back to NaN/0 rather than raising, and a listing without coordinates still
    gets a (NaN) polygon so it is never silently dropped here.
    """

    def __init__(self, source: str, offset: float = POINT_OFFSET_DEG):
        """
        Args:
            source: Provider tag written to properties.source
            offset: Half-width of the listing square in degrees
        """
        self.source = source
        self.offset = offset

    def transform(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """
        Normalize a single listing.

        Args:
            raw: Listing mapping as returned by the upstream API

        Returns:
            GeoJSON Feature dict with Polygon geometry and canonical properties
        """
        listing = RawListing.model_validate(raw)

        lat_val = listing.resolve_latitude()
        lon_val = listing.resolve_longitude()
        lat = _to_float(lat_val)
        lon = _to_float(lon_val)

        listing_id = listing.resolve_id()
        if math.isnan(lat) or math.isnan(lon):
            logger.warning(
                f"Missing or invalid coordinates for listing {listing_id}: "
                f"lat={lat_val}, lon={lon_val}"
            )

        properties = dict(raw)
        properties.update({
            "listing_id": str(listing_id) if listing_id is not None else uuid.uuid4().hex[:9],
            "price": parse_price(listing.resolve_price()),
            "beds": _parse_count(listing.beds, as_int=True),
            "baths": _parse_count(listing.baths, as_int=False),
            "source": self.source,
        })

        return {
            "type": "Feature",
            "geometry": {
                "type": "Polygon",
                "coordinates": [square_ring(lon, lat, self.offset)],
            },
            "properties": properties,
        }

    def transform_many(self, items: Iterable[Any]) -> List[Dict[str, Any]]:
        """
        Normalize a page of listings, dropping only the items that fail.

        Args:
            items: Raw listings from one response page

        Returns:
            Features for every listing that could be built, in input order
        """
        features = []
        for item in items:
            try:
                features.append(self.transform(item))
            except Exception as e:
                logger.warning(f"Failed to transform listing from {self.source}: {e}")
        return features
