"""
Small spatial helpers used by the provider client.

Coordinates follow GeoJSON order: (lng, lat).
"""

from math import radians, sin, cos, sqrt, atan2, ceil
from typing import Iterable, Sequence

from shapely.geometry import Point, Polygon

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: tuple[float, float], b: tuple[float, float]) -> float:
    """
    Great-circle distance between two (lat, lon) points.

    Args:
        a: (lat, lon) of the first point
        b: (lat, lon) of the second point

    Returns:
        Distance in kilometers
    """
    lat1, lon1 = radians(a[0]), radians(a[1])
    lat2, lon2 = radians(b[0]), radians(b[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    h = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * atan2(sqrt(h), sqrt(1 - h))


def bbox_to_center_radius(bbox: Sequence[float]) -> tuple[float, float, int]:
    """
    Convert a (west, south, east, north) bounding box to a center and radius.

    The radius is half the diagonal, rounded up to a whole kilometer since the
    upstream API only accepts integer radii.

    Returns:
        Tuple of (lat, lon, radius_km)
    """
    west, south, east, north = bbox
    center_lat = (south + north) / 2
    center_lon = (west + east) / 2
    diagonal = haversine_km((south, west), (north, east))
    return center_lat, center_lon, ceil(diagonal / 2)


def polygon_bbox(ring: Iterable[Sequence[float]]) -> tuple[float, float, float, float]:
    """Bounding box (west, south, east, north) of a ring of (lng, lat) pairs."""
    return tuple(Polygon([(p[0], p[1]) for p in ring]).bounds)  # type: ignore[return-value]


def point_in_polygon(point: Sequence[float], ring: Iterable[Sequence[float]]) -> bool:
    """Check whether a (lng, lat) point lies strictly inside a ring of (lng, lat) pairs."""
    return Polygon([(p[0], p[1]) for p in ring]).contains(Point(point[0], point[1]))


def ring_from_geometry(geometry) -> list[list[float]]:
    """
    Extract the outer ring from a GeoJSON Polygon mapping or pass through a plain ring.

    Accepts either {"type": "Polygon", "coordinates": [[...]]} or [[lng, lat], ...].
    """
    if isinstance(geometry, dict):
        if geometry.get("type") != "Polygon":
            raise ValueError(f"Unsupported geometry type: {geometry.get('type')}")
        return [list(p) for p in geometry["coordinates"][0]]
    return [list(p) for p in geometry]
