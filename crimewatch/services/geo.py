# services/geo.py
from __future__ import annotations

import math
from typing import Iterable, Tuple

from shapely.geometry import Point, box as make_bbox

# Earth radius in meters (for Haversine).
EARTH_RADIUS_M = 6_371_000.0


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in meters between two points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlng / 2) ** 2
    # float noise can push `a` a hair above 1.0 for antipodal points
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, a)))


def centroid(points: Iterable[Tuple[float, float]]) -> Tuple[float, float]:
    """Unweighted mean of (lat, lng) pairs."""
    lat_sum = 0.0
    lng_sum = 0.0
    n = 0
    for lat, lng in points:
        lat_sum += lat
        lng_sum += lng
        n += 1
    if n == 0:
        raise ValueError("centroid of an empty point set")
    return lat_sum / n, lng_sum / n


def in_bbox(lat: float, lng: float, min_lat: float, max_lat: float, min_lng: float, max_lng: float) -> bool:
    """True when (lat, lng) lies inside or on the edge of the bounding box."""
    bb = make_bbox(min_lng, min_lat, max_lng, max_lat)
    return bb.covers(Point(lng, lat))  # shapely is (x=lng, y=lat)
