"""
Straight-line geometry used inside the matching core.

Pure functions only; routing-provider lookups live in distance_service.
"""

import math
from typing import Optional, Tuple

EARTH_RADIUS_KM = 6371.0

Coordinates = Tuple[float, float]


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two (lat, lon) points in kilometres."""
    lat1, lon1 = a
    lat2, lon2 = b
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def estimate_cycling_minutes(distance_km: Optional[float], speed_kmh: float) -> Optional[float]:
    if distance_km is None or speed_kmh <= 0:
        return None
    return round(distance_km / speed_kmh * 60, 1)


def straight_line_km(a: Optional[Coordinates], b: Optional[Coordinates]) -> Optional[float]:
    """Rounded haversine distance, or None when either end has no coordinates."""
    if a is None or b is None:
        return None
    return round(haversine_km(a, b), 2)
