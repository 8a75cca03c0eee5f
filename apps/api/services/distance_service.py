"""
Cycling distance lookups.

Talks to OpenRouteService when a key is configured and falls back to a
straight-line estimate otherwise. A lookup never raises: any provider
failure degrades to the estimate and is logged.

Never call these inside an open transaction; fetch first, then write.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

import requests

from core.cache import cache_key, get_cache, set_cache
from core.config import settings
from services.matching.geo import Coordinates, estimate_cycling_minutes, haversine_km

logger = logging.getLogger(__name__)


@dataclass
class CyclingDistance:
    distance_km: float
    duration_min: float
    source: str  # "cycling" | "haversine"


def straight_line_estimate(origin: Coordinates, destination: Coordinates) -> CyclingDistance:
    km = haversine_km(origin, destination)
    return CyclingDistance(
        distance_km=round(km, 1),
        duration_min=estimate_cycling_minutes(km, settings.CYCLING_SPEED_KMH) or 0.0,
        source="haversine",
    )


def _route_cache_key(origin: Coordinates, destination: Coordinates) -> str:
    return cache_key(
        "route:cycling",
        f"{origin[0]:.5f},{origin[1]:.5f}",
        f"{destination[0]:.5f},{destination[1]:.5f}",
    )


def _fetch_route(origin: Coordinates, destination: Coordinates) -> Optional[CyclingDistance]:
    """One provider call. Returns None on any failure."""
    try:
        r = requests.post(
            settings.OPENROUTESERVICE_URL,
            headers={
                "Authorization": settings.OPENROUTESERVICE_API_KEY,
                "Content-Type": "application/json",
            },
            # ORS takes [lon, lat]
            json={"coordinates": [[origin[1], origin[0]], [destination[1], destination[0]]]},
            timeout=settings.EXTERNAL_API_TIMEOUT,
        )
        if r.status_code != 200:
            logger.warning(f"Routing provider returned {r.status_code}; using straight-line estimate")
            return None
        routes = (r.json() or {}).get("routes") or []
        if not routes:
            logger.warning("Routing provider returned no route; using straight-line estimate")
            return None
        summary = routes[0].get("summary") or {}
        return CyclingDistance(
            distance_km=round(float(summary.get("distance", 0)) / 1000, 1),
            duration_min=round(float(summary.get("duration", 0)) / 60, 1),
            source="cycling",
        )
    except (requests.RequestException, ValueError, TypeError) as e:
        logger.warning(f"Routing lookup failed: {e}; using straight-line estimate")
        return None


def get_cycling_distance(origin: Coordinates, destination: Coordinates) -> CyclingDistance:
    """Distance for one leg. Cached; degrades to haversine."""
    if not settings.OPENROUTESERVICE_API_KEY:
        return straight_line_estimate(origin, destination)

    key = _route_cache_key(origin, destination)
    cached = get_cache(key)
    if cached:
        return CyclingDistance(**cached)

    routed = _fetch_route(origin, destination)
    if routed is None:
        return straight_line_estimate(origin, destination)
    set_cache(key, routed.__dict__)
    return routed


def get_cycling_distances(
    legs: Iterable[Tuple[Coordinates, Coordinates]],
    max_workers: Optional[int] = None,
) -> Dict[Tuple[Coordinates, Coordinates], CyclingDistance]:
    """
    Resolve many legs with a bounded number of concurrent provider calls.

    Duplicate legs are looked up once.
    """
    unique: List[Tuple[Coordinates, Coordinates]] = list(dict.fromkeys(legs))
    if not unique:
        return {}

    workers = max(1, min(max_workers or settings.DISTANCE_LOOKUP_CONCURRENCY, len(unique)))
    results: Dict[Tuple[Coordinates, Coordinates], CyclingDistance] = {}
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for leg, distance in zip(unique, pool.map(lambda l: get_cycling_distance(*l), unique)):
            results[leg] = distance

    routed = sum(1 for d in results.values() if d.source == "cycling")
    logger.info(
        "Cycling distances resolved",
        extra={"extra_fields": {"legs": len(unique), "routed": routed, "estimated": len(unique) - routed}},
    )
    return results
