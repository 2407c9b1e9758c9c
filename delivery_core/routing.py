import logging
import math

import httpx
from typing import Literal
from .config import settings
from .geo import encode_polyline, estimate_travel, haversine_km

logger = logging.getLogger(__name__)

OSRM_PROFILE = Literal["driving", "cycling", "walking"]


class RoutingError(Exception):
    pass


async def call_osrm_route(
    profile: OSRM_PROFILE,
    from_lat: float,
    from_lng: float,
    to_lat: float,
    to_lng: float,
    client: httpx.AsyncClient | None = None,
) -> tuple[float, float]:
    """
    Call OSRM /route API and return (distance_meters, duration_seconds)
    for the given profile.
    """
    base = settings.ROUTING_BASE_URL.rstrip("/")
    # OSRM expects lng,lat order
    url = (
        f"{base}/route/v1/{profile}/"
        f"{from_lng},{from_lat};{to_lng},{to_lat}"
        "?overview=false&alternatives=false&steps=false"
    )

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=10.0) as owned:
                r = await owned.get(url)
        else:
            r = await client.get(url)
    except httpx.HTTPError as exc:
        raise RoutingError(f"OSRM request failed: {exc}") from exc

    if r.status_code != 200:
        raise RoutingError(f"OSRM error: HTTP {r.status_code} - {r.text}")

    data = r.json()
    if data.get("code") != "Ok" or not data.get("routes"):
        raise RoutingError(f"OSRM error: {data.get('message', 'no routes')}")

    route = data["routes"][0]
    distance_m = float(route["distance"])   # meters
    duration_s = float(route["duration"])   # seconds
    return distance_m, duration_s


def fallback_route(
    from_lat: float,
    from_lng: float,
    to_lat: float,
    to_lng: float,
    mode: OSRM_PROFILE = "driving",
) -> dict:
    straight_km = haversine_km(from_lat, from_lng, to_lat, to_lng)
    route_km, minutes = estimate_travel(straight_km, mode)
    return {
        "distance_km": round(route_km, 2),
        "duration_min": minutes,
        "polyline": encode_polyline([(from_lat, from_lng), (to_lat, to_lng)]),
        "provider": "haversine",
    }


async def estimate_route(
    from_lat: float,
    from_lng: float,
    to_lat: float,
    to_lng: float,
    mode: OSRM_PROFILE = "driving",
    client: httpx.AsyncClient | None = None,
) -> dict:
    """
    Real travel distance/time from OSRM, or a haversine-based estimate when
    the provider is unreachable or has no route.
    """
    try:
        distance_m, duration_s = await call_osrm_route(
            mode, from_lat, from_lng, to_lat, to_lng, client=client
        )
    except RoutingError as exc:
        logger.warning("Routing provider failed, falling back to haversine: %s", exc)
        return fallback_route(from_lat, from_lng, to_lat, to_lng, mode)

    return {
        "distance_km": round(distance_m / 1000.0, 2),
        "duration_min": math.ceil(duration_s / 60.0),
        "polyline": None,
        "provider": "osrm",
    }
