from __future__ import annotations

import math
from typing import Iterable, Sequence

EARTH_RADIUS_KM = 6371.0

# mode -> (road/straight-line factor, average speed km/h)
TRAVEL_PROFILES = {
    "driving": (1.3, 30.0),
    "cycling": (1.25, 15.0),
    "walking": (1.2, 5.0),
}


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Haversine distance in kilometers.
    """
    from math import radians, sin, cos, atan2

    phi1 = radians(lat1)
    phi2 = radians(lat2)
    dphi = radians(lat2 - lat1)
    dlambda = radians(lng2 - lng1)

    a = sin(dphi / 2.0) ** 2 + cos(phi1) * cos(phi2) * sin(dlambda / 2.0) ** 2
    c = 2 * atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def point_in_polygon(lat: float, lng: float, polygon: Sequence[Sequence[float]] | None) -> bool:
    """
    Ray-casting containment test. `polygon` is a list of [lat, lng] vertices,
    implicitly closed. An empty or missing polygon contains every point.
    """
    if not polygon:
        return True
    if len(polygon) < 3:
        return False

    inside = False
    n = len(polygon)
    j = n - 1
    for i in range(n):
        yi, xi = polygon[i][0], polygon[i][1]
        yj, xj = polygon[j][0], polygon[j][1]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside


def estimate_travel(distance_km: float, mode: str = "driving") -> tuple[float, int]:
    """
    Road distance and duration guessed from a straight-line distance.
    Returns (route_distance_km, duration_minutes).
    """
    factor, speed_kmh = TRAVEL_PROFILES.get(mode, TRAVEL_PROFILES["driving"])
    route_km = distance_km * factor
    return route_km, math.ceil(route_km * 60 / speed_kmh)


def minutes_at_speed(distance_km: float, speed_kmh: float) -> int:
    return int(round(distance_km * 60 / speed_kmh))


def _encode_number(num: int) -> str:
    out = []
    while num >= 0x20:
        out.append(chr((0x20 | (num & 0x1F)) + 63))
        num >>= 5
    out.append(chr(num + 63))
    return "".join(out)


def _encode_signed(num: int) -> str:
    sgn = num << 1
    if num < 0:
        sgn = ~sgn
    return _encode_number(sgn)


def encode_polyline(points: Iterable[tuple[float, float]]) -> str:
    """Google encoded polyline for a sequence of (lat, lng) points."""
    result = []
    prev_lat = prev_lng = 0
    for lat, lng in points:
        ilat = int(round(lat * 1e5))
        ilng = int(round(lng * 1e5))
        result.append(_encode_signed(ilat - prev_lat))
        result.append(_encode_signed(ilng - prev_lng))
        prev_lat, prev_lng = ilat, ilng
    return "".join(result)
