"""
Pure geometry helpers shared by the estimator, the forecast builder and the
road geometry cache.
"""
from __future__ import annotations

import math
from typing import Iterable, List, Optional, Sequence, Tuple

LatLng = Tuple[float, float]

EARTH_RADIUS_KM = 6371.0
DUPLICATE_TOLERANCE_DEG = 1e-5


def is_valid_point(lat: object, lng: object) -> bool:
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def decode_polyline(encoded: str, precision: int = 5) -> List[LatLng]:
    """
    Decode an encoded polyline string into a list of (lat, lng) coordinates.

    Every coordinate is a zig-zag varint delta from the previous one, written
    in 5-bit chunks offset by 63. Routing providers use precision 5 (1e-5
    degrees); OSRM's polyline6 uses 6.
    """
    coordinates: List[LatLng] = []
    index = 0
    lat = 0
    lng = 0
    factor = 10 ** -precision

    while index < len(encoded):
        lat_change, index = _decode_value(encoded, index)
        lng_change, index = _decode_value(encoded, index)
        lat += lat_change
        lng += lng_change
        coordinates.append((round(lat * factor, precision), round(lng * factor, precision)))

    return coordinates


def _decode_value(encoded: str, index: int) -> Tuple[int, int]:
    result = 0
    shift = 0

    while True:
        if index >= len(encoded):
            raise ValueError("Invalid polyline: buffer exhausted.")
        b = ord(encoded[index]) - 63
        index += 1
        result |= (b & 0x1F) << shift
        shift += 5
        if b < 0x20:
            break

    delta = ~(result >> 1) if (result & 1) else (result >> 1)
    return delta, index


def haversine_km(start: LatLng, end: LatLng) -> float:
    """
    Compute the great-circle distance between two coordinates in kilometres.
    """
    lat1, lng1 = map(math.radians, start)
    lat2, lng2 = map(math.radians, end)
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def segment_lengths_km(route: Sequence[LatLng]) -> List[float]:
    return [haversine_km(start, end) for start, end in zip(route[:-1], route[1:])]


def bearing_deg(start: LatLng, end: LatLng) -> float:
    """
    Compute forward azimuth in degrees from start to end.
    """
    phi1 = math.radians(start[0])
    phi2 = math.radians(end[0])
    d_lambda = math.radians(end[1] - start[1])

    x = math.sin(d_lambda) * math.cos(phi2)
    y = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(
        d_lambda
    )
    bearing = math.degrees(math.atan2(x, y))
    return (bearing + 360) % 360


def interpolate(start: LatLng, end: LatLng, ratio: float) -> LatLng:
    return (
        start[0] + (end[0] - start[0]) * ratio,
        start[1] + (end[1] - start[1]) * ratio,
    )


def same_point(a: LatLng, b: LatLng, tolerance: float = DUPLICATE_TOLERANCE_DEG) -> bool:
    return abs(a[0] - b[0]) <= tolerance and abs(a[1] - b[1]) <= tolerance


def collapse_duplicates(points: Iterable[LatLng]) -> List[LatLng]:
    collapsed: List[LatLng] = []
    for point in points:
        if collapsed and same_point(collapsed[-1], point):
            continue
        collapsed.append(point)
    return collapsed


def nearest_index(path: Sequence[LatLng], target: LatLng) -> int:
    # Squared distance in degree space is enough to rank nearby vertices.
    best_index = 0
    best_distance = float("inf")
    for index, (lat, lng) in enumerate(path):
        distance = (lat - target[0]) ** 2 + (lng - target[1]) ** 2
        if distance < best_distance:
            best_distance = distance
            best_index = index
    return best_index


def bounds(points: Iterable[LatLng]) -> Optional[Tuple[float, float, float, float]]:
    """Return (south, west, north, east) for the given points, or None."""
    lats: List[float] = []
    lngs: List[float] = []
    for lat, lng in points:
        lats.append(lat)
        lngs.append(lng)
    if not lats:
        return None
    return min(lats), min(lngs), max(lats), max(lngs)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
