"""
Coordinate resolution for trip locations.

A location may carry explicit coordinates, a map deep-link that embeds a
coordinate pair, or free text that is itself a "lat,lng" pair. The first
representation that yields a valid point wins; anything else is absent.
"""
from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import unquote

from .geometry import LatLng, is_valid_point
from .trips import LocationDescriptor, TripRecord

COORD_FRAGMENT = r"(-?\d{1,3}(?:\.\d+)?)"

# Tried in order against a deep-link.
LINK_PATTERNS = (
    re.compile(r"@" + COORD_FRAGMENT + r"," + COORD_FRAGMENT),
    re.compile(r"[?&]q=" + COORD_FRAGMENT + r"," + COORD_FRAGMENT),
    re.compile(r"search/" + COORD_FRAGMENT + r"," + COORD_FRAGMENT),
    re.compile(r"[?&]ll=" + COORD_FRAGMENT + r"," + COORD_FRAGMENT),
)

TEXT_PATTERN = re.compile(
    r"^\s*(?:geo:|gps:)?\s*" + COORD_FRAGMENT + r"\s*[,;/\s]\s*" + COORD_FRAGMENT + r"(?:\s|$)",
    re.IGNORECASE,
)


def _to_point(lat_raw: str, lng_raw: str) -> Optional[LatLng]:
    try:
        lat = float(lat_raw)
        lng = float(lng_raw)
    except (TypeError, ValueError):
        return None
    if not is_valid_point(lat, lng):
        return None
    return lat, lng


def parse_map_link(link: str) -> Optional[LatLng]:
    """
    Extract coordinates from a map deep-link.

    Supports ``@lat,lng``, ``?q=lat,lng``, ``search/lat,lng`` and
    ``?ll=lat,lng``. Short links that need a redirect are not followed.
    """
    if not link:
        return None
    trimmed = unquote(link.strip())
    for pattern in LINK_PATTERNS:
        match = pattern.search(trimmed)
        if match:
            point = _to_point(match.group(1), match.group(2))
            if point is not None:
                return point
    return None


def parse_lat_lng_text(text: str) -> Optional[LatLng]:
    if not text:
        return None
    match = TEXT_PATTERN.match(text)
    if not match:
        return None
    return _to_point(match.group(1), match.group(2))


def resolve(descriptor: Optional[LocationDescriptor]) -> Optional[LatLng]:
    """Resolve a location descriptor to a point, or None when it is absent."""
    if descriptor is None:
        return None
    if descriptor.lat is not None and descriptor.lng is not None:
        if is_valid_point(descriptor.lat, descriptor.lng):
            return float(descriptor.lat), float(descriptor.lng)
    point = parse_map_link(descriptor.link)
    if point is not None:
        return point
    return parse_lat_lng_text(descriptor.text)


def assemble_route(trip: TripRecord) -> List[LatLng]:
    """Pickup, stops and destination in travel order, unresolved ones dropped."""
    candidates = [trip.pickup, *trip.stops, trip.destination]
    route: List[LatLng] = []
    for descriptor in candidates:
        point = resolve(descriptor)
        if point is not None:
            route.append(point)
    return route
