"""
Read-only trip records consumed by the positioning engine.

Records are built by the trip store (see ``models.Trip.to_record``) or from
plain dictionaries supplied by a host.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Tuple, Union

from django.utils.dateparse import parse_datetime


class TripStatus(str, Enum):
    QUOTED = "QUOTED"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Phase(str, Enum):
    PICKUP = "PICKUP"
    TRANSIT = "TRANSIT"
    DESTINATION = "DESTINATION"


@dataclass(frozen=True)
class LocationDescriptor:
    """
    A pickup, destination or stop as entered by dispatch.

    Any of the three representations may be missing: explicit coordinates,
    a map deep-link, or free text (which may itself be "lat,lng").
    """

    text: str = ""
    link: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "LocationDescriptor":
        if not data:
            return cls()
        return cls(
            text=str(data.get("text") or ""),
            link=str(data.get("link") or data.get("original_link") or ""),
            lat=_optional_float(data.get("lat")),
            lng=_optional_float(data.get("lng")),
        )


@dataclass(frozen=True)
class TripRecord:
    trip_id: Union[int, str]
    status: str
    trip_date: Union[str, datetime, None]
    pickup: LocationDescriptor = field(default_factory=LocationDescriptor)
    destination: LocationDescriptor = field(default_factory=LocationDescriptor)
    stops: Tuple[LocationDescriptor, ...] = ()
    duration_min: Optional[float] = None
    duration_in_traffic_min: Optional[float] = None
    distance_km: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TripRecord":
        return cls(
            trip_id=data.get("id", data.get("trip_id")),
            status=status_value(data.get("status")),
            trip_date=data.get("trip_date"),
            pickup=LocationDescriptor.from_dict(data.get("pickup")),
            destination=LocationDescriptor.from_dict(data.get("destination")),
            stops=tuple(LocationDescriptor.from_dict(stop) for stop in data.get("stops") or ()),
            duration_min=_optional_float(data.get("duration_min")),
            duration_in_traffic_min=_optional_float(data.get("duration_in_traffic_min")),
            distance_km=_optional_float(data.get("distance_km")),
        )


def parse_trip_start(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a scheduled start into an aware datetime; naive values are UTC.

    Returns None for anything that does not parse.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = parse_datetime(value.strip())
        except ValueError:
            return None
        if parsed is None:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def first_positive(*values: Optional[float]) -> Optional[float]:
    for value in values:
        if value is None or isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if math.isfinite(number) and number > 0:
            return number
    return None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def status_value(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return str(value or TripStatus.QUOTED.value).strip().upper()
