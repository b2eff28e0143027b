"""
Road-following geometry for trip routes.

Routes are requested from the routing provider in the background and memoised
per (trip, status, route) key. Concurrent requests for the same key are
coalesced, and an authorization failure disables fetching for the rest of the
session so every trip falls back to straight-line forecast paths.
"""
from __future__ import annotations

import json
import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Hashable, List, Optional, Sequence, Set, Tuple

import requests
from django.conf import settings

from .geometry import LatLng, decode_polyline
from .trips import TripRecord, parse_trip_start, status_value

LOGGER = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://routes.googleapis.com/directions/v2:computeRoutes"
FIELD_MASK = (
    "routes.distanceMeters,routes.duration,routes.staticDuration,"
    "routes.polyline.encodedPolyline"
)
AUTH_MARKERS = ("PERMISSION_DENIED", "REQUEST_DENIED", "API_KEY", "UNAUTHENTICATED")
DEPARTURE_MIN_LEAD = timedelta(minutes=1)

DEFAULT_ROUTING_CONFIG: Dict[str, Any] = {
    "api_key": "",
    "endpoint": DEFAULT_ENDPOINT,
    "timeout_seconds": 8,
    "max_workers": 4,
    "travel_mode": "DRIVE",
    "routing_preference": "TRAFFIC_AWARE",
}

CacheKey = Tuple[str, str, Tuple[LatLng, ...]]


class RoutingError(Exception):
    """The routing provider could not produce a route."""


class RoutingAuthError(RoutingError):
    """The routing provider rejected the configured credential."""


@dataclass(frozen=True)
class RoadGeometry:
    points: Tuple[LatLng, ...]
    distance_km: float = 0.0
    duration_in_traffic_min: int = 0
    baseline_duration_min: int = 0
    traffic_index: int = 0


def routing_config() -> Dict[str, Any]:
    config = dict(DEFAULT_ROUTING_CONFIG)
    config.update(getattr(settings, "ROUTING_CONFIG", None) or {})
    return config


def parse_duration_minutes(value: Optional[str]) -> int:
    """Convert a provider duration such as ``"754s"`` to whole minutes, rounded up."""
    if not value:
        return 0
    try:
        seconds = float(str(value).rstrip("s"))
    except ValueError:
        return 0
    if not math.isfinite(seconds) or seconds <= 0:
        return 0
    return int(math.ceil(seconds / 60))


def compute_traffic_index(duration_in_traffic_min: float, baseline_duration_min: float) -> int:
    """
    Score congestion from 0 (free flow) to 100 (2.5x the baseline or worse).
    """
    if not (math.isfinite(duration_in_traffic_min) and math.isfinite(baseline_duration_min)):
        return 0
    if baseline_duration_min <= 0:
        return 0
    ratio = duration_in_traffic_min / baseline_duration_min
    normalized = ((min(max(ratio, 1.0), 2.5) - 1.0) / 1.5) * 100
    return max(0, min(100, int(round(normalized))))


def safe_departure_time(start: Optional[datetime], now: datetime) -> datetime:
    earliest = now + DEPARTURE_MIN_LEAD
    if start is None or start <= earliest:
        return earliest
    return start


def _lat_lng(point: LatLng) -> Dict[str, Any]:
    return {"location": {"latLng": {"latitude": point[0], "longitude": point[1]}}}


class RoutesClient:
    """
    Talks to the routing provider's compute-routes endpoint.

    One call type only: a traffic-aware driving route for ordered waypoints,
    returned as decoded road geometry.
    """

    def __init__(
        self,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = 8,
        travel_mode: str = "DRIVE",
        routing_preference: str = "TRAFFIC_AWARE",
    ):
        if not api_key:
            raise ValueError("Routing provider API key is required.")
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.travel_mode = travel_mode
        self.routing_preference = routing_preference

    def build_request(self, waypoints: Sequence[LatLng], departure: Optional[datetime] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "origin": _lat_lng(waypoints[0]),
            "destination": _lat_lng(waypoints[-1]),
            "travelMode": self.travel_mode,
            "routingPreference": self.routing_preference,
            "languageCode": "en-US",
            "units": "METRIC",
        }
        intermediates = [_lat_lng(point) for point in waypoints[1:-1]]
        if intermediates:
            body["intermediates"] = intermediates
        if departure is not None:
            body["departureTime"] = departure.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        return body

    def compute_route(self, waypoints: Sequence[LatLng], departure: Optional[datetime] = None) -> RoadGeometry:
        if len(waypoints) < 2:
            raise ValueError("At least two waypoints are required to compute a route.")

        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": self.api_key,
            "X-Goog-FieldMask": FIELD_MASK,
        }
        try:
            response = requests.post(
                self.endpoint,
                json=self.build_request(waypoints, departure),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as error:
            raise RoutingError(f"Routing request failed: {error}") from error

        if response.status_code != 200:
            raise self._error_for(response)

        try:
            payload = response.json()
        except ValueError as error:
            raise RoutingError("Routing response was not valid JSON.") from error

        return self._parse_route(payload)

    def _error_for(self, response: requests.Response) -> RoutingError:
        details = ""
        raw = response.text or ""
        try:
            payload = response.json()
        except ValueError:
            details = raw
        else:
            raw = json.dumps(payload)
            error = payload.get("error") if isinstance(payload, dict) else None
            if isinstance(error, dict):
                details = " ".join(str(error.get(key) or "") for key in ("status", "message")).strip()
            if not details:
                details = raw

        message = details or f"Routes API error ({response.status_code})"
        # Providers put the rejected-key reason in nested error details.
        if response.status_code in (401, 403) or any(marker in raw for marker in AUTH_MARKERS):
            return RoutingAuthError(message)
        return RoutingError(message)

    def _parse_route(self, payload: Any) -> RoadGeometry:
        routes = payload.get("routes") if isinstance(payload, dict) else None
        if not routes:
            raise RoutingError("No route returned from routing provider.")

        route = routes[0]
        encoded = (route.get("polyline") or {}).get("encodedPolyline")
        if not encoded:
            raise RoutingError("Route has no encoded polyline.")
        try:
            points = decode_polyline(encoded)
        except ValueError as error:
            raise RoutingError(f"Malformed polyline: {error}") from error
        if len(points) < 2:
            raise RoutingError("Route polyline is empty.")

        in_traffic = parse_duration_minutes(route.get("duration"))
        baseline = parse_duration_minutes(route.get("staticDuration") or route.get("duration"))
        try:
            distance_km = float(route.get("distanceMeters") or 0) / 1000
        except (TypeError, ValueError):
            distance_km = 0.0

        return RoadGeometry(
            points=tuple(points),
            distance_km=distance_km,
            duration_in_traffic_min=in_traffic,
            baseline_duration_min=baseline,
            traffic_index=compute_traffic_index(in_traffic, baseline),
        )


def client_from_settings() -> Optional[RoutesClient]:
    config = routing_config()
    if not config.get("api_key"):
        return None
    return RoutesClient(
        api_key=config["api_key"],
        endpoint=config.get("endpoint") or DEFAULT_ENDPOINT,
        timeout=config.get("timeout_seconds", 8),
        travel_mode=config.get("travel_mode", "DRIVE"),
        routing_preference=config.get("routing_preference", "TRAFFIC_AWARE"),
    )


class RoadGeometryCache:
    """
    Session-scoped cache of road geometry with request coalescing and a
    circuit breaker.

    ``ensure`` never blocks: the fetch runs on a worker thread and its result
    is picked up by whoever next calls ``lookup``. The entry map, in-flight set
    and breaker flag are guarded by one lock so that at most one fetch per key
    is ever outstanding.
    """

    def __init__(self, client: Optional[Any] = None, max_workers: int = 4):
        self._client = client
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, int(max_workers)),
            thread_name_prefix="road-geometry",
        )
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, RoadGeometry] = {}
        self._in_flight: Set[Hashable] = set()
        self._disabled_reason: Optional[str] = None
        self._closed = False
        self.version = 0

    @staticmethod
    def cache_key(trip: TripRecord, route: Sequence[LatLng]) -> CacheKey:
        return (
            str(trip.trip_id),
            status_value(trip.status),
            tuple((round(lat, 6), round(lng, 6)) for lat, lng in route),
        )

    @property
    def configured(self) -> bool:
        return self._client is not None

    @property
    def disabled(self) -> bool:
        return self._disabled_reason is not None

    def ensure(
        self,
        trip: TripRecord,
        route: Sequence[LatLng],
        now: Optional[datetime] = None,
    ) -> Optional[Future]:
        """
        Start a background fetch for the trip's route unless one is cached,
        already running, or fetching is disabled. Returns the fetch future,
        or None when nothing was started.
        """
        if self._client is None or len(route) < 2:
            return None

        key = self.cache_key(trip, route)
        with self._lock:
            if self._closed or self._disabled_reason is not None:
                return None
            if key in self._entries or key in self._in_flight:
                return None
            self._in_flight.add(key)

        now = now or datetime.now(timezone.utc)
        departure = safe_departure_time(parse_trip_start(trip.trip_date), now)
        try:
            return self._executor.submit(self._fetch, key, list(route), departure)
        except RuntimeError:
            with self._lock:
                self._in_flight.discard(key)
            return None

    def _fetch(self, key: CacheKey, waypoints: List[LatLng], departure: datetime) -> Optional[RoadGeometry]:
        try:
            geometry = self._client.compute_route(waypoints, departure=departure)
        except RoutingAuthError as error:
            self._open_breaker(str(error))
            return None
        except RoutingError as error:
            LOGGER.warning("Road geometry fetch failed for trip %s: %s", key[0], error)
            return None
        except Exception:
            LOGGER.exception("Unexpected error fetching road geometry for trip %s", key[0])
            return None
        else:
            with self._lock:
                self._entries[key] = geometry
                self.version += 1
            LOGGER.info("Cached road geometry for trip %s with %d points", key[0], len(geometry.points))
            return geometry
        finally:
            with self._lock:
                self._in_flight.discard(key)

    def _open_breaker(self, reason: str) -> None:
        with self._lock:
            already_open = self._disabled_reason is not None
            if not already_open:
                self._disabled_reason = reason or "authorization failure"
        if already_open:
            LOGGER.debug("Routing provider rejected a request after fetching was disabled.")
            return
        LOGGER.error(
            "Routing provider rejected the credential; road geometry disabled for this session: %s",
            reason,
        )

    def lookup(self, key: Hashable) -> Optional[List[LatLng]]:
        with self._lock:
            geometry = self._entries.get(key)
        if geometry is None:
            return None
        return list(geometry.points)

    def geometry(self, key: Hashable) -> Optional[RoadGeometry]:
        with self._lock:
            return self._entries.get(key)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "configured": self._client is not None,
                "enabled": self._client is not None and self._disabled_reason is None,
                "disabled_reason": self._disabled_reason,
                "entries": len(self._entries),
                "in_flight": len(self._in_flight),
                "version": self.version,
            }

    def close(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
