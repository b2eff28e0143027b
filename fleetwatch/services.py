"""
Estimated fleet positions, forecast paths and spatial density for the
dashboard map.

Positions are derived from each trip's scheduled start, expected duration and
resolved route; nothing here is measured telemetry.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from django.core.exceptions import ImproperlyConfigured
from shapely.geometry import LineString, box, mapping

from .geometry import (
    LatLng,
    bearing_deg,
    bounds,
    clamp,
    collapse_duplicates,
    interpolate,
    nearest_index,
    same_point,
    segment_lengths_km,
)
from .locations import assemble_route
from .routing import RoadGeometryCache, client_from_settings, routing_config
from .trips import Phase, TripRecord, TripStatus, first_positive, parse_trip_start, status_value

LOGGER = logging.getLogger(__name__)

DEFAULT_DURATION_MIN = 30.0
DEFAULT_GRID_PRECISION = 0.01
DEFAULT_TICK_SECONDS = 30
MIN_SEGMENT_KM = 1e-6
MIN_INTENSITY = 0.15

STATUS_WEIGHTS: Dict[str, float] = {
    TripStatus.CONFIRMED.value: 1.25,
    TripStatus.COMPLETED.value: 0.95,
    TripStatus.QUOTED.value: 1.0,
}
DEFAULT_WEIGHT = 0.8

PHASE_ORDER = (Phase.PICKUP, Phase.TRANSIT, Phase.DESTINATION)


@dataclass(frozen=True)
class OperationalPoint:
    trip_id: Any
    point: LatLng
    phase: Phase
    weight: float
    route_index: int
    heading: float = 0.0
    remaining_minutes: float = 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "point": _point_dict(self.point),
            "phase": self.phase.value,
            "weight": self.weight,
            "heading": round(self.heading, 1),
            "remaining_minutes": round(self.remaining_minutes, 1),
        }


@dataclass
class DensityCell:
    lat: float
    lng: float
    size: float
    weight: float = 0.0
    count: int = 0
    phase_weights: Dict[Phase, float] = field(
        default_factory=lambda: {phase: 0.0 for phase in PHASE_ORDER}
    )
    intensity: float = 0.0

    @property
    def dominant_phase(self) -> Phase:
        # Ties resolve in route order: pickup, transit, destination.
        return max(PHASE_ORDER, key=lambda phase: self.phase_weights[phase])

    def footprint(self):
        half = self.size / 2
        return box(self.lng - half, self.lat - half, self.lng + half, self.lat + half)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "weight": round(self.weight, 4),
            "count": self.count,
            "intensity": round(self.intensity, 4),
            "dominant_phase": self.dominant_phase.value,
            "phase_weights": {
                phase.value: round(value, 4) for phase, value in self.phase_weights.items()
            },
            "geometry": mapping(self.footprint()),
        }


def status_weight(status: Any, weights: Optional[Mapping[str, float]] = None) -> float:
    table = weights if weights is not None else STATUS_WEIGHTS
    return float(table.get(status_value(status), DEFAULT_WEIGHT))


def estimate_position(
    trip: TripRecord,
    route: Sequence[LatLng],
    now: datetime,
    default_duration_min: float = DEFAULT_DURATION_MIN,
    weights: Optional[Mapping[str, float]] = None,
) -> Optional[OperationalPoint]:
    """
    Estimate where a trip currently is along its route.

    Quoted and cancelled trips sit at the pickup; completed trips sit at the
    destination. Active trips move along the route in proportion to elapsed
    time over the expected duration. Returns None for an empty route.
    """
    if not route:
        return None

    status = status_value(trip.status)
    weight = status_weight(status, weights)

    def parked(point_index: int, phase: Phase, remaining: float = 0.0) -> OperationalPoint:
        return OperationalPoint(
            trip_id=trip.trip_id,
            point=route[point_index],
            phase=phase,
            weight=weight,
            route_index=point_index % len(route),
            remaining_minutes=remaining,
        )

    if status in (TripStatus.CANCELLED.value, TripStatus.QUOTED.value):
        return parked(0, Phase.PICKUP)
    if status == TripStatus.COMPLETED.value:
        return parked(-1, Phase.DESTINATION)

    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    start = parse_trip_start(trip.trip_date)
    if start is None:
        LOGGER.debug("Trip %s has no usable start time; holding at pickup.", trip.trip_id)
        return parked(0, Phase.PICKUP)
    if len(route) == 1:
        return parked(0, Phase.PICKUP)

    duration_min = first_positive(
        trip.duration_in_traffic_min, trip.duration_min, default_duration_min
    ) or DEFAULT_DURATION_MIN
    try:
        end = start + timedelta(minutes=duration_min)
    except OverflowError:
        LOGGER.debug("Trip %s ends beyond the representable calendar; holding at pickup.", trip.trip_id)
        return parked(0, Phase.PICKUP)

    if now <= start:
        return parked(0, Phase.PICKUP, duration_min)
    if now >= end:
        return parked(-1, Phase.DESTINATION)

    progress = clamp((now - start).total_seconds() / (end - start).total_seconds(), 0.0, 1.0)
    segments = segment_lengths_km(route)
    planned_km = first_positive(trip.distance_km, sum(segments)) or 0.0
    target_km = clamp(planned_km * progress, 0.0, planned_km)

    point, segment_index, ratio = _walk_route(route, segments, target_km)
    last_segment = len(segments) - 1
    if segment_index == last_segment and ratio >= 1.0:
        phase = Phase.DESTINATION
    else:
        phase = Phase.TRANSIT

    return OperationalPoint(
        trip_id=trip.trip_id,
        point=point,
        phase=phase,
        weight=weight,
        route_index=segment_index + 1,
        heading=_route_heading(route, segment_index, point),
        remaining_minutes=(end - now).total_seconds() / 60,
    )


def _walk_route(
    route: Sequence[LatLng], segments: Sequence[float], target_km: float
) -> Tuple[LatLng, int, float]:
    travelled = 0.0
    last_segment = len(segments) - 1
    for index, length in enumerate(segments):
        length = max(length, MIN_SEGMENT_KM)
        if travelled + length >= target_km or index == last_segment:
            ratio = clamp((target_km - travelled) / length, 0.0, 1.0)
            if ratio >= 1.0:
                return route[index + 1], index, 1.0
            return interpolate(route[index], route[index + 1], ratio), index, ratio
        travelled += length
    return route[-1], last_segment, 1.0


def _route_heading(route: Sequence[LatLng], segment_index: int, point: LatLng) -> float:
    next_point = route[segment_index + 1]
    if same_point(point, next_point):
        return bearing_deg(route[segment_index], next_point)
    return bearing_deg(point, next_point)


def build_forecast_path(
    route: Sequence[LatLng],
    position: OperationalPoint,
    road_path: Optional[Sequence[LatLng]] = None,
) -> List[LatLng]:
    """
    Remaining path from the current position: the cached road geometry from
    its nearest vertex onward when available, else the planned route points.
    """
    if road_path:
        start = nearest_index(road_path, position.point)
        remaining = list(road_path[start:])
    else:
        remaining = list(route[position.route_index:])
    return collapse_duplicates([position.point, *remaining])


def _cell_key(point: LatLng, precision: float) -> Tuple[int, int]:
    return int(round(point[0] / precision)), int(round(point[1] / precision))


def aggregate_density(
    positions: Iterable[OperationalPoint],
    precision: float = DEFAULT_GRID_PRECISION,
) -> List[DensityCell]:
    """
    Fold operational points into grid cells of ``precision`` degrees.

    Cells are returned heaviest first.
    """
    if not precision > 0:
        raise ValueError("Grid precision must be positive.")

    decimals = max(0, int(math.ceil(-math.log10(precision)))) + 2
    cells: Dict[Tuple[int, int], DensityCell] = {}
    for position in positions:
        key = _cell_key(position.point, precision)
        cell = cells.get(key)
        if cell is None:
            cell = DensityCell(
                lat=round(key[0] * precision, decimals),
                lng=round(key[1] * precision, decimals),
                size=precision,
            )
            cells[key] = cell
        cell.weight += position.weight
        cell.count += 1
        cell.phase_weights[position.phase] += position.weight

    max_weight = max([1.0] + [cell.weight for cell in cells.values()])
    for cell in cells.values():
        cell.intensity = clamp(cell.weight / max_weight, MIN_INTENSITY, 1.0)

    return sorted(cells.values(), key=lambda cell: (-cell.weight, cell.lat, cell.lng))


def _point_dict(point: LatLng) -> Dict[str, float]:
    return {"lat": round(point[0], 6), "lng": round(point[1], 6)}


class FleetSession:
    """
    One dashboard session's positioning engine.

    Owns the road geometry cache (and with it the in-flight set and the
    routing circuit breaker). Create one per session and ``close`` it on
    teardown.
    """

    def __init__(
        self,
        geometry_cache: Optional[RoadGeometryCache] = None,
        grid_precision: float = DEFAULT_GRID_PRECISION,
        default_duration_min: float = DEFAULT_DURATION_MIN,
        tick_seconds: int = DEFAULT_TICK_SECONDS,
        weights: Optional[Mapping[str, float]] = None,
    ):
        if not (isinstance(grid_precision, (int, float)) and math.isfinite(grid_precision) and grid_precision > 0):
            raise ImproperlyConfigured("FLEET_CONFIG['grid_precision_deg'] must be a positive number.")
        if first_positive(default_duration_min) is None:
            raise ImproperlyConfigured("FLEET_CONFIG['default_duration_min'] must be a positive number.")
        if int(tick_seconds) < 1:
            raise ImproperlyConfigured("FLEET_CONFIG['tick_seconds'] must be at least 1.")

        self.geometry_cache = geometry_cache or RoadGeometryCache()
        self.grid_precision = float(grid_precision)
        self.default_duration_min = float(default_duration_min)
        self.tick_seconds = int(tick_seconds)
        self.weights = dict(STATUS_WEIGHTS)
        if weights:
            self.weights.update({status_value(key): float(value) for key, value in weights.items()})

    @classmethod
    def from_settings(cls) -> "FleetSession":
        from django.conf import settings

        config = getattr(settings, "FLEET_CONFIG", None) or {}
        cache = RoadGeometryCache(
            client_from_settings(),
            max_workers=routing_config().get("max_workers", 4),
        )
        try:
            return cls(
                geometry_cache=cache,
                grid_precision=config.get("grid_precision_deg", DEFAULT_GRID_PRECISION),
                default_duration_min=config.get("default_duration_min", DEFAULT_DURATION_MIN),
                tick_seconds=config.get("tick_seconds", DEFAULT_TICK_SECONDS),
                weights=config.get("status_weights"),
            )
        except ImproperlyConfigured:
            cache.close(wait=False)
            raise

    def tick(self, now: Optional[datetime] = None) -> datetime:
        """Floor the clock to the evaluation tick so renders within a tick agree."""
        now = now or datetime.now(timezone.utc)
        epoch = now.timestamp()
        return datetime.fromtimestamp(epoch - (epoch % self.tick_seconds), tz=timezone.utc)

    def estimate(self, trip: TripRecord, route: Sequence[LatLng], now: datetime) -> Optional[OperationalPoint]:
        return estimate_position(
            trip,
            route,
            now,
            default_duration_min=self.default_duration_min,
            weights=self.weights,
        )

    def forecast(
        self, trip: TripRecord, route: Sequence[LatLng], position: OperationalPoint
    ) -> Tuple[List[LatLng], str]:
        road_path = self.geometry_cache.lookup(RoadGeometryCache.cache_key(trip, route))
        path = build_forecast_path(route, position, road_path)
        return path, ("road" if road_path else "estimated")

    def traffic(self, trip: TripRecord, route: Sequence[LatLng]) -> Optional[Dict[str, Any]]:
        """Traffic metrics from the cached road geometry, or None before it arrives."""
        geometry = self.geometry_cache.geometry(RoadGeometryCache.cache_key(trip, route))
        if geometry is None:
            return None
        return {
            "distance_km": round(geometry.distance_km, 3),
            "duration_in_traffic_min": geometry.duration_in_traffic_min,
            "baseline_duration_min": geometry.baseline_duration_min,
            "traffic_index": geometry.traffic_index,
        }

    def evaluate(self, trips: Iterable[TripRecord], now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Recompute every trip's position, forecast path and the density grid.

        Missing or malformed trip data only drops that trip from the output.
        """
        now = now if now is not None else self.tick()
        markers: List[Dict[str, Any]] = []
        positions: List[OperationalPoint] = []
        resolved_points: List[LatLng] = []
        phase_counts = {phase.value: 0 for phase in PHASE_ORDER}
        path_counts = {"road": 0, "estimated": 0}
        unpositioned = 0

        for trip in trips:
            route = assemble_route(trip)
            position = self.estimate(trip, route, now)
            if position is None:
                unpositioned += 1
                continue

            resolved_points.extend(route)
            positions.append(position)
            phase_counts[position.phase.value] += 1
            self.geometry_cache.ensure(trip, route, now=now)

            marker = position.as_dict()
            marker["status"] = status_value(trip.status)
            path, source = self.forecast(trip, route, position)
            if len(path) >= 2:
                path_counts[source] += 1
                marker["path"] = [_point_dict(point) for point in path]
                marker["path_source"] = source
                marker["path_geojson"] = mapping(LineString([(lng, lat) for lat, lng in path]))
                marker["traffic"] = self.traffic(trip, route) if source == "road" else None
            else:
                marker["path"] = []
                marker["path_source"] = None
                marker["path_geojson"] = None
                marker["traffic"] = None
            markers.append(marker)

        cells = aggregate_density(positions, self.grid_precision)
        fleet_bounds = bounds(resolved_points)
        routing_status = self.geometry_cache.status()

        return {
            "evaluated_at": now.isoformat(),
            "generation_time": datetime.now(timezone.utc).isoformat(),
            "trips": markers,
            "density": [cell.as_dict() for cell in cells],
            "counts": {
                "phases": phase_counts,
                "positioned": len(positions),
                "unpositioned": unpositioned,
                "road_geometry_entries": routing_status["entries"],
                "paths": path_counts,
            },
            "bounds": (
                dict(zip(("south", "west", "north", "east"), fleet_bounds))
                if fleet_bounds
                else None
            ),
            "routing": routing_status,
        }

    def close(self) -> None:
        self.geometry_cache.close()
