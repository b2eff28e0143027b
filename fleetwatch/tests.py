import threading
from datetime import datetime, timedelta, timezone
from unittest import mock

import requests
from django.apps import apps
from django.core.exceptions import ImproperlyConfigured
from django.test import Client, SimpleTestCase, TestCase, override_settings

from . import geometry, locations, routing, services
from .models import Trip
from .routing import RoadGeometry, RoadGeometryCache, RoutesClient, RoutingAuthError, RoutingError
from .services import FleetSession, OperationalPoint
from .trips import LocationDescriptor, Phase, TripRecord, parse_trip_start

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
BEIRUT_A = (33.90, 35.50)
BEIRUT_B = (33.91, 35.51)


def make_trip(
    status="CONFIRMED",
    trip_id=1,
    pickup=BEIRUT_A,
    destination=BEIRUT_B,
    stops=(),
    trip_date=START.isoformat(),
    **kwargs
):
    def descriptor(point):
        if point is None:
            return LocationDescriptor()
        return LocationDescriptor(lat=point[0], lng=point[1])

    return TripRecord(
        trip_id=trip_id,
        status=status,
        trip_date=trip_date,
        pickup=descriptor(pickup),
        destination=descriptor(destination),
        stops=tuple(descriptor(stop) for stop in stops),
        **kwargs
    )


class CountingClient:
    """Routing client double that records calls and can hold them open."""

    def __init__(self, result=None, error=None, hold=False):
        self.calls = 0
        self.result = result
        self.error = error
        self.release = threading.Event()
        if not hold:
            self.release.set()

    def compute_route(self, waypoints, departure=None):
        self.calls += 1
        self.release.wait(5)
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return RoadGeometry(points=tuple(waypoints))


class CoordinateResolverTests(SimpleTestCase):
    def test_explicit_coordinates_win_over_link_and_text(self):
        descriptor = LocationDescriptor(
            text="10.0, 20.0",
            link="https://www.google.com/maps/@11.0,21.0,15z",
            lat=33.8938,
            lng=35.5018,
        )
        self.assertEqual(locations.resolve(descriptor), (33.8938, 35.5018))

    def test_link_patterns(self):
        cases = {
            "https://www.google.com/maps/@33.8938,35.5018,15z": (33.8938, 35.5018),
            "https://maps.google.com/?q=33.8938,35.5018": (33.8938, 35.5018),
            "https://maps.google.com/?z=3&ll=-12.5,130.25": (-12.5, 130.25),
            "https://www.google.com/maps/search/33.1,35.2?entry=ttu": (33.1, 35.2),
            "https://maps.google.com/?q=33.8938%2C35.5018": (33.8938, 35.5018),
        }
        for link, expected in cases.items():
            with self.subTest(link=link):
                self.assertEqual(locations.resolve(LocationDescriptor(link=link)), expected)

    def test_link_beats_text(self):
        descriptor = LocationDescriptor(text="1.0,2.0", link="https://maps.google.com/?q=3.0,4.0")
        self.assertEqual(locations.resolve(descriptor), (3.0, 4.0))

    def test_free_text_coordinates(self):
        self.assertEqual(
            locations.resolve(LocationDescriptor(text="33.8938, 35.5018")),
            (33.8938, 35.5018),
        )
        self.assertEqual(locations.parse_lat_lng_text("geo:33.1 35.2"), (33.1, 35.2))
        self.assertEqual(locations.parse_lat_lng_text("GPS: -1.5;-2.5"), (-1.5, -2.5))

    def test_text_may_continue_after_the_pair(self):
        self.assertEqual(
            locations.parse_lat_lng_text("33.8938, 35.5018 Hamra"),
            (33.8938, 35.5018),
        )
        self.assertIsNone(locations.parse_lat_lng_text("33.8938, 35.5018abc"))

    def test_records_from_plain_dictionaries(self):
        trip = TripRecord.from_dict(
            {
                "id": 12,
                "status": "confirmed",
                "trip_date": START.isoformat(),
                "pickup": {"text": "33.80,35.40"},
                "stops": [{"lat": "33.85", "lng": "35.45"}, {"text": "Jounieh"}],
                "destination": {"original_link": "https://maps.google.com/?q=33.95,35.55"},
                "duration_min": "40",
            }
        )
        self.assertEqual(trip.trip_id, 12)
        self.assertEqual(trip.status, "CONFIRMED")
        self.assertEqual(trip.duration_min, 40.0)
        self.assertEqual(
            locations.assemble_route(trip),
            [(33.80, 35.40), (33.85, 35.45), (33.95, 35.55)],
        )

    def test_invalid_or_missing_locations_are_absent(self):
        self.assertIsNone(locations.resolve(LocationDescriptor(text="Hamra Street, Beirut")))
        self.assertIsNone(locations.resolve(LocationDescriptor(text="95.0, 35.0")))
        self.assertIsNone(locations.resolve(LocationDescriptor(link="https://maps.app.goo.gl/abc")))
        self.assertIsNone(locations.resolve(LocationDescriptor(lat=float("nan"), lng=35.0)))
        self.assertIsNone(locations.resolve(None))

    def test_out_of_range_explicit_coordinates_fall_through_to_text(self):
        descriptor = LocationDescriptor(text="33.0,35.0", lat=120.0, lng=35.0)
        self.assertEqual(locations.resolve(descriptor), (33.0, 35.0))

    def test_route_keeps_travel_order_and_drops_unresolved(self):
        trip = TripRecord(
            trip_id=7,
            status="CONFIRMED",
            trip_date=None,
            pickup=LocationDescriptor(text="33.80,35.40"),
            stops=(
                LocationDescriptor(text="somewhere"),
                LocationDescriptor(lat=33.85, lng=35.45),
            ),
            destination=LocationDescriptor(link="https://maps.google.com/?q=33.95,35.55"),
        )
        self.assertEqual(
            locations.assemble_route(trip),
            [(33.80, 35.40), (33.85, 35.45), (33.95, 35.55)],
        )


class GeometryTests(SimpleTestCase):
    def test_haversine_is_symmetric_and_zero_on_self(self):
        a, b, c = (33.9, 35.5), (34.4, 35.8), (33.3, 35.2)
        self.assertAlmostEqual(geometry.haversine_km(a, b), geometry.haversine_km(b, a))
        self.assertEqual(geometry.haversine_km(a, a), 0.0)
        self.assertLessEqual(
            geometry.haversine_km(a, c),
            geometry.haversine_km(a, b) + geometry.haversine_km(b, c),
        )

    def test_haversine_known_distance(self):
        # One degree of latitude is about 111.2 km on a 6371 km sphere.
        self.assertAlmostEqual(geometry.haversine_km((0.0, 0.0), (1.0, 0.0)), 111.195, places=2)

    def test_decode_polyline_known_pair(self):
        self.assertEqual(
            geometry.decode_polyline("_p~iF~ps|U_ulLnnqC_mqNvxq`@"),
            [(38.5, -120.2), (40.7, -120.95), (43.252, -126.453)],
        )

    def test_decode_polyline_rejects_truncated_input(self):
        with self.assertRaises(ValueError):
            geometry.decode_polyline("_p~iF~ps|U_")

    def test_collapse_duplicates_uses_tolerance(self):
        points = [(1.0, 1.0), (1.000004, 1.000004), (1.1, 1.1), (1.1, 1.1)]
        self.assertEqual(geometry.collapse_duplicates(points), [(1.0, 1.0), (1.1, 1.1)])


class TemporalEstimatorTests(SimpleTestCase):
    def setUp(self):
        self.route = [BEIRUT_A, BEIRUT_B]

    def test_at_start_every_active_status_is_at_pickup(self):
        for status in ("CONFIRMED", "EN_ROUTE", "DISPATCHED"):
            with self.subTest(status=status):
                position = services.estimate_position(make_trip(status), self.route, START)
                self.assertEqual(position.phase, Phase.PICKUP)
                self.assertEqual(position.point, BEIRUT_A)

    def test_after_end_is_at_destination(self):
        trip = make_trip(duration_min=10)
        for minutes in (10, 11, 600):
            with self.subTest(minutes=minutes):
                position = services.estimate_position(trip, self.route, START + timedelta(minutes=minutes))
                self.assertEqual(position.phase, Phase.DESTINATION)
                self.assertEqual(position.point, BEIRUT_B)

    def test_midpoint_of_two_point_route(self):
        trip = make_trip(duration_min=10)
        position = services.estimate_position(trip, self.route, START + timedelta(minutes=5))
        self.assertEqual(position.phase, Phase.TRANSIT)
        self.assertAlmostEqual(position.point[0], 33.905, places=6)
        self.assertAlmostEqual(position.point[1], 35.505, places=6)
        self.assertEqual(position.route_index, 1)
        self.assertAlmostEqual(position.remaining_minutes, 5.0)

    def test_confirmed_trip_half_way_scenario(self):
        trip = make_trip(duration_min=10)
        position = services.estimate_position(trip, self.route, START + timedelta(minutes=5))
        midpoint = (33.905, 35.505)
        tolerance = 0.1 * geometry.haversine_km(BEIRUT_A, BEIRUT_B)
        self.assertEqual(position.phase, Phase.TRANSIT)
        self.assertLess(geometry.haversine_km(position.point, midpoint), tolerance)
        self.assertEqual(position.weight, 1.25)

    def test_completed_trip_is_at_destination_regardless_of_time(self):
        trip = make_trip("COMPLETED", duration_min=45, stops=[(33.95, 35.55)])
        route = [BEIRUT_A, (33.95, 35.55), BEIRUT_B]
        for now in (START - timedelta(days=1), START, START + timedelta(minutes=3)):
            position = services.estimate_position(trip, route, now)
            self.assertEqual(position.phase, Phase.DESTINATION)
            self.assertEqual(position.point, BEIRUT_B)
            self.assertEqual(position.weight, 0.95)

    def test_quoted_and_cancelled_trips_stay_at_pickup(self):
        now = START + timedelta(minutes=5)
        quoted = services.estimate_position(make_trip("QUOTED", duration_min=10), self.route, now)
        cancelled = services.estimate_position(make_trip("CANCELLED", duration_min=10), self.route, now)
        self.assertEqual((quoted.phase, quoted.point, quoted.weight), (Phase.PICKUP, BEIRUT_A, 1.0))
        self.assertEqual((cancelled.phase, cancelled.point, cancelled.weight), (Phase.PICKUP, BEIRUT_A, 0.8))

    def test_unparseable_start_falls_back_to_pickup(self):
        trip = make_trip(trip_date="next tuesday", duration_min=10)
        position = services.estimate_position(trip, self.route, START + timedelta(minutes=5))
        self.assertEqual((position.phase, position.point), (Phase.PICKUP, BEIRUT_A))

    def test_single_point_route_has_no_traversal(self):
        trip = make_trip(destination=None, duration_min=10)
        position = services.estimate_position(trip, [BEIRUT_A], START + timedelta(minutes=5))
        self.assertEqual((position.phase, position.point), (Phase.PICKUP, BEIRUT_A))

    def test_empty_route_is_not_positionable(self):
        self.assertIsNone(services.estimate_position(make_trip(), [], START))

    def test_traffic_duration_takes_precedence(self):
        trip = make_trip(duration_min=10, duration_in_traffic_min=20)
        position = services.estimate_position(trip, self.route, START + timedelta(minutes=10))
        self.assertEqual(position.phase, Phase.TRANSIT)
        self.assertAlmostEqual(position.point[0], 33.905, places=6)

    def test_default_duration_when_none_given(self):
        trip = make_trip(duration_min=0)
        position = services.estimate_position(trip, self.route, START + timedelta(minutes=15))
        self.assertEqual(position.phase, Phase.TRANSIT)
        self.assertAlmostEqual(position.point[1], 35.505, places=6)

    def test_zero_length_segment_does_not_divide_by_zero(self):
        route = [BEIRUT_A, BEIRUT_A, BEIRUT_B]
        trip = make_trip(duration_min=10)
        position = services.estimate_position(trip, route, START + timedelta(minutes=5))
        self.assertEqual(position.phase, Phase.TRANSIT)
        self.assertAlmostEqual(position.point[0], 33.905, places=5)
        self.assertEqual(position.route_index, 2)

    def test_stated_distance_beyond_route_clamps_to_final_point(self):
        trip = make_trip(duration_min=10, distance_km=50)
        position = services.estimate_position(trip, self.route, START + timedelta(minutes=5))
        self.assertEqual(position.phase, Phase.DESTINATION)
        self.assertEqual(position.point, BEIRUT_B)

    def test_multi_stop_walk_lands_in_second_segment(self):
        route = [(0.0, 0.0), (0.0, 0.1), (0.0, 0.2)]
        trip = make_trip(pickup=route[0], stops=[route[1]], destination=route[2], duration_min=40)
        position = services.estimate_position(trip, route, START + timedelta(minutes=30))
        self.assertEqual(position.phase, Phase.TRANSIT)
        self.assertEqual(position.route_index, 2)
        self.assertAlmostEqual(position.point[1], 0.15, places=6)
        self.assertAlmostEqual(position.heading, 90.0, places=3)

    def test_estimate_is_idempotent(self):
        trip = make_trip(duration_min=10)
        now = START + timedelta(minutes=3)
        self.assertEqual(
            services.estimate_position(trip, self.route, now),
            services.estimate_position(trip, self.route, now),
        )

    def test_naive_start_is_treated_as_utc(self):
        self.assertEqual(parse_trip_start("2026-03-01T09:00:00"), START)
        self.assertEqual(parse_trip_start("2026-03-01T11:00:00+02:00"), START)
        self.assertIsNone(parse_trip_start("2026-13-45T99:00"))
        self.assertIsNone(parse_trip_start(None))

    def test_unrepresentable_end_time_holds_at_pickup(self):
        cases = {
            "huge duration": make_trip(duration_min=1e300),
            "huge traffic duration": make_trip(duration_in_traffic_min=1e300),
            "end of calendar": make_trip(trip_date="9999-12-31T23:50:00Z"),
        }
        for label, trip in cases.items():
            with self.subTest(label):
                position = services.estimate_position(trip, self.route, START + timedelta(minutes=5))
                self.assertEqual((position.phase, position.point), (Phase.PICKUP, BEIRUT_A))


class ForecastPathTests(SimpleTestCase):
    def setUp(self):
        self.route = [(0.0, 0.0), (0.0, 0.1), (0.0, 0.2)]

    def _position(self, point, route_index, phase=Phase.TRANSIT):
        return OperationalPoint(trip_id=1, point=point, phase=phase, weight=1.0, route_index=route_index)

    def test_straight_line_fallback_uses_remaining_route(self):
        path = services.build_forecast_path(self.route, self._position((0.0, 0.05), 1))
        self.assertEqual(path, [(0.0, 0.05), (0.0, 0.1), (0.0, 0.2)])

    def test_pickup_position_collapses_into_route_start(self):
        path = services.build_forecast_path(self.route, self._position((0.0, 0.0), 0, Phase.PICKUP))
        self.assertEqual(path, self.route)

    def test_destination_is_not_renderable(self):
        path = services.build_forecast_path(self.route, self._position((0.0, 0.2), 2, Phase.DESTINATION))
        self.assertEqual(len(path), 1)

    def test_road_geometry_starts_from_nearest_vertex(self):
        road = [(0.0, 0.0), (0.01, 0.04), (0.01, 0.06), (0.0, 0.1), (0.0, 0.2)]
        path = services.build_forecast_path(self.route, self._position((0.0, 0.055), 1), road)
        self.assertEqual(path, [(0.0, 0.055), (0.01, 0.06), (0.0, 0.1), (0.0, 0.2)])


class DensityAggregatorTests(SimpleTestCase):
    def _position(self, point, weight=1.0, phase=Phase.TRANSIT):
        return OperationalPoint(trip_id=None, point=point, phase=phase, weight=weight, route_index=0)

    def test_points_in_one_cell_accumulate(self):
        weights = [1.25, 0.95, 1.0, 0.8]
        positions = [
            self._position((33.901 + i * 0.001, 35.501), weight)
            for i, weight in enumerate(weights)
        ]
        cells = services.aggregate_density(positions)
        self.assertEqual(len(cells), 1)
        self.assertEqual(cells[0].count, 4)
        self.assertAlmostEqual(cells[0].weight, sum(weights))
        self.assertEqual((cells[0].lat, cells[0].lng), (33.9, 35.5))
        self.assertEqual(cells[0].intensity, 1.0)

    def test_disjoint_cells(self):
        positions = [self._position((10.0 + i, 20.0 + i)) for i in range(5)]
        cells = services.aggregate_density(positions)
        self.assertEqual(len(cells), 5)
        self.assertTrue(all(cell.count == 1 for cell in cells))

    def test_dominant_phase_and_phase_subtotals(self):
        positions = [
            self._position((1.0, 1.0), 1.25, Phase.PICKUP),
            self._position((1.0, 1.0), 0.8, Phase.TRANSIT),
            self._position((1.0, 1.0), 0.8, Phase.TRANSIT),
        ]
        cell = services.aggregate_density(positions)[0]
        self.assertEqual(cell.dominant_phase, Phase.TRANSIT)
        self.assertAlmostEqual(cell.phase_weights[Phase.PICKUP], 1.25)
        self.assertAlmostEqual(cell.phase_weights[Phase.TRANSIT], 1.6)
        self.assertEqual(cell.as_dict()["dominant_phase"], "TRANSIT")

    def test_intensity_is_floored_for_light_cells(self):
        positions = [self._position((1.0, 1.0), 1.0) for _ in range(20)]
        positions.append(self._position((5.0, 5.0), 1.0))
        cells = services.aggregate_density(positions)
        self.assertEqual(cells[0].intensity, 1.0)
        self.assertEqual(cells[1].intensity, 0.15)

    def test_empty_input_gives_no_cells(self):
        self.assertEqual(services.aggregate_density([]), [])

    def test_non_positive_precision_is_rejected(self):
        with self.assertRaises(ValueError):
            services.aggregate_density([], precision=0)


class RoutesClientTests(SimpleTestCase):
    def _response(self, status_code=200, payload=None):
        response = mock.Mock(status_code=status_code, text="")
        response.json.return_value = payload
        return response

    @mock.patch("fleetwatch.routing.requests.post")
    def test_successful_route_is_decoded(self, post):
        post.return_value = self._response(
            payload={
                "routes": [
                    {
                        "distanceMeters": 1520,
                        "duration": "900s",
                        "staticDuration": "600s",
                        "polyline": {"encodedPolyline": "_p~iF~ps|U_ulLnnqC_mqNvxq`@"},
                    }
                ]
            }
        )
        client = RoutesClient(api_key="secret")
        result = client.compute_route([BEIRUT_A, (33.95, 35.55), BEIRUT_B], departure=START)

        self.assertEqual(result.points[0], (38.5, -120.2))
        self.assertEqual(len(result.points), 3)
        self.assertAlmostEqual(result.distance_km, 1.52)
        self.assertEqual(result.duration_in_traffic_min, 15)
        self.assertEqual(result.baseline_duration_min, 10)
        self.assertEqual(result.traffic_index, 33)

        kwargs = post.call_args.kwargs
        self.assertEqual(kwargs["headers"]["X-Goog-Api-Key"], "secret")
        body = kwargs["json"]
        self.assertEqual(body["origin"]["location"]["latLng"]["latitude"], 33.90)
        self.assertEqual(body["destination"]["location"]["latLng"]["longitude"], 35.51)
        self.assertEqual(len(body["intermediates"]), 1)
        self.assertEqual(body["routingPreference"], "TRAFFIC_AWARE")
        self.assertEqual(body["departureTime"], "2026-03-01T09:00:00Z")

    @mock.patch("fleetwatch.routing.requests.post")
    def test_forbidden_is_an_authorization_error(self, post):
        post.return_value = self._response(
            403, {"error": {"code": 403, "message": "Requests are blocked.", "status": "PERMISSION_DENIED"}}
        )
        with self.assertRaises(RoutingAuthError):
            RoutesClient(api_key="secret").compute_route([BEIRUT_A, BEIRUT_B])

    @mock.patch("fleetwatch.routing.requests.post")
    def test_bad_key_message_is_an_authorization_error(self, post):
        post.return_value = self._response(
            400,
            {
                "error": {
                    "code": 400,
                    "message": "API key not valid. Please pass a valid API key.",
                    "status": "INVALID_ARGUMENT",
                    "details": [{"reason": "API_KEY_INVALID"}],
                }
            },
        )
        with self.assertRaises(RoutingAuthError):
            RoutesClient(api_key="secret").compute_route([BEIRUT_A, BEIRUT_B])

    @mock.patch("fleetwatch.routing.requests.post")
    def test_other_failures_are_transient(self, post):
        client = RoutesClient(api_key="secret")
        failures = [
            self._response(500, {"error": {"message": "Internal error", "status": "INTERNAL"}}),
            self._response(200, {"routes": []}),
            self._response(200, {"routes": [{"polyline": {"encodedPolyline": "_p~iF~ps|U_"}}]}),
        ]
        for response in failures:
            post.return_value = response
            with self.assertRaises(RoutingError) as raised:
                client.compute_route([BEIRUT_A, BEIRUT_B])
            self.assertNotIsInstance(raised.exception, RoutingAuthError)

        post.side_effect = requests.exceptions.ConnectionError("offline")
        with self.assertRaises(RoutingError):
            client.compute_route([BEIRUT_A, BEIRUT_B])

    def test_traffic_metrics_helpers(self):
        self.assertEqual(routing.parse_duration_minutes("61s"), 2)
        self.assertEqual(routing.parse_duration_minutes("garbage"), 0)
        self.assertEqual(routing.compute_traffic_index(10, 10), 0)
        self.assertEqual(routing.compute_traffic_index(40, 10), 100)
        self.assertEqual(routing.compute_traffic_index(10, 0), 0)

    def test_departure_is_never_in_the_past(self):
        now = START
        self.assertEqual(routing.safe_departure_time(None, now), now + timedelta(minutes=1))
        self.assertEqual(routing.safe_departure_time(now - timedelta(hours=1), now), now + timedelta(minutes=1))
        later = now + timedelta(hours=2)
        self.assertEqual(routing.safe_departure_time(later, now), later)


class RoadGeometryCacheTests(SimpleTestCase):
    def setUp(self):
        self.trip = make_trip(duration_min=10)
        self.route = [BEIRUT_A, BEIRUT_B]

    def _cache(self, client):
        cache = RoadGeometryCache(client, max_workers=4)
        self.addCleanup(cache.close)
        return cache

    def test_concurrent_requests_for_one_key_are_coalesced(self):
        client = CountingClient(hold=True)
        cache = self._cache(client)

        first = cache.ensure(self.trip, self.route, now=START)
        second = cache.ensure(self.trip, self.route, now=START)
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(cache.status()["in_flight"], 1)

        client.release.set()
        first.result(timeout=5)

        self.assertEqual(client.calls, 1)
        self.assertEqual(cache.lookup(cache.cache_key(self.trip, self.route)), self.route)
        self.assertEqual(cache.status()["in_flight"], 0)
        self.assertEqual(cache.version, 1)
        self.assertIsNone(cache.ensure(self.trip, self.route, now=START))
        self.assertEqual(client.calls, 1)

    def test_authorization_failure_disables_fetching_for_the_session(self):
        client = CountingClient(error=RoutingAuthError("PERMISSION_DENIED"))
        cache = self._cache(client)

        with self.assertLogs("fleetwatch.routing", level="ERROR") as logs:
            cache.ensure(self.trip, self.route, now=START).result(timeout=5)
        self.assertEqual(len(logs.records), 1)

        other = make_trip(trip_id=2, pickup=(34.0, 35.6), destination=(34.1, 35.7))
        self.assertIsNone(cache.ensure(other, [(34.0, 35.6), (34.1, 35.7)], now=START))
        self.assertIsNone(cache.ensure(self.trip, self.route, now=START))
        self.assertEqual(client.calls, 1)
        self.assertTrue(cache.disabled)
        self.assertFalse(cache.status()["enabled"])

    def test_transient_failure_allows_a_later_retry(self):
        client = CountingClient(error=RoutingError("timeout"))
        cache = self._cache(client)

        with self.assertLogs("fleetwatch.routing", level="WARNING"):
            cache.ensure(self.trip, self.route, now=START).result(timeout=5)
        self.assertFalse(cache.disabled)
        self.assertIsNone(cache.lookup(cache.cache_key(self.trip, self.route)))

        client.error = None
        cache.ensure(self.trip, self.route, now=START).result(timeout=5)
        self.assertEqual(client.calls, 2)
        self.assertIsNotNone(cache.lookup(cache.cache_key(self.trip, self.route)))

    def test_no_credential_or_short_route_is_a_no_op(self):
        unconfigured = self._cache(None)
        self.assertIsNone(unconfigured.ensure(self.trip, self.route, now=START))

        client = CountingClient()
        cache = self._cache(client)
        self.assertIsNone(cache.ensure(self.trip, [BEIRUT_A], now=START))
        self.assertEqual(client.calls, 0)

    def test_route_or_status_change_changes_the_key(self):
        key = RoadGeometryCache.cache_key(self.trip, self.route)
        self.assertNotEqual(key, RoadGeometryCache.cache_key(make_trip("COMPLETED"), self.route))
        self.assertNotEqual(key, RoadGeometryCache.cache_key(self.trip, [BEIRUT_A, (33.92, 35.52)]))
        self.assertEqual(key, RoadGeometryCache.cache_key(make_trip(duration_min=99), self.route))


class FleetSessionTests(SimpleTestCase):
    def test_invalid_grid_precision_is_a_configuration_error(self):
        with self.assertRaises(ImproperlyConfigured):
            FleetSession(grid_precision=-0.01)

    @override_settings(FLEET_CONFIG={"grid_precision_deg": 0}, ROUTING_CONFIG={"api_key": ""})
    def test_settings_are_validated(self):
        with self.assertRaises(ImproperlyConfigured):
            FleetSession.from_settings()

    def test_one_malformed_trip_does_not_break_the_snapshot(self):
        session = FleetSession()
        self.addCleanup(session.close)
        trips = [
            make_trip(trip_id=1, duration_min=1e300),
            make_trip(trip_id=2, trip_date="9999-12-31T23:50:00Z"),
            make_trip(trip_id=3, duration_min=10),
        ]
        snapshot = session.evaluate(trips, now=START + timedelta(minutes=5))
        self.assertEqual(snapshot["counts"]["positioned"], 3)
        self.assertEqual(snapshot["counts"]["phases"], {"PICKUP": 2, "TRANSIT": 1, "DESTINATION": 0})

    def test_tick_floors_to_the_evaluation_step(self):
        session = FleetSession(tick_seconds=30)
        self.addCleanup(session.close)
        now = datetime(2026, 3, 1, 9, 0, 47, tzinfo=timezone.utc)
        self.assertEqual(session.tick(now), datetime(2026, 3, 1, 9, 0, 30, tzinfo=timezone.utc))

    def test_evaluate_reports_positions_paths_and_density(self):
        road = RoadGeometry(
            points=(BEIRUT_A, (33.902, 35.507), (33.906, 35.509), BEIRUT_B),
            distance_km=1.52,
            duration_in_traffic_min=15,
            baseline_duration_min=10,
            traffic_index=33,
        )
        client = CountingClient(result=road, hold=True)
        session = FleetSession(geometry_cache=RoadGeometryCache(client))
        self.addCleanup(session.close)

        trips = [
            make_trip(trip_id=1, duration_min=10),
            make_trip("QUOTED", trip_id=2),
            make_trip("COMPLETED", trip_id=3),
            make_trip(trip_id=4, pickup=None, destination=None),
        ]
        now = START + timedelta(minutes=5)

        first = session.evaluate(trips, now=now)
        self.assertEqual(first["counts"]["positioned"], 3)
        self.assertEqual(first["counts"]["unpositioned"], 1)
        self.assertEqual(first["counts"]["phases"], {"PICKUP": 1, "TRANSIT": 1, "DESTINATION": 1})
        self.assertEqual(first["counts"]["paths"], {"road": 0, "estimated": 2})
        self.assertEqual(
            first["bounds"],
            {"south": 33.90, "west": 35.50, "north": 33.91, "east": 35.51},
        )
        markers = {marker["trip_id"]: marker for marker in first["trips"]}
        self.assertEqual(markers[1]["phase"], "TRANSIT")
        self.assertEqual(markers[1]["path_geojson"]["type"], "LineString")
        self.assertIsNone(markers[1]["traffic"])
        self.assertEqual(markers[3]["path"], [])
        self.assertEqual(sum(cell["count"] for cell in first["density"]), 3)

        # Let the background fetches land, then re-evaluate from the cache.
        client.release.set()
        session.geometry_cache.close()
        self.assertEqual(client.calls, 3)

        second = session.evaluate(trips, now=now)
        self.assertEqual(second["counts"]["road_geometry_entries"], 3)
        self.assertEqual(second["counts"]["paths"], {"road": 2, "estimated": 0})
        self.assertEqual(client.calls, 3)
        transit = {marker["trip_id"]: marker for marker in second["trips"]}[1]
        self.assertEqual(transit["path_source"], "road")
        self.assertEqual(transit["path"][-1], {"lat": 33.91, "lng": 35.51})
        self.assertEqual(
            transit["traffic"],
            {
                "distance_km": 1.52,
                "duration_in_traffic_min": 15,
                "baseline_duration_min": 10,
                "traffic_index": 33,
            },
        )


@override_settings(ROUTING_CONFIG={"api_key": ""})
class FleetAPITests(TestCase):
    def setUp(self):
        self.app_config = apps.get_app_config("fleetwatch")
        self.app_config.reset_session()
        self.addCleanup(self.app_config.reset_session)
        self.client = Client()

        now = datetime.now(timezone.utc)
        Trip.objects.create(
            status="CONFIRMED",
            trip_date=(now - timedelta(minutes=5)).isoformat(),
            duration_min=10,
            pickup_lat=33.90,
            pickup_lng=35.50,
            dest_lat=33.91,
            dest_lng=35.51,
        )
        Trip.objects.create(
            status="QUOTED",
            trip_date=now.isoformat(),
            pickup_text="33.8938, 35.5018",
            destination_original_link="https://maps.google.com/?q=33.95,35.55",
            stops=[{"text": "Jounieh"}, {"lat": 33.92, "lng": 35.52}],
        )
        Trip.objects.create(status="CONFIRMED", trip_date=now.isoformat(), pickup_text="Downtown")

    def test_trip_record_carries_every_location_form(self):
        trip = Trip.objects.get(status="QUOTED")
        record = trip.to_record()
        self.assertEqual(record.trip_id, trip.pk)
        self.assertEqual(locations.resolve(record.pickup), (33.8938, 35.5018))
        self.assertEqual(
            locations.assemble_route(record),
            [(33.8938, 35.5018), (33.92, 35.52), (33.95, 35.55)],
        )

    def test_fleet_snapshot_api(self):
        response = self.client.get("/api/fleet/")
        self.assertEqual(response.status_code, 200)

        payload = response.json()
        self.assertEqual(payload["counts"]["positioned"], 2)
        self.assertEqual(payload["counts"]["unpositioned"], 1)
        phases = {marker["status"]: marker["phase"] for marker in payload["trips"]}
        self.assertEqual(phases, {"CONFIRMED": "TRANSIT", "QUOTED": "PICKUP"})
        for marker in payload["trips"]:
            self.assertIn("point", marker)
            self.assertIn("path", marker)
            self.assertIn("heading", marker)
        self.assertFalse(payload["routing"]["configured"])
        self.assertGreater(len(payload["density"]), 0)
        self.assertIn("geometry", payload["density"][0])

    def test_density_api(self):
        response = self.client.get("/api/fleet/density/")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sum(cell["count"] for cell in payload["cells"]), 2)
        self.assertEqual(payload["phases"]["PICKUP"], 1)

    def test_routing_status_api(self):
        response = self.client.get("/api/routing/status/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {
                "configured": False,
                "enabled": False,
                "disabled_reason": None,
                "entries": 0,
                "in_flight": 0,
                "version": 0,
            },
        )

    def test_session_is_shared_until_reset(self):
        first = self.app_config.session
        self.assertIs(first, self.app_config.session)
        self.app_config.reset_session()
        self.assertIsNot(first, self.app_config.session)
