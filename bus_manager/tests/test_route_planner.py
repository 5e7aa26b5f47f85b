import unittest
from datetime import datetime

from bus_manager.geo import LatLng
from bus_manager.maps import Location, MapsError, StaticGeocoder, StraightLineDirectionsClient
from bus_manager.roster import RosterStore
from bus_manager.route_planner import (
    END_NAME,
    START_NAME,
    RoutePlanner,
    RouteService,
    Waypoint,
    create_smart_chunks,
    find_best_connection_point,
    google_maps_link,
    sort_by_proximity,
    waze_link,
)
from bus_manager.storage import InMemoryStorageClient


class CountingDirections(StraightLineDirectionsClient):
    def __init__(self):
        super().__init__()
        self.calls = []

    def route(self, origin, destination, waypoints, optimize=True):
        self.calls.append(optimize)
        return super().route(origin, destination, waypoints, optimize)


def _geocoder():
    return StaticGeocoder(
        {
            "Start": (32.0, 34.8),
            "End": (32.5, 34.8),
            "A": (32.1, 34.8),
            "B": (32.3, 34.8),
            "C": (32.2, 34.8),
        }
    )


def _waypoint(name, lat, lng):
    return Waypoint(name, name, name, Location(lat, lng, name))


class HelperTests(unittest.TestCase):
    def test_sort_by_proximity(self):
        points = [_waypoint("far", 32.4, 34.8), _waypoint("near", 32.1, 34.8), _waypoint("mid", 32.2, 34.8)]
        ordered = sort_by_proximity(points, LatLng(32.0, 34.8))
        self.assertEqual([p.name for p in ordered], ["near", "mid", "far"])

    def test_smart_chunks_respect_size(self):
        points = [_waypoint(str(i), 32.0 + i * 0.01, 34.8) for i in range(12)]
        chunks = create_smart_chunks(points, 5)
        self.assertTrue(all(len(chunk) <= 5 for chunk in chunks))
        self.assertEqual([p for chunk in chunks for p in chunk], points)
        self.assertEqual(create_smart_chunks(points[:3], 5), [points[:3]])

    def test_smart_chunks_break_at_widest_gap(self):
        lats = [32.00, 32.01, 32.02, 32.50, 32.51, 32.52]
        points = [_waypoint(str(i), lat, 34.8) for i, lat in enumerate(lats)]
        chunks = create_smart_chunks(points, 5)
        self.assertEqual([len(chunk) for chunk in chunks], [3, 3])

    def test_connection_point_is_a_candidate(self):
        current = [_waypoint(str(i), 32.0 + i * 0.01, 34.8) for i in range(5)]
        following = [_waypoint(f"n{i}", 32.1 + i * 0.01, 34.8) for i in range(5)]
        best = find_best_connection_point(current, following, LatLng(32.5, 34.8))
        self.assertIn(best, current[-3:] + following[:5])
        self.assertIs(find_best_connection_point(current, [], LatLng(0, 0)), current[-1])

    def test_links(self):
        stops = [
            {"order": 0, "address": "Start", "location": {"lat": 32.0, "lng": 34.8}},
            {"order": 1, "address": "רחוב א", "location": {"lat": 32.1, "lng": 34.8}},
            {"order": 2, "address": "End", "location": {"lat": 32.5, "lng": 34.8}},
        ]
        self.assertEqual(waze_link(stops), "https://waze.com/ul?ll=32.1,34.8&navigate=yes")
        link = google_maps_link(stops)
        self.assertTrue(link.startswith("https://www.google.com/maps/dir/?api=1&origin=Start"))
        self.assertIn("&destination=End", link)
        self.assertIn("&waypoints=%D7%A8", link)
        self.assertTrue(link.endswith("&travelmode=driving"))
        self.assertEqual(google_maps_link(stops[:1]), "")
        self.assertEqual(waze_link([]), "")


class RoutePlannerTests(unittest.TestCase):
    def setUp(self):
        self.planner = RoutePlanner(_geocoder(), StraightLineDirectionsClient())

    def test_single_segment_route(self):
        waypoints = [
            {"name": "Bea", "address": "B", "id": "s2"},
            {"name": "Avi", "address": "A", "id": "s1"},
            {"name": "Lost", "address": "Nowhere", "id": "s9"},
        ]
        route = self.planner.calculate_route(
            "Start", "End", waypoints, now=datetime(2024, 9, 1, 7, 0)
        )
        stops = route["stops"]
        self.assertTrue(route["success"])
        self.assertFalse(route["isChunked"])
        self.assertEqual([s["name"] for s in stops], [START_NAME, "Avi", "Bea", END_NAME])
        self.assertEqual([s["order"] for s in stops], [0, 1, 2, 3])
        self.assertEqual(route["failedAddresses"], ["Nowhere"])
        self.assertEqual(route["summary"]["stopsCount"], 4)
        self.assertEqual(stops[0]["estimatedArrival"], "07:00")
        self.assertEqual(stops[0]["durationSeconds"], 0)
        self.assertGreater(stops[-1]["distanceMeters"], 0)
        self.assertAlmostEqual(
            route["summary"]["totalDistanceMeters"],
            sum(s["distanceMeters"] for s in stops),
        )
        self.assertEqual(route["wazeLink"], "https://waze.com/ul?ll=32.1,34.8&navigate=yes")

    def test_unknown_endpoint_raises(self):
        with self.assertRaises(MapsError):
            self.planner.calculate_route("Nowhere", "End", [])

    def test_chunked_route_visits_every_stop_once(self):
        geocoder = StaticGeocoder()
        geocoder.add("Start", 32.0, 34.8)
        geocoder.add("End", 32.9, 34.8)
        waypoints = []
        for i in range(12):
            geocoder.add(f"addr{i}", 32.05 + i * 0.06, 34.8 + (i % 2) * 0.01)
            waypoints.append({"name": f"s{i}", "address": f"addr{i}", "id": f"s{i}"})
        planner = RoutePlanner(geocoder, StraightLineDirectionsClient(), chunk_size=5)

        route = planner.calculate_route("Start", "End", waypoints)

        self.assertTrue(route["isChunked"])
        self.assertGreater(route["chunkCount"], 1)
        stops = route["stops"]
        self.assertEqual(stops[0]["name"], START_NAME)
        self.assertEqual(stops[-1]["name"], END_NAME)
        middle_ids = [s["id"] for s in stops[1:-1]]
        self.assertEqual(sorted(middle_ids), sorted(w["id"] for w in waypoints))
        self.assertEqual([s["order"] for s in stops], list(range(len(stops))))


class RouteServiceTests(unittest.TestCase):
    def setUp(self):
        self.store = RosterStore(InMemoryStorageClient())
        self.directions = CountingDirections()
        self.service = RouteService(self.store, RoutePlanner(_geocoder(), self.directions))
        self.store.save_bus({"id": "b1", "name": "Line 1", "startLocation": "Start", "endLocation": "End"})
        for sid, first, address in (("s1", "Avi", "A"), ("s2", "Bea", "B"), ("s3", "Chen", "C")):
            self.store.save_student(
                {"id": sid, "firstName": first, "lastName": "Cohen", "address": address, "busId": "b1"}
            )

    def test_validation(self):
        with self.assertRaises(KeyError):
            self.service.calculate_for_bus("missing")
        self.store.save_bus({"id": "b2", "name": "No end", "startLocation": "Start"})
        with self.assertRaises(ValueError):
            self.service.calculate_for_bus("b2")
        self.store.save_bus({"id": "b3", "name": "Empty", "startLocation": "Start", "endLocation": "End"})
        with self.assertRaises(ValueError):
            self.service.calculate_for_bus("b3")

    def test_route_is_cached_until_forced(self):
        route = self.service.calculate_for_bus("b1")
        self.assertEqual([s["id"] for s in route["stops"][1:-1]], ["s1", "s3", "s2"])
        self.assertEqual(route["stops"][1]["name"], "Avi Cohen")
        self.assertIs(self.service.calculate_for_bus("b1"), route)
        self.assertEqual(self.directions.calls, [True])
        self.service.calculate_for_bus("b1", force=True)
        self.assertEqual(self.directions.calls, [True, True])

    def test_reorder_keeps_manual_order(self):
        with self.assertRaises(ValueError):
            self.service.reorder_stop("b1", 1, 2)
        self.service.calculate_for_bus("b1")

        route = self.service.reorder_stop("b1", 1, 3)

        self.assertEqual([s["id"] for s in route["stops"][1:-1]], ["s3", "s2", "s1"])
        self.assertEqual(self.directions.calls, [True, False])
        self.assertIs(self.service.cached_route("b1"), route)

    def test_reorder_ignores_fixed_stops(self):
        route = self.service.calculate_for_bus("b1")
        self.assertIs(self.service.reorder_stop("b1", 0, 2), route)
        self.assertIs(self.service.reorder_stop("b1", 2, 4), route)
        self.assertIs(self.service.reorder_stop("b1", 2, 2), route)
        self.assertEqual(self.directions.calls, [True])

    def test_clear_cache(self):
        self.service.calculate_for_bus("b1")
        self.service.clear_cache("b1")
        self.assertIsNone(self.service.cached_route("b1"))
        self.service.calculate_for_bus("b1")
        self.service.clear_cache()
        self.assertIsNone(self.service.cached_route("b1"))


if __name__ == "__main__":
    unittest.main()
