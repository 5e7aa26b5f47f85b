import unittest
from unittest.mock import MagicMock

import requests

from bus_manager.geo import LatLng
from bus_manager.maps import (
    GoogleDirectionsClient,
    GoogleGeocoder,
    Location,
    MapsError,
    StaticGeocoder,
    StraightLineDirectionsClient,
    clean_address,
)


def _response(payload):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.return_value = None
    return response


def _geocode_result(lat, lng, formatted="רחוב הרצל 1, חיפה", types=None):
    return {
        "status": "OK",
        "results": [
            {
                "formatted_address": formatted,
                "types": types or ["street_address"],
                "geometry": {"location": {"lat": lat, "lng": lng}},
            }
        ],
    }


class CleanAddressTests(unittest.TestCase):
    def test_strips_control_characters(self):
        self.assertEqual(clean_address("  הרצל\x00 1\x1f "), "הרצל 1")
        self.assertEqual(clean_address(None), "")


class GoogleGeocoderTests(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.geocoder = GoogleGeocoder(api_key="key", session=self.session)

    def test_first_strategy_hit_is_cached(self):
        self.session.get.return_value = _response(_geocode_result(32.8, 35.0))
        location = self.geocoder.geocode("הרצל 1, חיפה")
        self.assertEqual(location, Location(32.8, 35.0, "רחוב הרצל 1, חיפה"))
        params = self.session.get.call_args.kwargs["params"]
        self.assertEqual(params["components"], "country:IL")
        self.assertEqual(params["language"], "he")
        self.assertEqual(params["key"], "key")

        self.geocoder.geocode("  הרצל 1, חיפה ")
        self.assertEqual(self.session.get.call_count, 1)

    def test_country_only_result_tries_next_strategy(self):
        self.session.get.side_effect = [
            _response(_geocode_result(31.0, 35.0, formatted="ישראל", types=["country"])),
            _response(_geocode_result(32.1, 34.8)),
        ]
        location = self.geocoder.geocode("כפר קטן")
        self.assertEqual((location.lat, location.lng), (32.1, 34.8))
        second = self.session.get.call_args_list[1].kwargs["params"]
        self.assertEqual(second["address"], "כפר קטן, ישראל")

    def test_all_strategies_failing_returns_none(self):
        self.session.get.side_effect = [
            _response({"status": "ZERO_RESULTS", "results": []}),
            requests.ConnectionError("boom"),
            _response({"status": "ZERO_RESULTS", "results": []}),
            _response({"status": "ZERO_RESULTS", "results": []}),
        ]
        self.assertIsNone(self.geocoder.geocode("nowhere"))
        self.assertEqual(self.session.get.call_count, 4)

    def test_blank_address_skips_request(self):
        self.assertIsNone(self.geocoder.geocode("   "))
        self.session.get.assert_not_called()


class StaticGeocoderTests(unittest.TestCase):
    def test_lookup_is_case_insensitive(self):
        geocoder = StaticGeocoder({"Main St 1": (32.0, 34.0)})
        self.assertEqual(geocoder.geocode("main st 1").lat, 32.0)
        self.assertIsNone(geocoder.geocode("Other"))


class GoogleDirectionsTests(unittest.TestCase):
    def setUp(self):
        self.session = MagicMock()
        self.client = GoogleDirectionsClient(api_key="key", session=self.session)
        self.origin = LatLng(32.0, 34.8)
        self.destination = LatLng(32.5, 34.9)
        self.stops = [LatLng(32.1, 34.8), LatLng(32.2, 34.8)]

    def test_optimized_route(self):
        self.session.get.return_value = _response(
            {
                "status": "OK",
                "routes": [
                    {
                        "waypoint_order": [1, 0],
                        "legs": [
                            {"distance": {"value": 1000}, "duration": {"value": 60}},
                            {"distance": {"value": 2000}, "duration": {"value": 120}},
                            {"distance": {"value": 3000}, "duration": {"value": 180}},
                        ],
                    }
                ],
            }
        )
        result = self.client.route(self.origin, self.destination, self.stops, optimize=True)
        params = self.session.get.call_args.kwargs["params"]
        self.assertEqual(params["waypoints"], "optimize:true|32.1,34.8|32.2,34.8")
        self.assertEqual(params["mode"], "driving")
        self.assertEqual(result.waypoint_order, [1, 0])
        self.assertEqual(result.total_distance_m, 6000)
        self.assertEqual(result.total_duration_s, 360)

    def test_manual_order_is_kept(self):
        self.session.get.return_value = _response(
            {
                "status": "OK",
                "routes": [
                    {
                        "legs": [{"distance": {"value": 1}, "duration": {"value": 1}}] * 3,
                    }
                ],
            }
        )
        result = self.client.route(self.origin, self.destination, self.stops, optimize=False)
        self.assertEqual(
            self.session.get.call_args.kwargs["params"]["waypoints"], "32.1,34.8|32.2,34.8"
        )
        self.assertEqual(result.waypoint_order, [0, 1])

    def test_error_status_raises(self):
        self.session.get.return_value = _response({"status": "MAX_WAYPOINTS_EXCEEDED"})
        with self.assertRaises(MapsError) as ctx:
            self.client.route(self.origin, self.destination, self.stops)
        self.assertIn("MAX_WAYPOINTS_EXCEEDED", str(ctx.exception))


class StraightLineDirectionsTests(unittest.TestCase):
    def test_nearest_neighbour_when_optimizing(self):
        client = StraightLineDirectionsClient()
        origin = LatLng(32.0, 34.8)
        far, near = LatLng(32.4, 34.8), LatLng(32.1, 34.8)
        result = client.route(origin, LatLng(32.5, 34.8), [far, near], optimize=True)
        self.assertEqual(result.waypoint_order, [1, 0])
        self.assertEqual(len(result.legs), 3)
        unoptimized = client.route(origin, LatLng(32.5, 34.8), [far, near], optimize=False)
        self.assertEqual(unoptimized.waypoint_order, [0, 1])
        self.assertGreater(unoptimized.total_distance_m, result.total_distance_m)

    def test_duration_uses_average_speed(self):
        client = StraightLineDirectionsClient(speed_kmh=60)
        result = client.route(LatLng(0, 0), LatLng(0, 1), [])
        leg = result.legs[0]
        self.assertAlmostEqual(leg.duration_s, leg.distance_m / 1000 / 60 * 3600)


if __name__ == "__main__":
    unittest.main()
