import unittest

from bus_manager.geo import (
    DistanceCache,
    LatLng,
    centroid,
    distance_km,
    distance_to_route_line_km,
    format_distance,
    format_duration,
    geographic_spread,
    haversine_km,
    is_on_route_direction,
    load_variance,
)

TEL_AVIV = LatLng(32.0853, 34.7818)
JERUSALEM = LatLng(31.7683, 35.2137)


class DistanceTests(unittest.TestCase):
    def test_haversine(self):
        self.assertAlmostEqual(haversine_km(0, 0, 0, 0), 0.0)
        self.assertTrue(50 < distance_km(TEL_AVIV, JERUSALEM) < 58)
        self.assertAlmostEqual(
            distance_km(TEL_AVIV, JERUSALEM), distance_km(JERUSALEM, TEL_AVIV)
        )

    def test_distance_to_route_line(self):
        start, end = LatLng(0, 0), LatLng(0, 1)
        beside = distance_to_route_line_km(LatLng(0.1, 0.5), start, end)
        self.assertAlmostEqual(beside, haversine_km(0.1, 0.5, 0, 0.5), places=6)
        # Past the end of the segment the nearest point is the end itself.
        beyond = distance_to_route_line_km(LatLng(0, 2), start, end)
        self.assertAlmostEqual(beyond, distance_km(LatLng(0, 2), end), places=6)

    def test_degenerate_segment(self):
        point = LatLng(0.2, 0.2)
        self.assertAlmostEqual(
            distance_to_route_line_km(point, LatLng(0, 0), LatLng(0, 0)),
            distance_km(point, LatLng(0, 0)),
        )

    def test_route_direction(self):
        start, end = LatLng(32.0, 34.8), LatLng(32.5, 34.8)
        self.assertTrue(is_on_route_direction(LatLng(32.2, 34.9), start, end))
        self.assertFalse(is_on_route_direction(LatLng(31.5, 34.8), start, end))
        # Just behind the start still counts.
        self.assertTrue(is_on_route_direction(LatLng(31.99, 34.8), start, end))


class AggregateTests(unittest.TestCase):
    def test_centroid(self):
        self.assertEqual(centroid([]), LatLng(0.0, 0.0))
        self.assertEqual(centroid([LatLng(0, 0), LatLng(2, 4)]), LatLng(1, 2))

    def test_geographic_spread(self):
        self.assertEqual(geographic_spread([TEL_AVIV]), {"maxDistance": 0.0, "avgDistance": 0.0})
        spread = geographic_spread([TEL_AVIV, JERUSALEM])
        self.assertAlmostEqual(spread["maxDistance"], distance_km(TEL_AVIV, JERUSALEM))
        self.assertAlmostEqual(spread["avgDistance"], spread["maxDistance"])

    def test_spread_samples_large_inputs(self):
        points = [LatLng(32 + i * 0.001, 34.8) for i in range(200)]
        spread = geographic_spread(points)
        self.assertGreater(spread["maxDistance"], 0)
        self.assertLessEqual(spread["maxDistance"], distance_km(points[0], points[-1]))

    def test_load_variance(self):
        self.assertEqual(load_variance([]), 0.0)
        self.assertEqual(load_variance([10, 10]), 0.0)
        self.assertEqual(load_variance([0, 10]), 5.0)


class FormatTests(unittest.TestCase):
    def test_duration(self):
        self.assertEqual(format_duration(600), "10 דקות")
        self.assertEqual(format_duration(3900), "1 שעות ו-5 דקות")

    def test_distance(self):
        self.assertEqual(format_distance(12345), '12.3 ק"מ')


class DistanceCacheTests(unittest.TestCase):
    def test_memoises_both_directions(self):
        cache = DistanceCache()
        meters = cache.meters(TEL_AVIV, JERUSALEM)
        self.assertAlmostEqual(meters, distance_km(TEL_AVIV, JERUSALEM) * 1000)
        self.assertEqual(len(cache), 2)
        self.assertEqual(cache.meters(JERUSALEM, TEL_AVIV), meters)
        self.assertEqual(len(cache), 2)

    def test_prefetch_and_stats(self):
        cache = DistanceCache()
        points = [TEL_AVIV, JERUSALEM, LatLng(32.79, 34.99)]
        self.assertEqual(cache.prefetch(points), 3)
        self.assertEqual(cache.stats()["size"], 6)
        self.assertAlmostEqual(cache.stats()["memoryEstimateKB"], 6 * 50 / 1024)


if __name__ == "__main__":
    unittest.main()
