"""
Distance helpers shared by route planning and student assignment.

Points are anything with ``lat`` and ``lng`` attributes.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol, Sequence

EARTH_RADIUS_KM = 6371.0
# Students this close to the route start always count as on-direction.
START_RADIUS_KM = 5.0


class HasLatLng(Protocol):
    lat: float
    lng: float


@dataclass(frozen=True)
class LatLng:
    lat: float
    lng: float


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_km(a: HasLatLng, b: HasLatLng) -> float:
    return haversine_km(a.lat, a.lng, b.lat, b.lng)


def distance_to_route_line_km(
    point: HasLatLng, start: HasLatLng, end: HasLatLng
) -> float:
    """Distance from ``point`` to the start→end segment.

    The projection is done in plain lat/lng space and clamped to the segment;
    only the final distance uses haversine.
    """
    dx = end.lng - start.lng
    dy = end.lat - start.lat
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return distance_km(point, start)
    t = ((point.lng - start.lng) * dx + (point.lat - start.lat) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return haversine_km(point.lat, point.lng, start.lat + t * dy, start.lng + t * dx)


def is_on_route_direction(
    point: HasLatLng, start: HasLatLng, end: HasLatLng
) -> bool:
    dot = (end.lng - start.lng) * (point.lng - start.lng) + (
        end.lat - start.lat
    ) * (point.lat - start.lat)
    return dot >= 0 or distance_km(point, start) < START_RADIUS_KM


def centroid(points: Sequence[HasLatLng]) -> LatLng:
    if not points:
        return LatLng(0.0, 0.0)
    return LatLng(
        sum(p.lat for p in points) / len(points),
        sum(p.lng for p in points) / len(points),
    )


def geographic_spread(points: Sequence[HasLatLng]) -> dict:
    """Max and mean pairwise distance (km), sampling at most 50 points."""
    if len(points) < 2:
        return {"maxDistance": 0.0, "avgDistance": 0.0}
    if len(points) > 50:
        step = math.ceil(len(points) / 50)
        points = [p for i, p in enumerate(points) if i % step == 0][:50]

    max_distance = 0.0
    total = 0.0
    pairs = 0
    for i in range(len(points)):
        for j in range(i + 1, len(points)):
            dist = distance_km(points[i], points[j])
            max_distance = max(max_distance, dist)
            total += dist
            pairs += 1
    return {
        "maxDistance": max_distance,
        "avgDistance": total / pairs if pairs else 0.0,
    }


def load_variance(loads: Iterable[float]) -> float:
    """Population standard deviation of bus loads."""
    loads = list(loads)
    if not loads:
        return 0.0
    mean = sum(loads) / len(loads)
    return math.sqrt(sum((load - mean) ** 2 for load in loads) / len(loads))


def format_duration(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 0:
        return f"{hours} שעות ו-{minutes} דקות"
    return f"{minutes} דקות"


def format_distance(meters: float) -> str:
    return f'{meters / 1000:.1f} ק"מ'


class DistanceCache:
    """Memoised point-to-point distances in metres.

    Keys round coordinates to 5 decimals (about a metre), and both directions
    are stored on first computation.
    """

    def __init__(self):
        self._cache: dict[str, float] = {}

    @staticmethod
    def _key(a: HasLatLng, b: HasLatLng) -> str:
        return f"{a.lat:.5f},{a.lng:.5f}-{b.lat:.5f},{b.lng:.5f}"

    def meters(self, a: HasLatLng, b: HasLatLng) -> float:
        key = self._key(a, b)
        cached: Optional[float] = self._cache.get(key)
        if cached is not None:
            return cached
        value = distance_km(a, b) * 1000
        self._cache[key] = value
        self._cache[self._key(b, a)] = value
        return value

    def prefetch(self, points: Sequence[HasLatLng]) -> int:
        calculated = 0
        for i in range(len(points)):
            for j in range(i + 1, len(points)):
                self.meters(points[i], points[j])
                calculated += 1
        return calculated

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> dict:
        return {
            "size": len(self._cache),
            "memoryEstimateKB": len(self._cache) * 50 / 1024,
        }
