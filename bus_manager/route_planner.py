"""
Bus route planning: geocode stops, ask the directions client for an ordered
driving route, and split long routes into chunks the directions API accepts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence
from urllib.parse import quote

from bus_manager.geo import centroid, distance_km, format_distance, format_duration
from bus_manager.maps import DirectionsClient, Geocoder, Location, MapsError
from bus_manager.roster import RosterStore, student_name

logger = logging.getLogger(__name__)

# The directions API takes 25 waypoints; keep two spare for chunk connections.
MAX_WAYPOINTS = 23

START_NAME = "נקודת התחלה"
END_NAME = "יעד סופי"


@dataclass
class Waypoint:
    name: str
    address: str
    id: Optional[str]
    location: Location

    @property
    def lat(self) -> float:
        return self.location.lat

    @property
    def lng(self) -> float:
        return self.location.lng


def sort_by_proximity(waypoints: list[Waypoint], origin: Location) -> list[Waypoint]:
    """Nearest-neighbour ordering starting from ``origin``."""
    if len(waypoints) <= 1:
        return list(waypoints)
    remaining = list(waypoints)
    ordered = []
    current = origin
    while remaining:
        nearest = min(remaining, key=lambda wp: distance_km(current, wp))
        remaining.remove(nearest)
        ordered.append(nearest)
        current = nearest
    return ordered


def create_smart_chunks(waypoints: list[Waypoint], chunk_size: int) -> list[list[Waypoint]]:
    """Split into chunks of at most ``chunk_size``, cutting at the widest gap
    among the last five positions of each full chunk."""
    if len(waypoints) <= chunk_size:
        return [list(waypoints)]
    chunks = []
    remaining = list(waypoints)
    while remaining:
        if len(remaining) <= chunk_size:
            chunks.append(remaining)
            break
        best_break = chunk_size - 1
        max_gap = 0.0
        for i in range(max(0, chunk_size - 5), min(chunk_size - 1, len(remaining) - 1)):
            gap = distance_km(remaining[i], remaining[i + 1])
            if gap > max_gap:
                max_gap = gap
                best_break = i
        chunks.append(remaining[: best_break + 1])
        remaining = remaining[best_break + 1 :]
    return chunks


def find_best_connection_point(
    current: list[Waypoint], following: list[Waypoint], final_destination: Location
) -> Waypoint:
    """Pick the hand-over stop between two chunks.

    Candidates are the last 3 stops of ``current`` and the first 5 of
    ``following``; lower ``0.3*d(current centroid) + 0.4*d(next centroid) +
    0.3*d(final destination)`` wins.
    """
    if not following:
        return current[-1]
    current_center = centroid(current)
    best = following[0]
    best_score = float("inf")
    for wp in current[-3:] + following[:5]:
        next_center = centroid([w for w in following if w is not wp])
        score = (
            distance_km(current_center, wp) * 0.3
            + distance_km(wp, next_center) * 0.4
            + distance_km(wp, final_destination) * 0.3
        )
        if score < best_score:
            best_score = score
            best = wp
    return best


def waze_link(stops: Sequence[dict]) -> str:
    first = next((s for s in stops if s.get("order") == 1), None)
    if not first or not first.get("location"):
        return ""
    loc = first["location"]
    return f"https://waze.com/ul?ll={loc['lat']},{loc['lng']}&navigate=yes"


def google_maps_link(stops: Sequence[dict]) -> str:
    if len(stops) < 2:
        return ""
    url = "https://www.google.com/maps/dir/?api=1"
    url += f"&origin={quote(stops[0]['address'], safe='')}"
    url += f"&destination={quote(stops[-1]['address'], safe='')}"
    middle = stops[1:-1]
    if middle:
        url += "&waypoints=" + "|".join(quote(s["address"], safe="") for s in middle)
    return url + "&travelmode=driving"


def _stop(order: int, name: str, address: str, location: Location, stop_id=None, leg=None) -> dict:
    stop = {
        "order": order,
        "name": name,
        "address": address,
        "id": stop_id,
        "location": location.as_dict(),
        "duration": None,
        "durationSeconds": 0,
        "distance": None,
        "distanceMeters": 0,
    }
    if leg is not None:
        stop.update(
            duration=format_duration(leg.duration_s),
            durationSeconds=leg.duration_s,
            distance=format_distance(leg.distance_m),
            distanceMeters=leg.distance_m,
        )
    return stop


class RoutePlanner:
    def __init__(self, geocoder: Geocoder, directions: DirectionsClient, chunk_size: int = MAX_WAYPOINTS):
        self.geocoder = geocoder
        self.directions = directions
        self.chunk_size = chunk_size

    def _segment(
        self,
        origin: Waypoint,
        destination: Waypoint,
        waypoints: list[Waypoint],
        optimize: bool,
    ) -> tuple[list[dict], float, float]:
        result = self.directions.route(
            origin.location, destination.location, [wp.location for wp in waypoints], optimize
        )
        if len(result.legs) != len(waypoints) + 1:
            raise MapsError("חישוב המסלול נכשל: unexpected leg count")
        stops = [_stop(0, origin.name, origin.address, origin.location, origin.id)]
        for new_index, original_index in enumerate(result.waypoint_order):
            wp = waypoints[original_index]
            stops.append(
                _stop(
                    new_index + 1,
                    wp.name or f"תחנה {new_index + 1}",
                    wp.address,
                    wp.location,
                    wp.id,
                    result.legs[new_index],
                )
            )
        stops.append(
            _stop(
                len(stops),
                destination.name,
                destination.address,
                destination.location,
                destination.id,
                result.legs[-1],
            )
        )
        return stops, result.total_distance_m, result.total_duration_s

    def _chunks(
        self, waypoints: list[Waypoint], origin: Location, optimize: bool
    ) -> list[list[Waypoint]]:
        if optimize:
            return create_smart_chunks(sort_by_proximity(waypoints, origin), self.chunk_size)
        return [
            waypoints[i : i + self.chunk_size]
            for i in range(0, len(waypoints), self.chunk_size)
        ]

    def calculate_route(
        self,
        origin: str,
        destination: str,
        waypoints: Sequence[dict],
        optimize: bool = True,
        now: Optional[datetime] = None,
    ) -> dict:
        origin_loc = self.geocoder.geocode(origin)
        dest_loc = self.geocoder.geocode(destination)
        if not origin_loc or not dest_loc:
            raise MapsError("לא ניתן למצוא את הכתובות")

        located: list[Waypoint] = []
        failed: list[str] = []
        for wp in waypoints:
            loc = self.geocoder.geocode(wp.get("address") or "")
            if loc:
                located.append(Waypoint(wp.get("name") or "", wp.get("address") or "", wp.get("id"), loc))
            else:
                logger.warning("Failed to geocode %r for %s", wp.get("address"), wp.get("name"))
                failed.append(wp.get("address") or "")
        logger.info("Geocoded %d/%d waypoints", len(located), len(waypoints))

        start = Waypoint(START_NAME, origin, None, origin_loc)
        end = Waypoint(END_NAME, destination, None, dest_loc)

        if len(located) <= self.chunk_size:
            stops, total_m, total_s = self._segment(start, end, located, optimize)
            chunk_count = 1
        else:
            stops, total_m, total_s, chunk_count = self._chunked(start, end, located, optimize)

        for index, stop in enumerate(stops):
            stop["order"] = index
        self._add_arrival_times(stops, now or datetime.now())

        return {
            "success": True,
            "stops": stops,
            "summary": {
                "totalDistance": format_distance(total_m),
                "totalDistanceMeters": total_m,
                "totalDuration": format_duration(total_s),
                "totalDurationSeconds": total_s,
                "stopsCount": len(stops),
            },
            "isChunked": chunk_count > 1,
            "chunkCount": chunk_count,
            "failedAddresses": failed,
            "wazeLink": waze_link(stops),
            "googleMapsLink": google_maps_link(stops),
        }

    def _chunked(
        self, start: Waypoint, end: Waypoint, located: list[Waypoint], optimize: bool
    ) -> tuple[list[dict], float, float, int]:
        chunks = self._chunks(located, start.location, optimize)
        logger.info("Split %d waypoints into %d chunks", len(located), len(chunks))

        all_stops: list[dict] = []
        total_m = 0.0
        total_s = 0.0
        current_origin = start
        for i, chunk in enumerate(chunks):
            is_last = i == len(chunks) - 1
            if is_last:
                chunk_dest = end
            elif optimize:
                chunk_dest = find_best_connection_point(chunk, chunks[i + 1], end.location)
            else:
                chunk_dest = chunk[-1]
            if not is_last:
                # The hand-over stop ends this chunk and starts the next one.
                chunk = [wp for wp in chunk if wp is not chunk_dest]
                chunks[i + 1] = [wp for wp in chunks[i + 1] if wp is not chunk_dest]

            stops, dist_m, dur_s = self._segment(current_origin, chunk_dest, chunk, optimize)
            all_stops.extend(stops if i == 0 else stops[1:])
            total_m += dist_m
            total_s += dur_s
            current_origin = chunk_dest
        return all_stops, total_m, total_s, len(chunks)

    @staticmethod
    def _add_arrival_times(stops: list[dict], now: datetime) -> None:
        elapsed = 0.0
        for index, stop in enumerate(stops):
            if index > 0:
                elapsed += stop.get("durationSeconds") or 0
            stop["estimatedArrival"] = (now + timedelta(seconds=elapsed)).strftime("%H:%M")


class RouteService:
    """Per-bus route calculation with a cache of results and manual stop order."""

    def __init__(self, store: RosterStore, planner: RoutePlanner):
        self.store = store
        self.planner = planner
        self._cache: dict[str, dict] = {}

    def cached_route(self, bus_id: str) -> Optional[dict]:
        entry = self._cache.get(bus_id)
        return entry["route"] if entry else None

    def calculate_for_bus(self, bus_id: str, force: bool = False) -> dict:
        bus = self.store.get_bus(bus_id)
        if not bus:
            raise KeyError("האוטובוס לא נמצא")
        if not bus.get("startLocation") or not bus.get("endLocation"):
            raise ValueError("יש להגדיר נקודות התחלה וסיום לאוטובוס")
        students = self.store.students_by_bus(bus_id)
        if not students:
            raise ValueError("אין תלמידים משויכים לאוטובוס זה")

        entry = self._cache.get(bus_id)
        if entry and entry.get("route") and not force:
            return entry["route"]

        if entry and entry.get("waypoints") and not force:
            waypoints = entry["waypoints"]
            optimize = False
        else:
            waypoints = [
                {"name": student_name(s), "address": s.get("address", ""), "id": s.get("id")}
                for s in students
            ]
            optimize = True

        route = self.planner.calculate_route(
            bus["startLocation"], bus["endLocation"], waypoints, optimize=optimize
        )
        self._cache[bus_id] = {
            "route": route,
            "waypoints": [
                {
                    "name": stop["name"],
                    "address": stop["address"],
                    "id": stop.get("id") or f"stop-{index}",
                }
                for index, stop in enumerate(route["stops"][1:-1])
            ],
        }
        return route

    def reorder_stop(self, bus_id: str, old_index: int, new_index: int) -> dict:
        """Move a stop (indices count the fixed start stop) and recalculate
        the route in the new order without re-optimising it."""
        entry = self._cache.get(bus_id)
        if not entry or not entry.get("route"):
            raise ValueError("יש לחשב מסלול לפני שינוי סדר התחנות")
        route = entry["route"]
        last = len(route["stops"]) - 1
        if old_index == new_index or 0 in (old_index, new_index) or last in (old_index, new_index):
            return route
        waypoints = entry["waypoints"]
        old_pos, new_pos = old_index - 1, new_index - 1
        if not (0 <= old_pos < len(waypoints) and 0 <= new_pos < len(waypoints)):
            return route

        waypoints.insert(new_pos, waypoints.pop(old_pos))
        entry["route"] = None
        logger.info("Reordered stop %d -> %d on bus %s", old_index, new_index, bus_id)
        return self.calculate_for_bus(bus_id)

    def clear_cache(self, bus_id: Optional[str] = None) -> None:
        if bus_id:
            self._cache.pop(bus_id, None)
        else:
            self._cache.clear()
