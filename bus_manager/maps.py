"""
Google Maps adapters: geocoding and driving directions.

The Google clients call the Maps web-service REST APIs with ``requests``.
Offline stand-ins (``StaticGeocoder`` and ``StraightLineDirectionsClient``)
let the rest of the service run without an API key.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import requests

from bus_manager.geo import HasLatLng, distance_km

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"

# South-west / north-east corners used to bias results towards Israel.
ISRAEL_BOUNDS = "29.45,34.25|33.35,35.90"
COUNTRY_ONLY_NAMES = {"ישראל", "Israel"}
OFFLINE_SPEED_KMH = 40.0

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


class MapsError(Exception):
    """Raised when a maps request fails or returns an unusable status."""


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    formatted_address: str = ""

    def as_dict(self) -> dict:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "formattedAddress": self.formatted_address,
        }


@dataclass
class Leg:
    distance_m: float
    duration_s: float


@dataclass
class DirectionsResult:
    legs: list[Leg]
    waypoint_order: list[int]

    @property
    def total_distance_m(self) -> float:
        return sum(leg.distance_m for leg in self.legs)

    @property
    def total_duration_s(self) -> float:
        return sum(leg.duration_s for leg in self.legs)


class Geocoder(Protocol):
    def geocode(self, address: str) -> Optional[Location]:
        ...


class DirectionsClient(Protocol):
    def route(
        self,
        origin: HasLatLng,
        destination: HasLatLng,
        waypoints: Sequence[HasLatLng],
        optimize: bool = True,
    ) -> DirectionsResult:
        ...


def clean_address(address: str) -> str:
    cleaned = _CONTROL_CHARS.sub("", address or "")
    return unicodedata.normalize("NFC", cleaned).strip()


def _is_valid_result(result: dict) -> bool:
    if result.get("formatted_address") in COUNTRY_ONLY_NAMES:
        return False
    return result.get("types") != ["country"]


@dataclass
class GoogleGeocoder:
    """Geocoding API client with a per-address cache and Israeli fallbacks."""

    api_key: str
    language: str = "he"
    region: str = "IL"
    timeout: float = 15.0
    session: Optional[requests.Session] = None

    def __post_init__(self):
        if self.session is None:
            self.session = requests.Session()
        self._cache: dict[str, Location] = {}

    def _strategies(self, address: str) -> list[dict]:
        country = f"country:{self.region}"
        return [
            {"address": address, "components": country, "bounds": ISRAEL_BOUNDS},
            {"address": f"{address}, ישראל", "region": self.region, "bounds": ISRAEL_BOUNDS},
            {"address": f"יישוב {address}", "components": country, "bounds": ISRAEL_BOUNDS},
            {"address": address, "bounds": ISRAEL_BOUNDS, "region": self.region},
        ]

    def _request(self, params: dict) -> Optional[Location]:
        query = dict(params, key=self.api_key, language=self.language)
        response = self.session.get(GEOCODE_URL, params=query, timeout=self.timeout)
        response.raise_for_status()
        payload = response.json()
        results = payload.get("results") or []
        if payload.get("status") != "OK" or not results or not _is_valid_result(results[0]):
            return None
        first = results[0]
        loc = first["geometry"]["location"]
        return Location(loc["lat"], loc["lng"], first.get("formatted_address", ""))

    def geocode(self, address: str) -> Optional[Location]:
        cleaned = clean_address(address)
        if not cleaned:
            return None
        cache_key = cleaned.lower()
        if cache_key in self._cache:
            return self._cache[cache_key]

        for index, params in enumerate(self._strategies(cleaned), start=1):
            try:
                location = self._request(params)
            except (requests.RequestException, ValueError, KeyError) as exc:
                logger.warning(
                    "Geocode strategy %d failed for %r: %s", index, cleaned, exc
                )
                continue
            if location:
                logger.info(
                    "Geocoded %r (strategy %d) -> %s, %s",
                    cleaned,
                    index,
                    location.lat,
                    location.lng,
                )
                self._cache[cache_key] = location
                return location

        logger.error("Geocode failed for %r: all strategies exhausted", cleaned)
        return None

    def clear_cache(self) -> None:
        self._cache.clear()


@dataclass
class StaticGeocoder:
    """Offline geocoder backed by a fixed address → (lat, lng) mapping."""

    mapping: dict = field(default_factory=dict)

    def __post_init__(self):
        self._locations: dict[str, Location] = {}
        for address, coords in self.mapping.items():
            self.add(address, *coords)

    def add(self, address: str, lat: float, lng: float) -> None:
        self._locations[clean_address(address).lower()] = Location(lat, lng, address)

    def geocode(self, address: str) -> Optional[Location]:
        return self._locations.get(clean_address(address).lower())


def _latlng(point: HasLatLng) -> str:
    return f"{point.lat},{point.lng}"


@dataclass
class GoogleDirectionsClient:
    """Directions API client for driving routes."""

    api_key: str
    language: str = "he"
    timeout: float = 30.0
    session: Optional[requests.Session] = None

    def __post_init__(self):
        if self.session is None:
            self.session = requests.Session()

    def route(
        self,
        origin: HasLatLng,
        destination: HasLatLng,
        waypoints: Sequence[HasLatLng],
        optimize: bool = True,
    ) -> DirectionsResult:
        params = {
            "origin": _latlng(origin),
            "destination": _latlng(destination),
            "mode": "driving",
            "language": self.language,
            "key": self.api_key,
        }
        if waypoints:
            stops = "|".join(_latlng(wp) for wp in waypoints)
            params["waypoints"] = f"optimize:true|{stops}" if optimize else stops

        try:
            response = self.session.get(DIRECTIONS_URL, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise MapsError(f"חישוב המסלול נכשל: {exc}") from exc

        status = payload.get("status")
        if status != "OK" or not payload.get("routes"):
            raise MapsError(f"חישוב המסלול נכשל: {status}")

        route = payload["routes"][0]
        legs = [
            Leg(leg["distance"]["value"], leg["duration"]["value"])
            for leg in route.get("legs", [])
        ]
        order = route.get("waypoint_order")
        if order is None or not optimize:
            order = list(range(len(waypoints)))
        return DirectionsResult(legs=legs, waypoint_order=list(order))


@dataclass
class StraightLineDirectionsClient:
    """
    Offline directions: straight-line legs at a fixed average speed.

    With ``optimize`` the waypoints are visited nearest-neighbour first.
    """

    speed_kmh: float = OFFLINE_SPEED_KMH

    def route(
        self,
        origin: HasLatLng,
        destination: HasLatLng,
        waypoints: Sequence[HasLatLng],
        optimize: bool = True,
    ) -> DirectionsResult:
        order = list(range(len(waypoints)))
        if optimize and len(waypoints) > 1:
            order = []
            remaining = list(range(len(waypoints)))
            current = origin
            while remaining:
                nearest = min(remaining, key=lambda i: distance_km(current, waypoints[i]))
                remaining.remove(nearest)
                order.append(nearest)
                current = waypoints[nearest]

        path = [origin] + [waypoints[i] for i in order] + [destination]
        legs = []
        for a, b in zip(path, path[1:]):
            km = distance_km(a, b)
            legs.append(Leg(km * 1000, km / self.speed_kmh * 3600))
        return DirectionsResult(legs=legs, waypoint_order=order)
