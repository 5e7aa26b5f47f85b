"""
Student-to-bus assignment.

Two entry points:

* ``find_best_bus`` scores every bus for a single address (used when a
  student is added and by ``reassign_all_students``).
* ``smart_assign`` assigns every student in one batch. Three strategies are
  available:

  - ``greedy``: k-means clusters matched to buses by route affinity, cheapest
    insertion under time limits, leftovers placed one by one.
  - ``local_search``: the greedy build followed by 2-opt, inter-bus swaps and
    relocations, with route-time limits relaxed when the geography makes them
    impossible.
  - ``genetic``: a genetic algorithm over bus assignments refined by 2-opt
    and swaps.

Distances are straight-line kilometres; route time is estimated at 40 km/h
plus two minutes per stop.
"""

from __future__ import annotations

import functools
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from bus_manager.geo import (
    DistanceCache,
    LatLng,
    distance_km,
    distance_to_route_line_km,
    geographic_spread,
    is_on_route_direction,
    load_variance,
)
from bus_manager.maps import Geocoder, Location
from bus_manager.roster import RosterStore

logger = logging.getLogger(__name__)

ALGORITHMS = ("greedy", "local_search", "genetic")

AVERAGE_SPEED_KMH = 40.0
STOP_MINUTES = 2.0
WRONG_DIRECTION_PENALTY_KM = 5.0
CLUSTER_DIRECTION_PENALTY_KM = 15.0
SAME_AREA_RADIUS_KM = 10.0
TWO_OPT_EPSILON_KM = 0.01
SWAP_MIN_GAIN_KM = 0.5
RELOCATE_MIN_GAIN_KM = 1.0

ProgressCallback = Callable[[str, float], None]


@dataclass
class AssignmentConstraints:
    max_bus_capacity: int = 50
    max_ride_time_minutes: float = 60
    max_total_route_minutes: float = 90
    adaptive: bool = True


@dataclass
class StudentPoint:
    lat: float
    lng: float
    student: dict

    @property
    def id(self) -> str:
        return self.student.get("id")


@dataclass
class BusRoute:
    """A bus with geocoded endpoints and the ordered students it picks up."""

    bus: dict
    origin: Location
    destination: Location
    route: list[StudentPoint] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.bus.get("id")

    @property
    def name(self) -> str:
        return self.bus.get("name") or self.id

    def distance_km(self) -> float:
        return route_distance_km(self.route, self.origin, self.destination)


@dataclass
class Cluster:
    centroid: LatLng
    points: list


@dataclass
class Insertion:
    cost: float
    index: int
    route: list


@dataclass
class TimeCheck:
    valid: bool
    reason: Optional[str]
    estimated_time: float
    insertion: Optional[Insertion] = None


# ----- clustering -----


def _kmeans_plus_plus(points: Sequence, k: int, rng: random.Random) -> list[LatLng]:
    first = points[rng.randrange(len(points))]
    centroids = [LatLng(first.lat, first.lng)]
    while len(centroids) < k:
        weights = [min(distance_km(p, c) for c in centroids) ** 2 for p in points]
        remaining = rng.random() * sum(weights)
        chosen = points[-1]
        for point, weight in zip(points, weights):
            remaining -= weight
            if remaining <= 0:
                chosen = point
                break
        centroids.append(LatLng(chosen.lat, chosen.lng))
    return centroids


def kmeans(
    points: Sequence,
    k: int,
    max_iterations: int = 100,
    rng: Optional[random.Random] = None,
) -> list[Cluster]:
    """Cluster points by haversine distance; empty clusters are dropped."""
    if not points or k <= 0:
        return []
    if len(points) <= k:
        return [Cluster(LatLng(p.lat, p.lng), [p]) for p in points]

    rng = rng or random.Random()
    centroids = _kmeans_plus_plus(points, k, rng)
    groups: list[list] = []
    previous: list[int] = []

    for iteration in range(max_iterations):
        groups = [[] for _ in range(k)]
        assignments = []
        for point in points:
            nearest = min(range(len(centroids)), key=lambda i: distance_km(point, centroids[i]))
            groups[nearest].append(point)
            assignments.append(nearest)

        if assignments == previous:
            logger.debug("K-means converged after %d iterations", iteration + 1)
            break
        previous = assignments

        for i, members in enumerate(groups):
            if members:
                centroids[i] = LatLng(
                    sum(p.lat for p in members) / len(members),
                    sum(p.lng for p in members) / len(members),
                )

    return [Cluster(centroids[i], members) for i, members in enumerate(groups) if members]


def optimal_k(student_count: int, bus_count: int, max_per_bus: int = 50) -> int:
    """At least one cluster per bus (1.5x for finer grouping), at most one per
    three students."""
    if student_count < 3:
        # Too few to group: one cluster per student.
        return student_count
    max_k = student_count // 3
    required = math.ceil(student_count / max_per_bus)
    return min(max(bus_count, required, math.ceil(bus_count * 1.5)), max_k)


# ----- route heuristics -----


def insertion_cost(route: list, point, origin, destination) -> Insertion:
    """Cheapest position to insert ``point`` between origin and destination."""
    path = [origin, *route, destination]
    best_cost = float("inf")
    best_index = 0
    for i in range(len(path) - 1):
        prev, nxt = path[i], path[i + 1]
        detour = distance_km(prev, point) + distance_km(point, nxt) - distance_km(prev, nxt)
        if detour < best_cost:
            best_cost = detour
            best_index = i
    new_route = list(route)
    new_route.insert(best_index, point)
    return Insertion(best_cost, best_index, new_route)


def route_distance_km(route: Sequence, origin, destination) -> float:
    path = [origin, *route, destination]
    return sum(distance_km(a, b) for a, b in zip(path, path[1:]))


def estimate_route_minutes(distance: float, stops: float = 0) -> float:
    return distance / AVERAGE_SPEED_KMH * 60 + stops * STOP_MINUTES


def two_opt(route: list, origin, destination, max_iterations: int = 100) -> list:
    """Reverse segments while that shortens the route by more than 10 m."""
    if len(route) < 3:
        return list(route)
    current = list(route)
    improved = True
    iterations = 0
    while improved and iterations < max_iterations:
        improved = False
        iterations += 1
        for i in range(len(current) - 1):
            for j in range(i + 2, len(current)):
                before = origin if i == 0 else current[i - 1]
                first = current[i]
                last = current[j]
                after = destination if j == len(current) - 1 else current[j + 1]
                old = distance_km(before, first) + distance_km(last, after)
                new = distance_km(before, last) + distance_km(first, after)
                if new < old - TWO_OPT_EPSILON_KM:
                    current[i : j + 1] = reversed(current[i : j + 1])
                    improved = True
    return current


def inter_bus_swap(buses: list[BusRoute], max_iterations: int = 50) -> dict:
    """Swap students between bus pairs when it saves at least 0.5 km."""
    swaps = 0
    iteration = 0
    improved = True
    while improved and iteration < max_iterations:
        improved = False
        iteration += 1
        for i in range(len(buses)):
            for j in range(i + 1, len(buses)):
                bus_a, bus_b = buses[i], buses[j]
                if not bus_a.route or not bus_b.route:
                    continue
                for a in range(len(bus_a.route)):
                    for b in range(len(bus_b.route)):
                        current = bus_a.distance_km() + bus_b.distance_km()
                        new_a = list(bus_a.route)
                        new_b = list(bus_b.route)
                        new_a[a], new_b[b] = bus_b.route[b], bus_a.route[a]
                        new_a = two_opt(new_a, bus_a.origin, bus_a.destination)
                        new_b = two_opt(new_b, bus_b.origin, bus_b.destination)
                        total = route_distance_km(
                            new_a, bus_a.origin, bus_a.destination
                        ) + route_distance_km(new_b, bus_b.origin, bus_b.destination)
                        if total < current - SWAP_MIN_GAIN_KM:
                            bus_a.route = new_a
                            bus_b.route = new_b
                            swaps += 1
                            improved = True
                            logger.debug(
                                "Swap saved %.2fkm (%s <-> %s)",
                                current - total,
                                bus_a.name,
                                bus_b.name,
                            )
    return {"improved": swaps > 0, "swapCount": swaps, "iterations": iteration}


def relocate(buses: list[BusRoute], max_capacity: int = 50) -> int:
    """Move single students to another bus when that saves more than 1 km.

    A bus is never emptied and the search restarts after every move.
    """
    relocations = 0
    improved = True
    while improved:
        improved = False
        for source in buses:
            if len(source.route) <= 1:
                continue
            for s, point in enumerate(source.route):
                source_without = source.route[:s] + source.route[s + 1 :]
                source_now = source.distance_km()
                source_new = route_distance_km(source_without, source.origin, source.destination)
                best_target = None
                best_insertion = None
                best_gain = 0.0
                for target in buses:
                    if target is source or len(target.route) >= max_capacity:
                        continue
                    insertion = insertion_cost(target.route, point, target.origin, target.destination)
                    gain = (source_now + target.distance_km()) - (
                        source_new
                        + route_distance_km(insertion.route, target.origin, target.destination)
                    )
                    if gain > best_gain + RELOCATE_MIN_GAIN_KM:
                        best_gain = gain
                        best_target = target
                        best_insertion = insertion
                if best_target is not None:
                    source.route = source_without
                    best_target.route = best_insertion.route
                    relocations += 1
                    improved = True
                    logger.debug("Relocated student: %.2fkm saved", best_gain)
                    break
            if improved:
                break
    return relocations


def check_time_constraints(
    route: list,
    point,
    origin,
    destination,
    max_ride_time_minutes: float = 60,
    max_total_route_minutes: float = 90,
) -> TimeCheck:
    """Would inserting ``point`` keep the route within its time limits?

    The first student rides the whole route, so ride time equals route time.
    """
    insertion = insertion_cost(route, point, origin, destination)
    minutes = estimate_route_minutes(
        route_distance_km(insertion.route, origin, destination), len(insertion.route)
    )
    if minutes > max_total_route_minutes:
        return TimeCheck(
            False,
            f"זמן מסלול כולל ({minutes:.0f} דק') חורג מהמקסימום ({max_total_route_minutes} דק')",
            minutes,
        )
    if minutes > max_ride_time_minutes and len(insertion.route) > 1:
        return TimeCheck(
            False,
            f"זמן נסיעה לתלמיד ראשון ({minutes:.0f} דק') חורג מהמקסימום ({max_ride_time_minutes} דק')",
            minutes,
        )
    return TimeCheck(True, None, minutes, insertion)


# ----- single student -----


def _finite(value: float) -> Optional[float]:
    return None if math.isinf(value) else value


def find_best_bus(
    address: str,
    buses: Sequence[dict],
    students_by_bus: dict[str, list[dict]],
    geocoder: Geocoder,
    max_capacity: int = 50,
) -> Optional[dict]:
    """Score every bus for ``address`` and return the best (lower is better).

    Buses that already carry students favour addresses near those students;
    empty buses are scored by distance to the start→end line. Full buses and
    buses without endpoints are skipped.
    """
    point = geocoder.geocode(address)
    if not point:
        logger.info("Could not geocode student address %r", address)
        return None

    best = None
    best_score = float("inf")
    for bus in buses:
        if not bus.get("startLocation") and not bus.get("endLocation"):
            continue
        riders = students_by_bus.get(bus.get("id"), [])
        if len(riders) >= max_capacity:
            logger.info("Bus %r is full (%d/%d), skipping", bus.get("name"), len(riders), max_capacity)
            continue

        start = geocoder.geocode(bus["startLocation"]) if bus.get("startLocation") else None
        end = geocoder.geocode(bus["endLocation"]) if bus.get("endLocation") else None
        dist_start = distance_km(point, start) if start else float("inf")
        dist_end = distance_km(point, end) if end else float("inf")
        line_dist = float("inf")
        on_direction = True
        if start and end:
            line_dist = distance_to_route_line_km(point, start, end)
            on_direction = is_on_route_direction(point, start, end)

        nearest = float("inf")
        same_area = 0
        for rider_address in {r.get("address") for r in riders if r.get("address")}:
            rider_point = geocoder.geocode(rider_address)
            if not rider_point:
                continue
            dist = distance_km(point, rider_point)
            nearest = min(nearest, dist)
            if dist < SAME_AREA_RADIUS_KM:
                same_area += 1

        min_endpoint = min(dist_start, dist_end)
        if not math.isinf(nearest):
            route_score = min_endpoint
            if not math.isinf(line_dist):
                route_score = min(route_score, line_dist * 0.7)
                if not on_direction:
                    route_score += WRONG_DIRECTION_PENALTY_KM
            score = min(nearest * 0.2, route_score) - same_area * 0.5
        elif not math.isinf(line_dist):
            score = line_dist * 0.8
            if not on_direction:
                score += WRONG_DIRECTION_PENALTY_KM
        else:
            score = min_endpoint

        if score < best_score:
            best_score = score
            best = {
                "bus": bus,
                "score": score,
                "details": {
                    "nearestStudentDist": _finite(nearest),
                    "studentsInSameArea": same_area,
                    "distToRouteLine": _finite(line_dist),
                    "onRouteDirection": on_direction,
                    "distToStart": _finite(dist_start),
                    "distToEnd": _finite(dist_end),
                    "currentCapacity": len(riders),
                    "maxCapacity": max_capacity,
                },
            }

    if best:
        logger.info(
            "Best bus for %r: %s (score %.2f)", address, best["bus"].get("name"), best_score
        )
    return best


def reassign_all_students(
    store: RosterStore, geocoder: Geocoder, max_capacity: int = 50
) -> int:
    """Move every student with an address to their best bus. Returns the
    number of students whose bus changed."""
    buses = store.list_buses()
    if not buses:
        return 0
    students = store.list_students()
    changed = []
    for student in students:
        if not student.get("address"):
            continue
        riders: dict[str, list[dict]] = {}
        for other in students:
            if other is not student and other.get("busId"):
                riders.setdefault(other["busId"], []).append(other)
        best = find_best_bus(student["address"], buses, riders, geocoder, max_capacity)
        if best and best["bus"].get("id") != student.get("busId"):
            student["busId"] = best["bus"]["id"]
            changed.append(student)
    if changed:
        store.save_students(changed, f"Reassign {len(changed)} students")
    return len(changed)


# ----- genetic algorithm -----


@dataclass
class GeneticConfig:
    population_size: int = 80
    generations: int = 150
    mutation_rate: float = 0.08
    elite_size: int = 8
    max_capacity: int = 50
    tournament_size: int = 5
    patience: int = 30

    @classmethod
    def for_problem(cls, student_count: int, max_capacity: int = 50) -> "GeneticConfig":
        return cls(
            population_size=min(100, max(40, student_count)),
            generations=min(200, max(80, student_count * 2)),
            elite_size=max(5, student_count // 20),
            max_capacity=max_capacity,
        )

    def as_dict(self) -> dict:
        return {
            "populationSize": self.population_size,
            "generations": self.generations,
            "mutationRate": self.mutation_rate,
            "eliteSize": self.elite_size,
            "maxCapacity": self.max_capacity,
            "tournamentSize": self.tournament_size,
        }


Individual = dict  # bus id -> list[StudentPoint]


class GeneticOptimizer:
    """Evolves bus assignments; fitness is nearest-neighbour route metres
    scaled up by capacity overflow."""

    def __init__(self, config: GeneticConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng or random.Random()
        self.cache = DistanceCache()
        self.generations_run = 0

    def run(self, points: list[StudentPoint], buses: list[BusRoute]) -> Optional[Individual]:
        if not points or not buses:
            return None
        cfg = self.config
        self.cache.prefetch(
            [LatLng(p.lat, p.lng) for p in points]
            + [b.origin for b in buses]
            + [b.destination for b in buses]
        )
        population = [self.create_individual(points, buses) for _ in range(cfg.population_size)]
        best: Optional[Individual] = None
        best_fitness = float("inf")
        stale = 0

        for generation in range(cfg.generations):
            self.generations_run = generation + 1
            scored = sorted(
                ((self.fitness(ind, buses), ind) for ind in population), key=lambda pair: pair[0]
            )
            if scored[0][0] < best_fitness:
                best_fitness = scored[0][0]
                best = self._clone(scored[0][1])
                stale = 0
            else:
                stale += 1
            if stale > cfg.patience:
                logger.info("GA converged at generation %d", generation)
                break

            next_population = [self._clone(ind) for _, ind in scored[: cfg.elite_size]]
            while len(next_population) < cfg.population_size:
                parent_a = self._tournament(scored)
                parent_b = self._tournament(scored)
                child = self.crossover(parent_a, parent_b, points, buses)
                if self.rng.random() < cfg.mutation_rate:
                    child = self.mutate(child)
                next_population.append(child)
            population = next_population

        logger.info("GA complete: best fitness %.1fkm", best_fitness / 1000)
        return best

    def create_individual(self, points: list[StudentPoint], buses: list[BusRoute]) -> Individual:
        individual: Individual = {b.id: [] for b in buses}
        shuffled = list(points)
        self.rng.shuffle(shuffled)
        for point in shuffled:
            available = [b for b in buses if len(individual[b.id]) < self.config.max_capacity]
            if not available:
                continue
            # Closer bus origins are proportionally more likely.
            weights = [1 / (self.cache.meters(point, b.origin) + 1000) for b in available]
            remaining = self.rng.random() * sum(weights)
            chosen = available[0]
            for bus, weight in zip(available, weights):
                remaining -= weight
                if remaining <= 0:
                    chosen = bus
                    break
            individual[chosen.id].append(point)
        return individual

    def fitness(self, individual: Individual, buses: list[BusRoute]) -> float:
        total = 0.0
        penalty = 1.0
        for bus in buses:
            riders = individual.get(bus.id, [])
            if not riders:
                continue
            if len(riders) > self.config.max_capacity:
                penalty += (len(riders) - self.config.max_capacity) * 0.5
            total += self.nearest_neighbour_meters(riders, bus.origin, bus.destination)
        return total * penalty

    def nearest_neighbour_meters(self, riders: list, origin, destination) -> float:
        if not riders:
            return 0.0
        distance = 0.0
        current = origin
        unvisited = list(riders)
        while unvisited:
            nearest = min(unvisited, key=lambda p: self.cache.meters(current, p))
            distance += self.cache.meters(current, nearest)
            unvisited.remove(nearest)
            current = nearest
        return distance + self.cache.meters(current, destination)

    def _tournament(self, scored: list) -> Individual:
        picks = [scored[self.rng.randrange(len(scored))] for _ in range(self.config.tournament_size)]
        return min(picks, key=lambda pair: pair[0])[1]

    def crossover(
        self,
        parent_a: Individual,
        parent_b: Individual,
        points: list[StudentPoint],
        buses: list[BusRoute],
    ) -> Individual:
        """Keep one whole bus from ``parent_a``, then follow ``parent_b``."""
        capacity = self.config.max_capacity
        child: Individual = {b.id: [] for b in buses}
        placed: set = set()

        donor = self.rng.choice(list(parent_a.keys()))
        for point in parent_a[donor]:
            if point.id not in placed:
                child[donor].append(point)
                placed.add(point.id)

        for bus_id, riders in parent_b.items():
            for point in riders:
                if point.id not in placed and len(child[bus_id]) < capacity:
                    child[bus_id].append(point)
                    placed.add(point.id)

        for point in points:
            if point.id in placed:
                continue
            for bus in buses:
                if len(child[bus.id]) < capacity:
                    child[bus.id].append(point)
                    placed.add(point.id)
                    break
        return child

    def mutate(self, individual: Individual) -> Individual:
        if self.rng.random() < 0.5:
            return self._swap_mutation(individual)
        return self._relocate_mutation(individual)

    def _swap_mutation(self, individual: Individual) -> Individual:
        loaded = [bus_id for bus_id, riders in individual.items() if riders]
        if len(loaded) < 2:
            return individual
        first, second = self.rng.sample(loaded, 2)
        a = individual[first]
        b = individual[second]
        i = self.rng.randrange(len(a))
        j = self.rng.randrange(len(b))
        a[i], b[j] = b[j], a[i]
        return individual

    def _relocate_mutation(self, individual: Individual) -> Individual:
        sources = [bus_id for bus_id, riders in individual.items() if len(riders) > 1]
        if not sources:
            return individual
        source = self.rng.choice(sources)
        targets = [
            bus_id
            for bus_id, riders in individual.items()
            if bus_id != source and len(riders) < self.config.max_capacity
        ]
        if not targets:
            return individual
        target = self.rng.choice(targets)
        riders = individual[source]
        individual[target].append(riders.pop(self.rng.randrange(len(riders))))
        return individual

    @staticmethod
    def _clone(individual: Individual) -> Individual:
        return {bus_id: list(riders) for bus_id, riders in individual.items()}


# ----- batch assignment -----


def _report(progress: Optional[ProgressCallback], stage: str, fraction: float) -> None:
    if progress:
        progress(stage, fraction)


def _geocode_students(students: Sequence[dict], geocoder: Geocoder) -> tuple[list[StudentPoint], list[str]]:
    points = []
    missing = []
    for student in students:
        location = geocoder.geocode(student["address"]) if student.get("address") else None
        if location:
            points.append(StudentPoint(location.lat, location.lng, student))
        else:
            missing.append(student.get("id"))
    return points, missing


def _geocode_buses(buses: Sequence[dict], geocoder: Geocoder) -> list[BusRoute]:
    routes = []
    for bus in buses:
        start = geocoder.geocode(bus["startLocation"]) if bus.get("startLocation") else None
        end = geocoder.geocode(bus["endLocation"]) if bus.get("endLocation") else None
        if start and end:
            routes.append(BusRoute(bus, start, end))
    return routes


def _cluster_affinities(cluster: Cluster, bus_routes: list[BusRoute]) -> list[tuple[float, BusRoute]]:
    scored = []
    for bus in bus_routes:
        score = distance_to_route_line_km(cluster.centroid, bus.origin, bus.destination)
        if not is_on_route_direction(cluster.centroid, bus.origin, bus.destination):
            score += CLUSTER_DIRECTION_PENALTY_KM
        scored.append((score, bus))
    scored.sort(key=lambda pair: pair[0])
    return scored


def _cheapest_bus(point: StudentPoint, bus_routes: list[BusRoute], capacity: int) -> bool:
    best = None
    best_insertion = None
    for bus in bus_routes:
        if len(bus.route) >= capacity:
            continue
        insertion = insertion_cost(bus.route, point, bus.origin, bus.destination)
        if best_insertion is None or insertion.cost < best_insertion.cost:
            best = bus
            best_insertion = insertion
    if best is None:
        logger.warning("Could not place student %s", point.id)
        return False
    best.route = best_insertion.route
    return True


def _build_greedy(
    clusters: list[Cluster], bus_routes: list[BusRoute], constraints: AssignmentConstraints
) -> list[StudentPoint]:
    """Whole clusters to their best-aligned bus under time limits; returns
    the points left over."""
    capacity = constraints.max_bus_capacity
    affinities = {id(c): _cluster_affinities(c, bus_routes) for c in clusters}

    def order(a: Cluster, b: Cluster) -> int:
        size_diff = len(b.points) - len(a.points)
        if abs(size_diff) > 2:
            return size_diff
        diff = affinities[id(a)][0][0] - affinities[id(b)][0][0]
        return (diff > 0) - (diff < 0)

    leftovers: list[StudentPoint] = []
    for cluster in sorted(clusters, key=functools.cmp_to_key(order)):
        assigned = False
        for _, bus in affinities[id(cluster)]:
            if len(bus.route) + len(cluster.points) > capacity:
                continue
            pending = sorted(
                cluster.points,
                key=lambda p: distance_to_route_line_km(p, bus.origin, bus.destination),
            )
            route = list(bus.route)
            added = 0
            for point in pending:
                check = check_time_constraints(
                    route,
                    point,
                    bus.origin,
                    bus.destination,
                    constraints.max_ride_time_minutes,
                    constraints.max_total_route_minutes,
                )
                if not check.valid:
                    logger.debug("Time limit hit on %s: %s", bus.name, check.reason)
                    break
                route = check.insertion.route
                added += 1
            if added:
                bus.route = route
                leftovers.extend(pending[added:])
                assigned = True
                break
        if not assigned:
            leftovers.extend(cluster.points)
    return leftovers


def _build_by_insertion(
    clusters: list[Cluster], bus_routes: list[BusRoute], capacity: int
) -> list[StudentPoint]:
    """Largest clusters first, farthest-from-origin students first, no time
    limits; returns the points left over."""
    leftovers: list[StudentPoint] = []
    for cluster in sorted(clusters, key=lambda c: len(c.points), reverse=True):
        for _, bus in _cluster_affinities(cluster, bus_routes):
            if len(bus.route) + len(cluster.points) > capacity:
                continue
            for point in sorted(cluster.points, key=lambda p: distance_km(p, bus.origin), reverse=True):
                bus.route = insertion_cost(bus.route, point, bus.origin, bus.destination).route
            break
        else:
            leftovers.extend(cluster.points)
    return leftovers


def _two_opt_all(bus_routes: list[BusRoute]) -> float:
    saved = 0.0
    for bus in bus_routes:
        if len(bus.route) < 3:
            continue
        before = bus.distance_km()
        bus.route = two_opt(bus.route, bus.origin, bus.destination)
        saved += before - bus.distance_km()
    return saved


def _adaptive_route_limit(
    points: list[StudentPoint], bus_routes: list[BusRoute], limit: float
) -> tuple[float, bool]:
    spread = geographic_spread(points)
    per_bus = len(points) / len(bus_routes)
    estimate = estimate_route_minutes(spread["maxDistance"] / 2, per_bus)
    if estimate > limit:
        relaxed = math.ceil(estimate * 1.2)
        logger.info("Route time limit relaxed from %s to %s minutes", limit, relaxed)
        return relaxed, True
    return limit, False


def _results(
    algorithm: str,
    bus_routes: list[BusRoute],
    points: list[StudentPoint],
    missing: list[str],
    capacity: int,
    route_limit: float,
) -> dict:
    summary = []
    total_distance = 0.0
    total_time = 0.0
    max_time = 0.0
    for bus in bus_routes:
        distance = bus.distance_km()
        minutes = estimate_route_minutes(distance, len(bus.route))
        total_distance += distance
        total_time += minutes
        max_time = max(max_time, minutes)
        summary.append(
            {
                "busId": bus.id,
                "busName": bus.name,
                "count": len(bus.route),
                "routeDistance": round(distance, 1),
                "estimatedTime": round(minutes),
                "utilizationPercent": round(len(bus.route) / capacity * 100),
            }
        )

    placed = {p.id for bus in bus_routes for p in bus.route}
    time_score = max(0.0, 100 - (max_time / route_limit - 1) * 50)
    load_score = max(0.0, 100 - load_variance([s["count"] for s in summary]) * 2)
    return {
        "algorithm": algorithm,
        "assignments": {bus.id: [p.id for p in bus.route] for bus in bus_routes},
        "summary": summary,
        "totalStudents": len(points),
        "unassignedCount": len(points) - len(placed),
        "unassigned": [p.id for p in points if p.id not in placed],
        "ungeocoded": missing,
        "qualityMetrics": {
            "totalDistance": round(total_distance, 1),
            "avgRouteTime": round(total_time / len(bus_routes)),
            "maxRouteTime": round(max_time),
            "avgStudentsPerBus": round(len(points) / len(bus_routes), 1),
            "efficiencyScore": round(time_score * 0.6 + load_score * 0.4),
        },
    }


def smart_assign(
    students: Sequence[dict],
    buses: Sequence[dict],
    geocoder: Geocoder,
    algorithm: str = "local_search",
    constraints: Optional[AssignmentConstraints] = None,
    progress: Optional[ProgressCallback] = None,
    rng: Optional[random.Random] = None,
) -> Optional[dict]:
    """Assign all students to buses in one pass.

    Returns ``None`` when no student could be geocoded or no bus has both
    endpoints. ``assignments`` maps bus id to the student ids in pickup order.
    """
    if algorithm not in ALGORITHMS:
        raise ValueError(f"Unknown assignment algorithm: {algorithm}")
    if not students or not buses:
        return None
    constraints = constraints or AssignmentConstraints()
    rng = rng or random.Random()
    capacity = constraints.max_bus_capacity

    _report(progress, "GEOCODE_STUDENTS", 0.05)
    points, missing = _geocode_students(students, geocoder)
    logger.info("Geocoded %d/%d students", len(points), len(students))
    _report(progress, "GEOCODE_BUSES", 0.2)
    bus_routes = _geocode_buses(buses, geocoder)
    logger.info("Prepared %d buses with valid routes", len(bus_routes))
    if not points or not bus_routes:
        return None

    if algorithm == "genetic":
        return _assign_genetic(points, bus_routes, missing, constraints, progress, rng)

    route_limit = constraints.max_total_route_minutes
    relaxed = False
    if algorithm == "local_search" and constraints.adaptive:
        _report(progress, "CONSTRAINTS", 0.25)
        route_limit, relaxed = _adaptive_route_limit(points, bus_routes, route_limit)

    _report(progress, "CLUSTERING", 0.3)
    clusters = kmeans(points, optimal_k(len(points), len(bus_routes), capacity), rng=rng)
    logger.info("Created %d geographic clusters", len(clusters))

    _report(progress, "INSERTION", 0.45)
    if algorithm == "greedy":
        leftovers = _build_greedy(clusters, bus_routes, constraints)
    else:
        leftovers = _build_by_insertion(clusters, bus_routes, capacity)
    for point in leftovers:
        _cheapest_bus(point, bus_routes, capacity)

    extra = {}
    if algorithm == "local_search":
        _report(progress, "TWO_OPT", 0.6)
        saved = _two_opt_all(bus_routes)
        _report(progress, "SWAPS", 0.75)
        swap_result = inter_bus_swap(bus_routes, 30)
        relocations = relocate(bus_routes, capacity)
        extra = {
            "twoOptImprovement": round(saved, 1),
            "swapCount": swap_result["swapCount"],
            "relocations": relocations,
        }

    _report(progress, "METRICS", 0.95)
    results = _results(algorithm, bus_routes, points, missing, capacity, route_limit)
    results["qualityMetrics"].update(extra)
    results["clustersCreated"] = len(clusters)
    results["constraintsRelaxed"] = relaxed
    results["effectiveMaxRouteTime"] = route_limit
    return results


def _assign_genetic(
    points: list[StudentPoint],
    bus_routes: list[BusRoute],
    missing: list[str],
    constraints: AssignmentConstraints,
    progress: Optional[ProgressCallback],
    rng: random.Random,
) -> dict:
    capacity = constraints.max_bus_capacity
    config = GeneticConfig.for_problem(len(points), capacity)
    _report(progress, "GENETIC", 0.3)
    optimizer = GeneticOptimizer(config, rng)
    best = optimizer.run(points, bus_routes)
    for bus in bus_routes:
        bus.route = list(best.get(bus.id, [])) if best else []

    _report(progress, "TWO_OPT", 0.8)
    saved = _two_opt_all(bus_routes)
    swap_result = inter_bus_swap(bus_routes, 20)

    _report(progress, "METRICS", 0.95)
    route_limit = constraints.max_total_route_minutes
    results = _results("genetic", bus_routes, points, missing, capacity, route_limit)
    results["qualityMetrics"].update(
        {
            "twoOptImprovement": round(saved, 1),
            "swapCount": swap_result["swapCount"],
            "gaGenerations": optimizer.generations_run,
            "distanceCache": optimizer.cache.stats(),
        }
    )
    results["gaConfig"] = config.as_dict()
    results["clustersCreated"] = 0
    results["constraintsRelaxed"] = False
    results["effectiveMaxRouteTime"] = route_limit
    return results


def apply_assignment(store: RosterStore, result: dict) -> int:
    """Write ``busId`` onto every student whose bus changed. Returns the count."""
    target = {
        student_id: bus_id
        for bus_id, student_ids in (result.get("assignments") or {}).items()
        for student_id in student_ids
    }
    changed = []
    for student in store.list_students():
        bus_id = target.get(student.get("id"))
        if bus_id and student.get("busId") != bus_id:
            student["busId"] = bus_id
            changed.append(student)
    if changed:
        store.save_students(changed, f"Apply smart assignment ({len(changed)} students)")
    return len(changed)
