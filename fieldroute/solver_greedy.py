"""
Greedy solver with local search for single-vehicle route sequencing.
Implements nearest neighbor with a time/distance tie-break and 2-opt improvements.
"""

import logging
from datetime import datetime
from typing import List, Optional

from .distance import GoogleMapsClient, RouteMatrix
from .models import DriveTime, RouteResult, RouteSegment, RouteStop
from .schemas import AppConfig


logger = logging.getLogger(__name__)


class GreedyRouteSolver:
    """Greedy solver with local search optimization."""

    def __init__(self, config: AppConfig):
        """Initialize solver with configuration."""
        self.config = config
        self.time_threshold_percent = config.google.time_threshold_percent
        self.distance_threshold_percent = config.google.distance_threshold_percent

    def solve(self, matrix: RouteMatrix) -> List[int]:
        """
        Sequence the stops of a route matrix.

        Args:
            matrix: Matrix whose index 0 is the starting address and 1..n the stops

        Returns:
            Stop positions (0-based, excluding the start) in visiting order
        """
        start_time = datetime.now()
        n = len(matrix.addresses) - 1
        if n <= 0:
            return []
        if n == 1:
            return [0]

        route = self._greedy_construction(matrix)

        if n > 3:
            route = self._two_opt_improve_route(matrix, route)

        computation_time = (datetime.now() - start_time).total_seconds()
        logger.debug(f"Sequenced {n} stops in {computation_time:.3f}s, cost {self.route_cost(matrix, route):.1f} min")
        return route

    def _greedy_construction(self, matrix: RouteMatrix) -> List[int]:
        """Nearest neighbour by time; near-ties go to a clearly shorter distance."""
        unvisited = list(range(len(matrix.addresses) - 1))
        route = []
        current = 0

        while unvisited:
            best_stop = None
            best_score = float("inf")
            best_time = float("inf")
            best_distance = float("inf")

            for stop in unvisited:
                duration = matrix.get_duration(current, stop + 1)
                if duration is None:
                    continue
                distance = matrix.get_distance(current, stop + 1) or 0.0
                score = duration

                if best_stop is not None and best_distance > 0:
                    time_threshold = best_time * self.time_threshold_percent / 100.0
                    if abs(duration - best_time) <= time_threshold:
                        distance_diff = (distance - best_distance) / best_distance * 100.0
                        if distance_diff < -self.distance_threshold_percent:
                            score = duration - 1

                if score < best_score:
                    best_score = score
                    best_stop = stop
                    best_time = duration
                    best_distance = distance

            if best_stop is None:
                # No usable leg from here; keep input order for the rest
                best_stop = unvisited[0]

            route.append(best_stop)
            unvisited.remove(best_stop)
            current = best_stop + 1

        return route

    def _two_opt_improve_route(self, matrix: RouteMatrix, route: List[int]) -> List[int]:
        """Reverse segments while the open-path cost keeps dropping."""
        current = list(route)
        improved = True

        while improved:
            improved = False
            for i in range(len(current) - 1):
                for j in range(i + 2, len(current)):
                    candidate = current[:i + 1] + current[i + 1:j + 1][::-1] + current[j + 1:]
                    if self.route_cost(matrix, candidate) < self.route_cost(matrix, current):
                        current = candidate
                        improved = True

        return current

    def _leg_minutes(self, matrix: RouteMatrix, origin_idx: int, dest_idx: int) -> float:
        duration = matrix.get_duration(origin_idx, dest_idx)
        if duration is None:
            return float(self.config.schedule.fallback_leg_minutes)
        return duration

    def route_cost(self, matrix: RouteMatrix, route: List[int]) -> float:
        """Total drive minutes from the start through every stop."""
        if not route:
            return 0.0
        cost = self._leg_minutes(matrix, 0, route[0] + 1)
        for a, b in zip(route, route[1:]):
            cost += self._leg_minutes(matrix, a + 1, b + 1)
        return cost


class GoogleRouteOptimizer:
    """Route provider: Google drive times sequenced by the greedy solver."""

    def __init__(self, config: AppConfig, maps_client: GoogleMapsClient):
        self.config = config
        self.maps_client = maps_client
        self.solver = GreedyRouteSolver(config)

    async def get_drive_time(self, origin: str, destination: str) -> Optional[DriveTime]:
        return await self.maps_client.get_drive_time(origin, destination)

    async def optimize_route(self, origin: str, stops: List[RouteStop]) -> Optional[RouteResult]:
        """
        Visiting order and legs for a set of stops starting at `origin`.

        Returns:
            RouteResult, or None when the distance matrix could not be built
        """
        if not stops:
            return RouteResult(jobs=[], segments=[])

        addresses = [origin] + [stop.address for stop in stops]
        matrix = await self.maps_client.compute_route_matrix(addresses)
        if matrix is None:
            logger.warning(f"No distance matrix for {len(stops)} stops from '{origin}'")
            return None

        order = self.solver.solve(matrix)
        ordered = [
            RouteStop(id=stops[idx].id, address=stops[idx].address, order=position + 1)
            for position, idx in enumerate(order)
        ]

        segments = []
        previous = 0
        for idx in order:
            duration = matrix.get_duration(previous, idx + 1)
            if duration is not None:
                segments.append(RouteSegment(
                    from_address=addresses[previous],
                    to_address=addresses[idx + 1],
                    duration_minutes=duration,
                    duration_text=f"{int(round(duration))} min",
                    distance_meters=matrix.get_distance(previous, idx + 1) or 0.0
                ))
            previous = idx + 1

        return RouteResult(
            jobs=ordered,
            segments=segments,
            total_duration_minutes=sum(s.duration_minutes for s in segments),
            total_distance_meters=sum(s.distance_meters for s in segments)
        )
