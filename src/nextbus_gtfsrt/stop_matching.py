"""Spatial candidate search and per-direction stop assignment."""

import logging
import math
from typing import Dict, List, Optional, Sequence

from shapely.geometry import Point, box
from shapely.strtree import STRtree

from .config import DEFAULT_STOP_MATCHING_DISTANCE
from .models import GtfsStop, NBRoute, NBStop, RouteDirectionStopKey

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6371010.0

# Placeholder for an ambiguous stop the search has not chosen yet
_PENDING = object()


class StopMatcher:
    """Finds GTFS stops near NextBus stops and picks the best per-direction assignment."""

    def __init__(self, distance: float = DEFAULT_STOP_MATCHING_DISTANCE):
        """
        Initialize the matcher.

        Args:
            distance: Search radius around each NextBus stop, in meters.
        """
        self.distance = distance

    def get_potential_stop_matches(
        self, routes: List[NBRoute], gtfs_stops: Sequence[GtfsStop]
    ) -> Dict[str, List[GtfsStop]]:
        """
        GTFS stops within the search box of every distinct NextBus stop.

        Returns:
            Candidate GTFS stops, sorted by stop id, keyed by NextBus stop tag.
        """
        gtfs_stops = list(gtfs_stops)
        nb_stops_by_tag: Dict[str, NBStop] = {}
        for route in routes:
            for stop in route.stops:
                nb_stops_by_tag[stop.tag] = stop

        potential_matches: Dict[str, List[GtfsStop]] = {}
        if not gtfs_stops:
            return {tag: [] for tag in nb_stops_by_tag}

        tree = STRtree([Point(stop.lon, stop.lat) for stop in gtfs_stops])
        for tag, nb_stop in nb_stops_by_tag.items():
            min_lon, min_lat, max_lon, max_lat = bounds(nb_stop.lat, nb_stop.lon, self.distance)
            hits = tree.query(box(min_lon, min_lat, max_lon, max_lat))
            potential_matches[tag] = sorted((gtfs_stops[i] for i in hits), key=lambda s: s.id)

        return potential_matches

    def get_stop_matches(
        self,
        route_matches,
        potential_stop_matches: Dict[str, List[GtfsStop]],
        loader,
    ) -> Dict[RouteDirectionStopKey, str]:
        """
        Assign a GTFS stop to every stop of every direction of the matched routes.

        Stops with a single candidate are fixed up front. The remaining
        ambiguous stops are resolved by a depth-first search over their
        candidate lists that keeps the assignment with the fewest out-of-order
        or absent stops against the GTFS route's stop sequences.

        Args:
            route_matches: RouteMatch values keyed by NextBus route tag.
            potential_stop_matches: Candidates keyed by NextBus stop tag.
            loader: GTFSLoader holding the canonical schedule.

        Returns:
            GTFS stop ids keyed by (route tag, direction tag, stop tag).
        """
        stop_id_mappings: Dict[RouteDirectionStopKey, str] = {}

        for route_tag in sorted(route_matches):
            match = route_matches[route_tag]
            sequence_indices = [
                {stop_id: i for i, stop_id in enumerate(sequence)}
                for sequence in get_stop_sequences_for_route(loader, match.gtfs_route.id)
            ]

            for direction in match.nb_route.directions:
                candidates = [
                    [stop.id for stop in potential_stop_matches.get(stop.tag) or []]
                    for stop in direction.stops
                ]
                assignment, score = find_best_assignment(candidates, sequence_indices)
                logger.debug(
                    f"route {route_tag} direction {direction.tag}: assignment score={score}"
                )

                for stop, stop_id in zip(direction.stops, assignment):
                    if stop_id is None:
                        continue
                    key = RouteDirectionStopKey(route_tag, direction.tag, stop.tag)
                    stop_id_mappings[key] = stop_id

        return stop_id_mappings


def find_best_assignment(candidates: List[List[str]], sequence_indices: List[Dict[str, int]]):
    """
    Lowest-scoring choice of one candidate per stop.

    Args:
        candidates: Candidate GTFS stop ids for each stop, in direction order.
        sequence_indices: Stop id to position maps, one per GTFS stop sequence.

    Returns:
        (assignment, score) where assignment holds a stop id, or None for
        stops without candidates, per input stop.
    """
    assignment: List = []
    ambiguous: List[int] = []
    for position, stop_candidates in enumerate(candidates):
        if not stop_candidates:
            assignment.append(None)
        elif len(stop_candidates) == 1:
            assignment.append(stop_candidates[0])
        else:
            assignment.append(_PENDING)
            ambiguous.append(position)

    if not ambiguous:
        return assignment, score_assignment(assignment, sequence_indices)

    best_score = math.inf
    best_assignment = None

    # Depth-first over (depth, choice); children pushed in reverse so earlier
    # candidates are explored first
    stack = [(0, i) for i in reversed(range(len(candidates[ambiguous[0]])))]
    while stack:
        depth, choice = stack.pop()
        position = ambiguous[depth]
        assignment[position] = candidates[position][choice]
        for deeper in ambiguous[depth + 1:]:
            assignment[deeper] = _PENDING

        # Adding stops can only raise the score, so a partial assignment that
        # already reaches the best complete score is abandoned
        score = score_assignment([s for s in assignment if s is not _PENDING], sequence_indices)
        if score >= best_score:
            continue

        if depth + 1 == len(ambiguous):
            best_score = score
            best_assignment = list(assignment)
            continue

        next_position = ambiguous[depth + 1]
        for i in reversed(range(len(candidates[next_position]))):
            stack.append((depth + 1, i))

    return best_assignment, best_score


def score_assignment(stop_ids: Sequence[Optional[str]], sequence_indices: List[Dict[str, int]]) -> int:
    """
    Out-of-order plus absent stops, minimized over the GTFS stop sequences.

    A stop is out of order when its position in the sequence is lower than
    that of the previous present stop. Unassigned stops (None) are absent.
    """
    if not sequence_indices:
        return len(stop_ids)

    best = None
    for indices in sequence_indices:
        score = 0
        last_index = -1
        for stop_id in stop_ids:
            index = indices.get(stop_id) if stop_id is not None else None
            if index is None:
                score += 1
                continue
            if index < last_index:
                score += 1
            last_index = index
        if best is None or score < best:
            best = score
    return best


def get_stop_sequences_for_route(loader, route_id: str) -> List[tuple]:
    """Distinct stop id sequences of a GTFS route's trips, in trip order."""
    sequences = {}
    for trip in loader.get_trips_for_route(route_id):
        sequence = tuple(st.stop_id for st in loader.get_stop_times_for_trip(trip.id))
        sequences.setdefault(sequence, None)
    return list(sequences)


def bounds(lat: float, lon: float, distance: float):
    """(min_lon, min_lat, max_lon, max_lat) of a box reaching distance meters around a point."""
    lat_radius = math.degrees(distance / EARTH_RADIUS_METERS)
    lon_radius = math.degrees(distance / (EARTH_RADIUS_METERS * math.cos(math.radians(lat))))
    return lon - lon_radius, lat - lat_radius, lon + lon_radius, lat + lat_radius
