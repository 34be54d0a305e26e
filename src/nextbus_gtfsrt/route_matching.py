"""Maps NextBus routes to GTFS routes by stop-set overlap."""

import logging
from typing import Dict, List, NamedTuple, Set

from .models import GtfsRoute, GtfsStop, NBRoute

logger = logging.getLogger(__name__)


class RouteMatch(NamedTuple):
    nb_route: NBRoute
    gtfs_route: GtfsRoute
    ratio: float


class RouteMatcher:
    """Picks, for each NextBus route, the GTFS route whose stops it covers best."""

    def get_route_matches(
        self,
        routes: List[NBRoute],
        loader,
        potential_stop_matches: Dict[str, List[GtfsStop]],
    ) -> Dict[str, RouteMatch]:
        """
        Match NextBus routes to GTFS routes.

        A NextBus stop is a hit for a GTFS route when any of its nearby GTFS
        stops is served by that route. The GTFS route with the highest share of
        hits wins; equal shares go to the smallest route id. Routes without a
        single hit are left unmatched.

        Args:
            routes: NextBus route configurations.
            loader: GTFSLoader holding the canonical schedule.
            potential_stop_matches: Nearby GTFS stops keyed by NextBus stop tag.

        Returns:
            Route matches keyed by NextBus route tag.
        """
        stops_by_route = get_stop_ids_by_route(loader)
        route_matches: Dict[str, RouteMatch] = {}

        for nb_route in routes:
            if not nb_route.stops:
                logger.warning(f"route {nb_route.tag} has no stops, not matching")
                continue

            best_route_id = None
            best_ratio = 0.0
            for route_id in sorted(stops_by_route):
                gtfs_stop_ids = stops_by_route[route_id]
                hits = sum(
                    1
                    for nb_stop in nb_route.stops
                    if has_matching_potential_stop(gtfs_stop_ids, potential_stop_matches.get(nb_stop.tag))
                )
                ratio = hits / len(nb_route.stops)
                if ratio > best_ratio:
                    best_route_id = route_id
                    best_ratio = ratio

            if best_route_id is None:
                logger.warning(f"no GTFS route shares stops with route {nb_route.tag}")
                continue

            route_matches[nb_route.tag] = RouteMatch(
                nb_route=nb_route,
                gtfs_route=loader.routes[best_route_id],
                ratio=best_ratio,
            )
            logger.debug(f"route {nb_route.tag} -> {best_route_id} (ratio={best_ratio:.2f})")

        return route_matches


def get_stop_ids_by_route(loader) -> Dict[str, Set[str]]:
    """Union of the stops visited by each GTFS route's trips."""
    stops_by_route: Dict[str, Set[str]] = {}
    for route_id in loader.routes:
        stop_ids = set()
        for trip in loader.get_trips_for_route(route_id):
            for stop_time in loader.get_stop_times_for_trip(trip.id):
                stop_ids.add(stop_time.stop_id)
        stops_by_route[route_id] = stop_ids
    return stops_by_route


def has_matching_potential_stop(gtfs_stop_ids: Set[str], candidates) -> bool:
    if not candidates:
        return False
    return any(stop.id in gtfs_stop_ids for stop in candidates)
