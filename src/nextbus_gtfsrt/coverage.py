"""Selects the subset of stops polled for live predictions on each route."""

import logging
import threading
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, List, Optional, Set

from .config import DEFAULT_REFRESH_HOUR
from .models import NBRoute, NBStop, RouteStopCoverage

logger = logging.getLogger(__name__)

# We assume roughly one request per second, all requests fitting in a 30 second
# cycle, and 100 stops per predictionsForMultiStops request.
REQUESTS_PER_CYCLE = 30
STOPS_PER_REQUEST = 100
MAX_DOWNSAMPLE_RATIO = 0.5


class RouteStopCoverageService:
    """
    Keeps the route-stop coverage model current.

    Route configurations are read once at startup (from the cache when one is
    configured) and re-downloaded every day at refresh_hour in the agency time
    zone.
    """

    def __init__(
        self,
        client,
        refresh_hour: int = DEFAULT_REFRESH_HOUR,
        get_timezone: Optional[Callable[[], Optional[tzinfo]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the service.

        Args:
            client: NextBusClient used to download route configurations.
            refresh_hour: Wall-clock hour of the daily refresh.
            get_timezone: Returns the agency time zone, or None while it is
                unknown (the host zone is used then).
            clock: Optional time source; overrides get_timezone.
        """
        self._client = client
        self._refresh_hour = refresh_hour
        self._get_timezone = get_timezone
        self._clock = clock
        self._lock = threading.Lock()
        self._route_stop_coverage: List[RouteStopCoverage] = []
        self._route_configurations: List[NBRoute] = []
        self._listeners: List[Callable[[List[NBRoute], bool], None]] = []
        self._timer: Optional[threading.Timer] = None
        self._stopped = False

    @property
    def route_stop_coverage(self) -> List[RouteStopCoverage]:
        return self._route_stop_coverage

    @property
    def route_configurations(self) -> List[NBRoute]:
        return self._route_configurations

    def add_refresh_listener(self, listener: Callable[[List[NBRoute], bool], None]) -> None:
        """Register a callback invoked with the route configurations and use_cache after each refresh."""
        self._listeners.append(listener)

    def start(self) -> None:
        self._stopped = False
        self.refresh(use_cache=True)
        self._schedule_next_refresh()

    def stop(self) -> None:
        self._stopped = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def refresh(self, use_cache: bool = False) -> None:
        """Download route configurations and rebuild the coverage model."""
        with self._lock:
            logger.info("Rebuilding route-stop coverage model")
            routes = self._client.download_route_configurations(use_cache)
            coverage = compute_route_stop_coverage(routes)
            self._route_configurations = routes
            self._route_stop_coverage = coverage
            logger.info(
                f"Route-stop coverage: {sum(len(c.stop_tags) for c in coverage)} stops "
                f"across {len(coverage)} routes"
            )

        for listener in list(self._listeners):
            listener(routes, use_cache)

    def _run_scheduled_refresh(self) -> None:
        try:
            self.refresh(use_cache=False)
        except Exception:
            logger.error("error refreshing route stop coverage", exc_info=True)
        finally:
            if not self._stopped:
                self._schedule_next_refresh()

    def _schedule_next_refresh(self) -> None:
        delay = seconds_until_next_refresh(self._now(), self._refresh_hour)
        logger.info(f"Next route-stop coverage refresh in {delay:.0f}s")
        self._timer = threading.Timer(delay, self._run_scheduled_refresh)
        self._timer.daemon = True
        self._timer.start()

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        timezone = self._get_timezone() if self._get_timezone is not None else None
        if timezone is None:
            return datetime.now().astimezone()
        return datetime.now(timezone)


def seconds_until_next_refresh(now: datetime, refresh_hour: int) -> float:
    """
    Seconds from now until the next occurrence of refresh_hour:00 in now's zone.

    The difference is taken on absolute time so a DST change in between is
    counted.
    """
    next_refresh = now.replace(hour=refresh_hour, minute=0, second=0, microsecond=0)
    if next_refresh <= now:
        next_refresh += timedelta(days=1)
    return next_refresh.timestamp() - now.timestamp()


def compute_route_stop_coverage(routes: List[NBRoute]) -> List[RouteStopCoverage]:
    ratio = compute_downsample_ratio(routes)
    return [compute_route_stop_coverage_for_route(route, ratio) for route in routes]


def compute_downsample_ratio(routes: List[NBRoute]) -> float:
    """
    Fraction of stops we can afford to poll in one cycle.

    Segment count stands in for the number of distinct stops on a route. We
    never poll more than half of them.
    """
    segment_count = get_segment_count_for_routes(routes)
    if segment_count == 0:
        return MAX_DOWNSAMPLE_RATIO
    return min(MAX_DOWNSAMPLE_RATIO, (REQUESTS_PER_CYCLE * STOPS_PER_REQUEST) / segment_count)


def compute_route_stop_coverage_for_route(route: NBRoute, ratio: float) -> RouteStopCoverage:
    """
    Greedily pick the stops farthest (in hops) from the current selection.

    The last stop of every direction is always included.
    """
    directions = [d for d in route.directions if d.stops]
    stop_tags: Set[str] = set()
    for direction in directions:
        stop_tags.add(direction.stops[-1].tag)

    max_count = int(get_segment_count_for_route(route) * ratio)

    while len(stop_tags) < max_count:
        distances: Dict[str, int] = {}
        for direction in directions:
            min_distance = get_min_distance_to_active_stop(direction.stops, stop_tags)
            for stop, distance in zip(direction.stops, min_distance):
                if stop.tag not in stop_tags:
                    distances[stop.tag] = distances.get(stop.tag, 0) + distance

        if not distances:
            break

        farthest = None
        for tag, distance in distances.items():
            if farthest is None or distance > distances[farthest]:
                farthest = tag
        stop_tags.add(farthest)

    return RouteStopCoverage(route_tag=route.tag, stop_tags=stop_tags)


def get_segment_count_for_routes(routes: List[NBRoute]) -> int:
    return sum(get_segment_count_for_route(route) for route in routes)


def get_segment_count_for_route(route: NBRoute) -> int:
    """Number of distinct from_stop-to_stop pairs across the route's directions."""
    segments = set()
    for direction in route.directions:
        stops = direction.stops
        for prev, nxt in zip(stops, stops[1:]):
            segments.add((prev.tag, nxt.tag))
    return len(segments)


def get_min_distance_to_active_stop(stops: List[NBStop], active_stops: Set[str]) -> List[int]:
    left = _get_distance_since_active_stop(stops, active_stops)
    right = _get_distance_since_active_stop(stops[::-1], active_stops)[::-1]
    return [min(a, b) for a, b in zip(left, right)]


def _get_distance_since_active_stop(stops: List[NBStop], active_stops: Set[str]) -> List[int]:
    distances = []
    current = 0
    for stop in stops:
        if stop.tag in active_stops:
            current = 0
        distances.append(current)
        current += 1
    return distances
