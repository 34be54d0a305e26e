"""Matches NextBus routes, stops and blocks to GTFS ids and applies the mapping to predictions."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import tzinfo
from typing import Dict, List, Mapping, Optional

from .config import Config
from .gtfs_loader import GTFSLoader
from .models import (
    FlatPrediction,
    NBRoute,
    RouteDirectionStopKey,
    ServiceDateBlockKey,
    StopTimeIndices,
)
from .route_matching import RouteMatcher
from .stop_matching import StopMatcher
from .trip_inference import TripInferencer
from .trip_matching import TripMatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MappingSnapshot:
    """Route, stop and block mappings produced together by one matching pass."""
    route_ids: Mapping[str, str] = field(default_factory=dict)
    stop_ids: Mapping[RouteDirectionStopKey, str] = field(default_factory=dict)
    stop_time_indices: Mapping[ServiceDateBlockKey, StopTimeIndices] = field(default_factory=dict)
    timezone: Optional[tzinfo] = None  # agency zone from the GTFS feed


class NextBusToGtfsService:
    """
    Attempts to match NextBus route, stop and block tags to GTFS route, stop and trip ids.

    Readers always see one complete MappingSnapshot; a matching pass replaces
    it only after every step has succeeded.
    """

    def __init__(
        self,
        config: Config,
        client=None,
        stop_matcher: Optional[StopMatcher] = None,
        route_matcher: Optional[RouteMatcher] = None,
        trip_matcher: Optional[TripMatcher] = None,
        inferencer: Optional[TripInferencer] = None,
    ):
        """
        Initialize the service.

        Args:
            config: Runtime configuration (gtfs_path, gtfs_trip_matching, tunables).
            client: NextBusClient, used by the trip matcher for schedules.
            stop_matcher: Optional StopMatcher override.
            route_matcher: Optional RouteMatcher override.
            trip_matcher: Optional TripMatcher override.
            inferencer: Optional TripInferencer override.
        """
        self._gtfs_path = config.gtfs_path
        self._gtfs_trip_matching = config.gtfs_trip_matching
        self.stop_matcher = stop_matcher or StopMatcher(config.stop_matching_distance)
        self.route_matcher = route_matcher or RouteMatcher()
        self.trip_matcher = trip_matcher or TripMatcher(
            client,
            miss_penalty=config.miss_penalty,
            out_of_order_penalty=config.out_of_order_penalty,
            max_trip_score=config.max_trip_score,
            all_misses_score=config.all_misses_score,
        )
        self.inferencer = inferencer or TripInferencer(
            early_penalty_factor=config.early_penalty_factor,
            vehicle_status_max_age=config.vehicle_status_max_age,
        )
        self._lock = threading.Lock()
        self._snapshot = MappingSnapshot()

    @property
    def enabled(self) -> bool:
        return self._gtfs_path is not None

    @property
    def snapshot(self) -> MappingSnapshot:
        return self._snapshot

    @property
    def timezone(self) -> Optional[tzinfo]:
        """Agency time zone of the last successful pass, or None before one."""
        return self._snapshot.timezone

    def match_to_gtfs(
        self,
        routes: List[NBRoute],
        loader: Optional[GTFSLoader] = None,
        schedules: Optional[Dict[str, List[NBRoute]]] = None,
        use_cache: bool = True,
    ) -> None:
        """
        Run a full matching pass and publish its mappings.

        Args:
            routes: NextBus route configurations.
            loader: Already-loaded GTFS data; read from gtfs_path when None.
            schedules: Optional schedule tables keyed by route tag.
            use_cache: Read NextBus schedules from the client cache; scheduled
                refresh passes set this to False.
        """
        if not self.enabled and loader is None:
            return

        with self._lock:
            if loader is None:
                loader = GTFSLoader()
                loader.load_from_path(self._gtfs_path)

            potential_stop_matches = self.stop_matcher.get_potential_stop_matches(
                routes, loader.stops.values()
            )
            route_matches = self.route_matcher.get_route_matches(routes, loader, potential_stop_matches)
            route_ids = {tag: match.gtfs_route.id for tag, match in route_matches.items()}
            logger.info(f"Matched {len(route_ids)} of {len(routes)} routes")

            stop_ids = self.stop_matcher.get_stop_matches(route_matches, potential_stop_matches, loader)
            logger.info(f"Matched {len(stop_ids)} route-direction stops")

            timezone = loader.timezone if loader.agency_timezone else self._snapshot.timezone
            stop_time_indices = self._snapshot.stop_time_indices
            if self._gtfs_trip_matching:
                stop_time_indices = self.trip_matcher.get_trip_matches(
                    route_matches, stop_ids, loader, schedules, use_cache
                )
                logger.info(f"Indexed {len(stop_time_indices)} service date blocks")

            self._snapshot = MappingSnapshot(
                route_ids=route_ids,
                stop_ids=stop_ids,
                stop_time_indices=stop_time_indices,
                timezone=timezone,
            )
            if timezone is not None:
                self.inferencer.timezone = timezone

    def handle_route_configurations(self, routes: List[NBRoute], use_cache: bool = True) -> None:
        """Coverage refresh listener; a failed pass keeps the previous mappings."""
        try:
            self.match_to_gtfs(routes, use_cache=use_cache)
        except Exception:
            logger.error("error matching NextBus data to GTFS, keeping previous mappings", exc_info=True)

    def map_predictions(self, predictions: List[FlatPrediction]) -> None:
        """Rewrite route and stop tags to GTFS ids, then infer missing trips."""
        if not self.enabled:
            return

        snapshot = self._snapshot
        for prediction in predictions:
            route_id = snapshot.route_ids.get(prediction.route_tag)
            stop_id = snapshot.stop_ids.get(
                RouteDirectionStopKey(prediction.route_tag, prediction.dir_tag, prediction.stop_tag)
            )
            if route_id is not None:
                prediction.route_tag = route_id
            if stop_id is not None:
                prediction.stop_tag = stop_id

        if self._gtfs_trip_matching:
            self.inferencer.apply(predictions, snapshot.stop_time_indices)

    def get_route_id(self, route_tag: str) -> Optional[str]:
        return self._snapshot.route_ids.get(route_tag)

    def get_stop_id(self, route_tag: str, direction_tag: Optional[str], stop_tag: str) -> Optional[str]:
        return self._snapshot.stop_ids.get(RouteDirectionStopKey(route_tag, direction_tag, stop_tag))
