"""Maps NextBus schedule blocks onto GTFS trips and builds per-block stop time indices."""

import logging
from bisect import bisect_left
from typing import Dict, List, Optional, Tuple

from .config import (
    DEFAULT_ALL_MISSES_SCORE,
    DEFAULT_MAX_TRIP_SCORE,
    DEFAULT_MISS_PENALTY,
    DEFAULT_OUT_OF_ORDER_PENALTY,
)
from .exceptions import ConfigurationError
from .models import (
    FlatStopTime,
    GtfsStopTime,
    NBRoute,
    RouteDirectionStopKey,
    ServiceDateBlockKey,
    StopTimeIndices,
)

logger = logging.getLogger(__name__)

# Monday-first day masks for the NextBus service classes
SERVICE_CLASS_DAY_MASKS = {
    "mtwth": "1111000",
    "f": "0000100",
    "sat": "0000010",
    "sun": "0000001",
    "MoTuWeTh": "1111000",
    "Friday": "0000100",
    "Saturday": "0000010",
    "Sunday": "0000001",
    "wkd": "1111100",
    "wkend": "0000011",
}


class TripMatcher:
    """Scores NextBus schedule trips against GTFS trips to pick calendars and trips per block."""

    def __init__(
        self,
        client=None,
        miss_penalty: int = DEFAULT_MISS_PENALTY,
        out_of_order_penalty: int = DEFAULT_OUT_OF_ORDER_PENALTY,
        max_trip_score: int = DEFAULT_MAX_TRIP_SCORE,
        all_misses_score: int = DEFAULT_ALL_MISSES_SCORE,
    ):
        """
        Initialize the matcher.

        Args:
            client: NextBusClient used to download route schedules.
            miss_penalty: Minutes charged for a stop the GTFS trip never visits.
            out_of_order_penalty: Minutes charged for a stop visited out of order.
            max_trip_score: Best scores above this are rejected as non-matches.
            all_misses_score: Score of a trip sharing no stop with the GTFS trip.
        """
        self._client = client
        self.miss_penalty = miss_penalty
        self.out_of_order_penalty = out_of_order_penalty
        self.max_trip_score = max_trip_score
        self.all_misses_score = all_misses_score

    def get_trip_matches(
        self,
        route_matches,
        stop_id_mappings: Dict[RouteDirectionStopKey, str],
        loader,
        schedules: Optional[Dict[str, List[NBRoute]]] = None,
        use_cache: bool = True,
    ) -> Dict[ServiceDateBlockKey, StopTimeIndices]:
        """
        Build stop time indices for every scheduled block of the matched routes.

        Args:
            route_matches: RouteMatch values keyed by NextBus route tag.
            stop_id_mappings: GTFS stop ids keyed by (route, direction, stop).
            loader: GTFSLoader holding the canonical schedule.
            schedules: Optional schedule tables keyed by route tag; downloaded
                through the client when missing.
            use_cache: Read downloaded schedules from the client cache; False
                fetches them again.

        Returns:
            Stop time indices keyed by (GTFS route id, block id, service date).

        Raises:
            ConfigurationError: For a service class with no known day mask.
        """
        mappings: Dict[ServiceDateBlockKey, StopTimeIndices] = {}

        for route_tag in sorted(route_matches):
            gtfs_route = route_matches[route_tag].gtfs_route
            if schedules is not None and route_tag in schedules:
                route_schedules = schedules[route_tag]
            else:
                route_schedules = self._client.download_route_schedule(route_tag, use_cache)

            stop_times = flatten_schedules(route_schedules, stop_id_mappings)
            trips_by_service_id = get_trip_stop_times_by_service_id(loader, gtfs_route.id)

            for (schedule_class, service_class), class_stop_times in group_by_class(stop_times).items():
                service_ids = get_applicable_service_ids(service_class, loader)
                if not service_ids:
                    logger.warning(
                        f"no calendar for route {route_tag} service class {service_class}"
                    )
                    continue

                best: Optional[Tuple[float, str, Dict[str, StopTimeIndices]]] = None
                for service_id in service_ids:
                    indices_by_block: Dict[str, StopTimeIndices] = {}
                    score = self.find_best_stop_time_indices_for_blocks(
                        class_stop_times, trips_by_service_id.get(service_id, []), indices_by_block
                    )
                    if best is None or score < best[0]:
                        best = (score, service_id, indices_by_block)

                score, service_id, indices_by_block = best
                logger.info(
                    f"route {route_tag} {schedule_class}/{service_class} -> service_id={service_id} "
                    f"score={score} blocks={len(indices_by_block)}"
                )
                for service_date in loader.get_service_dates_for_service_id(service_id):
                    for block_id, indices in indices_by_block.items():
                        mappings[ServiceDateBlockKey(gtfs_route.id, block_id, service_date)] = indices

        return mappings

    def find_best_stop_time_indices_for_blocks(
        self,
        stop_times: List[FlatStopTime],
        gtfs_trips: List[List[GtfsStopTime]],
        indices_by_block: Dict[str, StopTimeIndices],
    ) -> float:
        """
        Match every trip of every block and fill indices_by_block.

        Returns:
            The sum of each trip's best alignment score, rejected trips included.
        """
        stop_times_by_block: Dict[str, List[FlatStopTime]] = {}
        for stop_time in stop_times:
            stop_times_by_block.setdefault(stop_time.block_tag, []).append(stop_time)

        total = 0
        for block_id in sorted(stop_times_by_block):
            block_stop_times = stop_times_by_block[block_id]
            fix_trip_groupings_for_block(block_stop_times)

            trips: Dict[int, List[FlatStopTime]] = {}
            for stop_time in block_stop_times:
                trips.setdefault(stop_time.trip_index, []).append(stop_time)

            matched: List[GtfsStopTime] = []
            for trip in sorted(trips.values(), key=lambda t: t[0].epoch_time):
                total += self.find_best_gtfs_trip(trip, gtfs_trips, matched)

            if not matched:
                logger.debug(f"block {block_id}: no trip matched")
                continue
            matched.sort(key=lambda st: st.time)
            indices_by_block[block_id] = StopTimeIndices.create(matched)

        return total

    def find_best_gtfs_trip(
        self,
        nb_trip: List[FlatStopTime],
        gtfs_trips: List[List[GtfsStopTime]],
        matched: List[GtfsStopTime],
    ) -> float:
        """Append the best-aligned GTFS trip's stop times to matched and return its score."""
        nb_trip = sorted(nb_trip, key=FlatStopTime.sort_key)

        best_score = None
        best_trip = None
        for gtfs_trip in gtfs_trips:
            score = self.compute_stop_time_alignment_score(nb_trip, gtfs_trip)
            if best_score is None or score < best_score:
                best_score = score
                best_trip = gtfs_trip

        if best_score is None:
            return self.all_misses_score

        if best_score > self.max_trip_score:
            details = "".join(
                f"\n  {st.route_tag} {st.schedule_class} {st.service_class} {st.direction_tag} "
                f"{st.block_tag} {st.stop_tag} {st.time_as_string}"
                for st in nb_trip
            )
            logger.warning(f"no good match found for trip (score={best_score}):{details}")
        else:
            matched.extend(best_trip)
        return best_score

    def compute_stop_time_alignment_score(
        self, nb_stop_times: List[FlatStopTime], gtfs_stop_times: List[GtfsStopTime]
    ) -> int:
        """
        Minutes of disagreement between a NextBus trip and a GTFS trip.

        Each NextBus stop time is aligned with the nearest-in-time visit of its
        GTFS stop. Missing stops and backwards jumps cost a fixed penalty;
        otherwise the time difference in whole minutes is added.
        """
        occurrences: Dict[str, Tuple[List[int], List[int]]] = {}
        for position, stop_time in enumerate(gtfs_stop_times):
            times, positions = occurrences.setdefault(stop_time.stop_id, ([], []))
            times.append(stop_time.time)
            positions.append(position)
        for stop_id, (times, positions) in occurrences.items():
            order = sorted(range(len(times)), key=lambda i: (times[i], positions[i]))
            occurrences[stop_id] = ([times[i] for i in order], [positions[i] for i in order])

        score = 0
        last_position = -1
        all_misses = True

        for nb_stop_time in nb_stop_times:
            occurrence = occurrences.get(nb_stop_time.gtfs_stop_id)
            if occurrence is None:
                score += self.miss_penalty
                continue

            all_misses = False
            seconds = nb_stop_time.epoch_time // 1000
            i = find_nearest(occurrence[0], seconds)
            position = occurrence[1][i]
            if position < last_position:
                score += self.out_of_order_penalty
            else:
                score += abs(seconds - occurrence[0][i]) // 60
            last_position = position

        if all_misses:
            return self.all_misses_score
        return score


def find_nearest(times: List[int], value: int) -> int:
    """Index of the entry of a sorted list closest to value; earlier entry on ties."""
    i = bisect_left(times, value)
    if i == 0:
        return 0
    if i == len(times):
        return i - 1
    if value - times[i - 1] <= times[i] - value:
        return i - 1
    return i


def flatten_schedules(
    schedules: List[NBRoute], stop_id_mappings: Dict[RouteDirectionStopKey, str]
) -> List[FlatStopTime]:
    """One FlatStopTime per timed schedule cell, each schedule column its own trip."""
    stop_ids_by_route_stop: Dict[Tuple[str, str], str] = {}
    for key in sorted(stop_id_mappings, key=lambda k: (k.route_tag, k.direction_tag or "", k.stop_tag)):
        stop_ids_by_route_stop.setdefault((key.route_tag, key.stop_tag), stop_id_mappings[key])

    flattened = []
    trip_index = 0
    for schedule in schedules:
        for trip in schedule.trips:
            for stop_time in trip.stop_times:
                # Unset cells
                if stop_time.epoch_time < 0:
                    continue
                key = RouteDirectionStopKey(schedule.tag, schedule.direction, stop_time.tag)
                gtfs_stop_id = stop_id_mappings.get(key)
                if gtfs_stop_id is None:
                    gtfs_stop_id = stop_ids_by_route_stop.get((schedule.tag, stop_time.tag))
                flattened.append(
                    FlatStopTime(
                        route_tag=schedule.tag,
                        schedule_class=schedule.schedule_class,
                        service_class=schedule.service_class,
                        direction_tag=schedule.direction,
                        block_tag=trip.block_id,
                        stop_tag=stop_time.tag,
                        epoch_time=stop_time.epoch_time,
                        trip_index=trip_index,
                        gtfs_stop_id=gtfs_stop_id,
                    )
                )
            trip_index += 1
    return flattened


def group_by_class(stop_times: List[FlatStopTime]) -> Dict[Tuple[str, str], List[FlatStopTime]]:
    groups: Dict[Tuple[str, str], List[FlatStopTime]] = {}
    for stop_time in stop_times:
        groups.setdefault((stop_time.schedule_class, stop_time.service_class), []).append(stop_time)
    return dict(sorted(groups.items(), key=lambda item: (item[0][0] or "", item[0][1] or "")))


def fix_trip_groupings_for_block(stop_times: List[FlatStopTime]) -> None:
    """
    Re-sort a block's stop times by time and regroup them into trips.

    Schedule columns come back out of order, so a new trip starts at every
    change of direction.
    """
    stop_times.sort(key=FlatStopTime.sort_key)
    trip_index = -1
    prev_direction = None
    for stop_time in stop_times:
        if trip_index < 0 or stop_time.direction_tag != prev_direction:
            prev_direction = stop_time.direction_tag
            trip_index += 1
        stop_time.trip_index = trip_index


def get_applicable_service_ids(service_class: str, loader) -> List[str]:
    """Service ids whose calendar shares the most weekdays with the service class."""
    day_mask = SERVICE_CLASS_DAY_MASKS.get(service_class)
    if day_mask is None:
        raise ConfigurationError(f"unknown schedule serviceClass {service_class}")

    best_overlap = None
    service_ids: List[str] = []
    for service_id in sorted(loader.calendars):
        overlap = compute_day_mask_overlap(day_mask, loader.calendars[service_id].days)
        if best_overlap is None or overlap > best_overlap:
            best_overlap = overlap
            service_ids = [service_id]
        elif overlap == best_overlap:
            service_ids.append(service_id)
    return service_ids


def compute_day_mask_overlap(a: str, b: str) -> int:
    return sum(1 for x, y in zip(a, b) if x == "1" and y == "1")


def get_trip_stop_times_by_service_id(loader, route_id: str) -> Dict[str, List[List[GtfsStopTime]]]:
    """Timed stop times of each trip of a route, grouped by service id and sorted by first departure."""
    trips_by_service_id: Dict[str, List[Tuple[str, List[GtfsStopTime]]]] = {}
    for trip in loader.get_trips_for_route(route_id):
        stop_times = [st for st in loader.get_stop_times_for_trip(trip.id) if st.is_time_set]
        if stop_times:
            trips_by_service_id.setdefault(trip.service_id, []).append((trip.id, stop_times))

    result = {}
    for service_id, trips in trips_by_service_id.items():
        trips.sort(key=lambda t: (t[1][0].departure_time, t[0]))
        result[service_id] = [stop_times for _, stop_times in trips]
    return result
