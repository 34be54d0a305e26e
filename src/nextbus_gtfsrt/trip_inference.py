"""Assigns GTFS trip ids to live predictions that arrive without one."""

import logging
import time
from bisect import bisect_left
from datetime import date, datetime, tzinfo
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .config import DEFAULT_EARLY_PENALTY_FACTOR, DEFAULT_VEHICLE_STATUS_MAX_AGE
from .models import FlatPrediction, ServiceDateBlockKey, StopTimeIndices, VehicleStatus

logger = logging.getLogger(__name__)


class TripInferencer:
    """
    Infers trips from block-level predictions.

    Keeps the last schedule deviation of each vehicle across polls, so a
    vehicle running late stays matched to the trip it is late for. Only one
    thread may call apply().
    """

    def __init__(
        self,
        timezone: Optional[tzinfo] = None,
        early_penalty_factor: int = DEFAULT_EARLY_PENALTY_FACTOR,
        vehicle_status_max_age: float = DEFAULT_VEHICLE_STATUS_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the inferencer.

        Args:
            timezone: Agency time zone; the local zone when None.
            early_penalty_factor: Weight of running early relative to running late.
            vehicle_status_max_age: Seconds after which an unseen vehicle is forgotten.
            clock: Time source, in epoch seconds.
        """
        self.timezone = timezone
        self.early_penalty_factor = early_penalty_factor
        self.vehicle_status_max_age = vehicle_status_max_age
        self._clock = clock
        self._vehicle_status_by_id: Dict[str, VehicleStatus] = {}

    @property
    def vehicle_statuses(self) -> Dict[str, VehicleStatus]:
        return self._vehicle_status_by_id

    def apply(
        self,
        predictions: List[FlatPrediction],
        stop_time_indices: Mapping[ServiceDateBlockKey, StopTimeIndices],
    ) -> None:
        """
        Set trip_tag on trip-less predictions, in place.

        Args:
            predictions: Predictions with GTFS route and stop ids already applied.
            stop_time_indices: Block indices keyed by (route id, block id, service date).
        """
        groups: Dict[Tuple[str, str], List[FlatPrediction]] = {}
        for prediction in predictions:
            if prediction.trip_tag is not None or prediction.vehicle is None:
                continue
            groups.setdefault((prediction.vehicle, prediction.block), []).append(prediction)

        for (vehicle_id, block_id), group in groups.items():
            status = self.get_vehicle_status(vehicle_id)
            group.sort(key=lambda p: p.epoch_time)
            first = group[0]
            indices = stop_time_indices.get(
                ServiceDateBlockKey(first.route_tag, block_id, status.service_date)
            )
            if indices is None:
                logger.debug(
                    f"no stop time indices for route={first.route_tag} block={block_id} "
                    f"date={status.service_date}"
                )
                continue
            self.apply_stop_time_indices(group, status, indices)

        self.prune_vehicle_statuses()

    def apply_stop_time_indices(
        self, predictions: List[FlatPrediction], status: VehicleStatus, indices: StopTimeIndices
    ) -> None:
        """Anchor the earliest indexed prediction to a scheduled stop time, then walk forward."""
        for prediction_index, prediction in enumerate(predictions):
            index = indices.get_index_for_stop(prediction.stop_tag)
            if index is None:
                continue

            effective_time = self._effective_time(prediction, status)
            i = bisect_left(index.times, effective_time)

            best_j = None
            best_score = None
            for j in range(max(0, i - 1), min(i + 1, len(index.times))):
                deviation = effective_time - index.times[j]
                score = self.score_deviation(deviation, status.last_schedule_deviation)
                if best_score is None or score < best_score:
                    best_j = j
                    best_score = score
            if best_j is None:
                continue

            status.last_schedule_deviation = effective_time - index.times[best_j]
            position = index.positions[best_j]
            stop_times = indices.stop_times
            prediction.trip_tag = stop_times[position].trip_id

            for next_prediction in predictions[prediction_index + 1:]:
                position = get_next_stop_time_position(stop_times, position + 1, next_prediction.stop_tag)
                if position == len(stop_times):
                    break
                next_prediction.trip_tag = stop_times[position].trip_id
                status.last_schedule_deviation = (
                    self._effective_time(next_prediction, status) - stop_times[position].time
                )
            return

    def score_deviation(self, deviation: int, last_deviation: int) -> int:
        """Change from the last deviation plus the deviation itself, running early weighted heavier."""
        factor = self.early_penalty_factor if deviation < 0 else 1
        return abs(deviation - last_deviation) + factor * abs(deviation)

    def get_vehicle_status(self, vehicle_id: str) -> VehicleStatus:
        now = self._clock()
        status = self._vehicle_status_by_id.get(vehicle_id)
        if status is None:
            service_date, service_date_value = get_service_date(now, self.timezone)
            status = VehicleStatus(service_date=service_date, service_date_value=service_date_value)
            self._vehicle_status_by_id[vehicle_id] = status
        status.touch(now)
        return status

    def prune_vehicle_statuses(self) -> None:
        oldest = self._clock() - self.vehicle_status_max_age
        stale = [
            vehicle_id
            for vehicle_id, status in self._vehicle_status_by_id.items()
            if status.last_update_time < oldest
        ]
        for vehicle_id in stale:
            del self._vehicle_status_by_id[vehicle_id]
        if stale:
            logger.debug(f"Pruned {len(stale)} vehicle statuses")

    @staticmethod
    def _effective_time(prediction: FlatPrediction, status: VehicleStatus) -> int:
        return (prediction.epoch_time - status.service_date_value) // 1000


def get_next_stop_time_position(stop_times, position: int, stop_id: str) -> int:
    """First position at or after position visiting stop_id, or len(stop_times)."""
    while position < len(stop_times):
        if stop_times[position].stop_id == stop_id:
            break
        position += 1
    return position


def get_service_date(now: float, timezone: Optional[tzinfo]) -> Tuple[date, int]:
    """
    Current service date in the time zone and the epoch ms its times count from.

    GTFS times are measured from noon minus 12 hours, which differs from
    midnight on daylight saving changeover days.
    """
    if timezone is None:
        local_now = datetime.fromtimestamp(now).astimezone()
    else:
        local_now = datetime.fromtimestamp(now, timezone)
    service_date = local_now.date()
    noon = datetime(
        service_date.year, service_date.month, service_date.day, 12, tzinfo=local_now.tzinfo
    )
    return service_date, int((noon.timestamp() - 12 * 60 * 60) * 1000)
