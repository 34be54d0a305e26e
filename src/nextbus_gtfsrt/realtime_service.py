"""Polls NextBus for predictions, vehicle locations and messages and feeds GTFS-realtime sinks."""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from google.transit import gtfs_realtime_pb2

from .config import Config
from .exceptions import DownloadCancelled
from .models import FlatPrediction, NBMessage, NBPredictions, NBVehicle, RouteStopCoverage, TripUpdateId
from .sink import GtfsRealtimeSink, IncrementalUpdate

logger = logging.getLogger(__name__)


class RealtimeService:
    """
    Runs one polling worker per enabled feed.

    Each worker polls, processes and then waits out the rest of the minimum
    interval, measured from the start of the poll. Failures are contained per
    route (or per message batch) and never stop a worker.
    """

    def __init__(
        self,
        config: Config,
        client,
        coverage_service,
        matching_service,
        trip_updates_sink: Optional[GtfsRealtimeSink] = None,
        vehicle_positions_sink: Optional[GtfsRealtimeSink] = None,
        alerts_sink: Optional[GtfsRealtimeSink] = None,
        downloader=None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the service.

        Args:
            config: Runtime configuration (enabled feeds, polling interval).
            client: NextBusClient.
            coverage_service: RouteStopCoverageService supplying the polled stops.
            matching_service: NextBusToGtfsService applying GTFS ids.
            trip_updates_sink: Sink for trip updates.
            vehicle_positions_sink: Sink for vehicle positions.
            alerts_sink: Sink for alerts.
            downloader: Shared DownloaderService, closed on stop() to wake stalled workers.
            clock: Time source, in epoch seconds.
        """
        self._config = config
        self._client = client
        self._coverage_service = coverage_service
        self._matching_service = matching_service
        self.trip_updates_sink = trip_updates_sink or GtfsRealtimeSink()
        self.vehicle_positions_sink = vehicle_positions_sink or GtfsRealtimeSink()
        self.alerts_sink = alerts_sink or GtfsRealtimeSink()
        self._downloader = downloader
        self._clock = clock
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._prev_vehicle_request_time_by_route: Dict[str, int] = {}

    def start(self) -> None:
        self._stop_event.clear()
        workers = []
        if self._config.enable_trip_updates:
            workers.append(("trip-updates", self.process_trip_updates))
        if self._config.enable_vehicle_positions:
            workers.append(("vehicle-positions", self.process_vehicle_positions))
        if self._config.enable_alerts:
            workers.append(("alerts", self.process_alerts))

        for name, process in workers:
            thread = threading.Thread(target=self._run_loop, args=(name, process), name=name, daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Started {len(self._threads)} realtime workers")

    def stop(self) -> None:
        self._stop_event.set()
        if self._downloader is not None:
            self._downloader.close()
        for thread in self._threads:
            thread.join()
        self._threads = []
        logger.info("Stopped realtime workers")

    def _run_loop(self, name: str, process: Callable[[], None]) -> None:
        interval = self._config.min_time_between_requests
        while not self._stop_event.is_set():
            t0 = self._clock()
            try:
                process()
            except DownloadCancelled:
                break
            except Exception:
                logger.error(f"error in {name} worker", exc_info=True)

            remaining = max(0, interval - (self._clock() - t0))
            if remaining > 0:
                logger.info(f"{name}: sleeping for {remaining:.1f}s")
            if self._stop_event.wait(remaining):
                break

    # Trip updates

    def process_trip_updates(self) -> None:
        for coverage in self._coverage_service.route_stop_coverage:
            if self._stop_event.is_set():
                return
            try:
                self.generate_trip_updates(coverage)
            except DownloadCancelled:
                raise
            except Exception:
                logger.warning(f"error processing route {coverage.route_tag}", exc_info=True)

    def generate_trip_updates(self, coverage: RouteStopCoverage) -> None:
        logger.info(f"route={coverage.route_tag}")
        all_predictions = self._client.download_predictions(coverage)
        predictions = flatten_predictions(all_predictions)
        self._matching_service.map_predictions(predictions)
        update = build_trip_updates(group_predictions_by_id(predictions))
        self.trip_updates_sink.handle_incremental_update(update)

    # Vehicle positions

    def process_vehicle_positions(self) -> None:
        for coverage in self._coverage_service.route_stop_coverage:
            if self._stop_event.is_set():
                return
            try:
                self.generate_vehicle_positions(coverage.route_tag)
            except DownloadCancelled:
                raise
            except Exception:
                logger.warning(f"error processing vehicles for route {coverage.route_tag}", exc_info=True)

    def generate_vehicle_positions(self, route_tag: str) -> None:
        prev_request_time = self._prev_vehicle_request_time_by_route.get(route_tag, 0)
        current_request_time = int(self._clock() * 1000)
        vehicles = self._client.download_vehicle_locations(route_tag, prev_request_time)
        self._prev_vehicle_request_time_by_route[route_tag] = current_request_time

        now = int(self._clock())
        update = IncrementalUpdate()
        for vehicle in vehicles:
            route_id = self._matching_service.get_route_id(vehicle.route_tag or route_tag)
            update.add_updated_entity(
                build_vehicle_position(vehicle, route_id or vehicle.route_tag or route_tag, now)
            )
        self.vehicle_positions_sink.handle_incremental_update(update)

    # Alerts

    def process_alerts(self) -> None:
        messages = self._client.download_messages()
        update = IncrementalUpdate()
        seen = set()
        for message in messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            update.add_updated_entity(build_alert(message, self._matching_service.get_route_id))
        self.alerts_sink.handle_incremental_update(update)
        logger.info(f"Published {len(seen)} alerts")


def flatten_predictions(all_predictions: List[NBPredictions]) -> List[FlatPrediction]:
    flattened = []
    for predictions in all_predictions:
        for prediction in predictions.predictions:
            flattened.append(
                FlatPrediction(
                    route_tag=predictions.route_tag,
                    stop_tag=predictions.stop_tag,
                    epoch_time=prediction.epoch_time,
                    dir_tag=prediction.dir_tag,
                    vehicle=prediction.vehicle,
                    block=prediction.block,
                    trip_tag=prediction.trip_tag,
                )
            )
    return flattened


def group_predictions_by_id(predictions: List[FlatPrediction]) -> Dict[TripUpdateId, List[FlatPrediction]]:
    """Group by (vehicle, trip); predictions without a vehicle are dropped."""
    groups: Dict[TripUpdateId, List[FlatPrediction]] = {}
    for prediction in predictions:
        if prediction.vehicle is None:
            continue
        groups.setdefault(TripUpdateId(prediction.vehicle, prediction.trip_tag), []).append(prediction)
    return groups


def build_trip_updates(groups: Dict[TripUpdateId, List[FlatPrediction]]) -> IncrementalUpdate:
    update = IncrementalUpdate()
    for update_id, predictions in groups.items():
        predictions = sorted(predictions, key=lambda p: p.epoch_time)
        first = predictions[0]

        entity = gtfs_realtime_pb2.FeedEntity()
        entity.id = update_id.feed_entity_id
        trip_update = entity.trip_update
        trip_update.trip.SetInParent()
        if first.route_tag is not None:
            trip_update.trip.route_id = first.route_tag
        if update_id.trip_id is not None:
            trip_update.trip.trip_id = update_id.trip_id
        trip_update.vehicle.id = update_id.vehicle_id

        for prediction in predictions:
            stop_time_update = trip_update.stop_time_update.add()
            stop_time_update.stop_id = prediction.stop_tag
            stop_time_update.departure.time = prediction.epoch_time // 1000

        update.add_updated_entity(entity)
    return update


def build_vehicle_position(vehicle: NBVehicle, route_id: Optional[str], now: int) -> gtfs_realtime_pb2.FeedEntity:
    entity = gtfs_realtime_pb2.FeedEntity()
    entity.id = vehicle.id
    position = entity.vehicle
    position.position.latitude = vehicle.lat
    position.position.longitude = vehicle.lon
    position.position.bearing = vehicle.heading
    position.vehicle.id = vehicle.id
    if route_id is not None:
        position.trip.route_id = route_id
    position.timestamp = max(0, now - vehicle.secs_since_report)
    return entity


def build_alert(message: NBMessage, get_route_id: Callable[[str], Optional[str]]) -> gtfs_realtime_pb2.FeedEntity:
    """An Alert entity with an English header and informed entities for each route and stop."""
    entity = gtfs_realtime_pb2.FeedEntity()
    entity.id = message.id
    alert = entity.alert

    translation = alert.header_text.translation.add()
    translation.language = "en"
    translation.text = message.text

    if message.start_boundary > 0 or message.end_boundary > 0:
        period = alert.active_period.add()
        if message.start_boundary > 0:
            period.start = message.start_boundary // 1000
        if message.end_boundary > 0:
            period.end = message.end_boundary // 1000

    for route in message.routes:
        route_id = get_route_id(route.tag) or route.tag
        alert.informed_entity.add().route_id = route_id
        for stop in route.stops:
            selector = alert.informed_entity.add()
            selector.route_id = route_id
            selector.stop_id = stop.stop_id or stop.tag
    return entity
