"""NextBus public XML feed client and response decoding."""

import hashlib
import logging
import os
import pickle
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, TypeVar
from urllib.parse import urlencode

from .config import DEFAULT_BASE_URL
from .downloader import DownloaderService
from .exceptions import NextBusApiError
from .models import (
    NBDirection,
    NBMessage,
    NBPrediction,
    NBPredictions,
    NBRoute,
    NBStop,
    NBStopTime,
    NBTrip,
    NBVehicle,
    RouteStopCoverage,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

FEED_PATH = "/service/publicXMLFeed"


class NextBusClient:
    """Builds NextBus requests, caches slow-changing responses and decodes them."""

    def __init__(
        self,
        downloader: DownloaderService,
        agency_id: str,
        base_url: str = DEFAULT_BASE_URL,
        cache_dir: Optional[str] = None,
    ):
        """
        Initialize the client.

        Args:
            downloader: Shared, throttled downloader.
            agency_id: NextBus agency tag (e.g., "sf-muni").
            base_url: Web services root.
            cache_dir: Optional directory for cached route list/config/schedule
                responses. Caching is disabled when None.
        """
        self._downloader = downloader
        self._agency_id = agency_id
        self._base_url = base_url.rstrip("/")
        self._cache_dir = Path(cache_dir) if cache_dir else None
        if self._cache_dir is not None:
            self._cache_dir.mkdir(parents=True, exist_ok=True)

    # Request templates

    def get_url(self, command: str, *params) -> str:
        """Fully-qualified URL for a command plus extra (name, value) pairs."""
        query = [("command", command), ("a", self._agency_id)]
        query.extend(params)
        return f"{self._base_url}{FEED_PATH}?{urlencode(query)}"

    # Downloads

    def download_route_list(self, use_cache: bool = True) -> List[NBRoute]:
        url = self.get_url("routeList")
        return self._digest_url(url, decode_routes, cache=True, refresh=not use_cache)

    def download_route_config(self, route_tag: str, use_cache: bool = True) -> List[NBRoute]:
        url = self.get_url("routeConfig", ("r", route_tag))
        return self._digest_url(url, decode_routes, cache=True, refresh=not use_cache)

    def download_route_configurations(self, use_cache: bool = True) -> List[NBRoute]:
        """Download the route list, then the full configuration of every route."""
        routes = self.download_route_list(use_cache)
        configurations: List[NBRoute] = []
        for index, route in enumerate(routes, start=1):
            logger.info(f"routes processed={index}/{len(routes)}")
            configurations.extend(self.download_route_config(route.tag, use_cache))
        return configurations

    def download_route_schedule(self, route_tag: str, use_cache: bool = True) -> List[NBRoute]:
        """Schedule tables for a route, one NBRoute per (class, direction) table."""
        url = self.get_url("schedule", ("r", route_tag))
        return self._digest_url(url, decode_routes, cache=True, refresh=not use_cache)

    def download_predictions(self, coverage: RouteStopCoverage) -> List[NBPredictions]:
        params = [
            ("stops", f"{coverage.route_tag}|{stop_tag}")
            for stop_tag in sorted(coverage.stop_tags)
        ]
        url = self.get_url("predictionsForMultiStops", *params)
        return self._digest_url(url, decode_predictions, cache=False)

    def download_vehicle_locations(self, route_tag: str, prev_request_time: int = 0) -> List[NBVehicle]:
        """
        Vehicle locations for a route.

        Args:
            route_tag: NextBus route tag.
            prev_request_time: Epoch ms of the previous request; only vehicles
                reported since then are returned. 0 requests everything.
        """
        params = [("r", route_tag)]
        if prev_request_time:
            params.append(("t", str(prev_request_time)))
        url = self.get_url("vehicleLocations", *params)
        return self._digest_url(url, decode_vehicles, cache=False)

    def download_messages(self) -> List[NBMessage]:
        url = self.get_url("messages")
        return self._digest_url(url, decode_messages, cache=False)

    # Caching

    def _cache_file_for_url(self, url: str) -> Optional[Path]:
        if self._cache_dir is None:
            return None
        name = hashlib.sha1(url.encode("utf-8")).hexdigest()
        return self._cache_dir / name

    def _digest_url(
        self,
        url: str,
        decoder: Callable[[ET.Element], T],
        cache: bool,
        refresh: bool = False,
    ) -> T:
        cache_file = self._cache_file_for_url(url) if cache else None
        if cache_file is not None and not refresh and cache_file.exists():
            try:
                with open(cache_file, "rb") as f:
                    result = pickle.load(f)
                logger.debug(f"Using cached data for {url}")
                return result
            except (pickle.UnpicklingError, EOFError) as e:
                logger.warning(f"Discarding unreadable cache file {cache_file.name} for {url}: {e}")

        stream = self._downloader.open_url(url)
        with stream:
            result = decoder(parse_body(stream))

        if cache_file is not None:
            self._write_cache_file(cache_file, result)
        return result

    @staticmethod
    def _write_cache_file(cache_file: Path, result) -> None:
        """Write through a temp file in the same directory so readers never see a partial file."""
        fd, tmp_name = tempfile.mkstemp(dir=cache_file.parent, prefix=f".{cache_file.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                pickle.dump(result, f)
            os.replace(tmp_name, cache_file)
        except BaseException:
            os.unlink(tmp_name)
            raise


# Decoding


def parse_body(stream: BinaryIO) -> ET.Element:
    """Parse a response and raise NextBusApiError for an <Error> body."""
    root = ET.parse(stream).getroot()
    error = root.find("Error")
    if error is not None:
        message = (error.text or "").strip()
        raise NextBusApiError(message, should_retry=error.get("shouldRetry") == "true")
    return root


def decode_routes(root: ET.Element) -> List[NBRoute]:
    return [decode_route(el) for el in root.findall("route")]


def decode_route(el: ET.Element) -> NBRoute:
    """
    Decode a <route> from routeList, routeConfig or schedule responses.

    Direction stops reference route-level stops by tag; the references are
    resolved to the same NBStop objects.
    """
    stops = [decode_stop(stop_el) for stop_el in el.findall("stop")]
    stops_by_tag: Dict[str, NBStop] = {stop.tag: stop for stop in stops}

    directions = []
    for direction_el in el.findall("direction"):
        direction_stops = []
        for stop_el in direction_el.findall("stop"):
            tag = stop_el.get("tag")
            direction_stops.append(stops_by_tag.get(tag) or NBStop(tag=tag))
        directions.append(
            NBDirection(
                tag=direction_el.get("tag"),
                title=direction_el.get("title"),
                name=direction_el.get("name"),
                use_for_ui=_bool(direction_el.get("useForUI")),
                stops=direction_stops,
            )
        )

    trips = []
    for tr_el in el.findall("tr"):
        stop_times = [
            NBStopTime(tag=stop_el.get("tag"), epoch_time=_int(stop_el.get("epochTime"), -1))
            for stop_el in tr_el.findall("stop")
        ]
        trips.append(NBTrip(block_id=tr_el.get("blockID"), stop_times=stop_times))

    return NBRoute(
        tag=el.get("tag"),
        title=el.get("title"),
        stops=stops,
        directions=directions,
        schedule_class=el.get("scheduleClass"),
        service_class=el.get("serviceClass"),
        direction=el.get("direction"),
        trips=trips,
    )


def decode_stop(el: ET.Element) -> NBStop:
    return NBStop(
        tag=el.get("tag"),
        title=el.get("title"),
        lat=_float(el.get("lat")),
        lon=_float(el.get("lon")),
        stop_id=el.get("stopId"),
    )


def decode_predictions(root: ET.Element) -> List[NBPredictions]:
    result = []
    for predictions_el in root.findall("predictions"):
        predictions = [
            NBPrediction(
                epoch_time=_int(prediction_el.get("epochTime")),
                seconds=_int(prediction_el.get("seconds")),
                dir_tag=prediction_el.get("dirTag"),
                vehicle=prediction_el.get("vehicle"),
                block=prediction_el.get("block"),
                trip_tag=prediction_el.get("tripTag"),
                affected_by_layover=_bool(prediction_el.get("affectedByLayover")),
            )
            for prediction_el in predictions_el.iter("prediction")
        ]
        result.append(
            NBPredictions(
                route_tag=predictions_el.get("routeTag"),
                stop_tag=predictions_el.get("stopTag"),
                predictions=predictions,
            )
        )
    return result


def decode_vehicles(root: ET.Element) -> List[NBVehicle]:
    return [
        NBVehicle(
            id=el.get("id"),
            route_tag=el.get("routeTag"),
            dir_tag=el.get("dirTag"),
            lat=_float(el.get("lat")),
            lon=_float(el.get("lon")),
            heading=_int(el.get("heading")),
            secs_since_report=_int(el.get("secsSinceReport")),
            predictable=_bool(el.get("predictable"), True),
        )
        for el in root.findall("vehicle")
    ]


def decode_messages(root: ET.Element) -> List[NBMessage]:
    """Messages are grouped under <route> elements; a message may repeat across them."""
    messages = []
    for route_el in root.findall("route"):
        for message_el in route_el.findall("message"):
            routes = []
            for configured_el in message_el.findall("routeConfiguredForMessage"):
                routes.append(
                    NBRoute(
                        tag=configured_el.get("tag"),
                        title=configured_el.get("title"),
                        stops=[decode_stop(stop_el) for stop_el in configured_el.findall("stop")],
                    )
                )
            messages.append(
                NBMessage(
                    id=message_el.get("id"),
                    text=(message_el.findtext("text") or "").strip(),
                    priority=message_el.get("priority"),
                    start_boundary=_int(message_el.get("startBoundary")),
                    end_boundary=_int(message_el.get("endBoundary")),
                    routes=routes,
                )
            )
    return messages


def _int(value: Optional[str], default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(value)


def _float(value: Optional[str], default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    return float(value)


def _bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() == "true"
