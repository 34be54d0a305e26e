"""Data models for NextBus to GTFS-realtime conversion."""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, NamedTuple, Optional, Set


# NextBus API records


@dataclass
class NBStop:
    """A NextBus stop, or a reference to one inside a direction."""
    tag: str
    title: Optional[str] = None
    lat: float = 0.0
    lon: float = 0.0
    stop_id: Optional[str] = None  # Public stop code, not always present


@dataclass
class NBDirection:
    """An ordered stop pattern for one direction of a route."""
    tag: str
    title: Optional[str] = None
    name: Optional[str] = None
    use_for_ui: bool = False
    stops: List[NBStop] = field(default_factory=list)


@dataclass
class NBStopTime:
    """A scheduled stop time; epoch_time is ms since midnight, -1 when unset."""
    tag: str
    epoch_time: int


@dataclass
class NBTrip:
    """A column of a NextBus schedule table."""
    block_id: str
    stop_times: List[NBStopTime] = field(default_factory=list)


@dataclass
class NBRoute:
    """
    A NextBus route.

    The same record carries route configuration (stops and directions) and,
    for the schedule command, one schedule table (schedule_class,
    service_class, direction and trips).
    """
    tag: str
    title: Optional[str] = None
    stops: List[NBStop] = field(default_factory=list)
    directions: List[NBDirection] = field(default_factory=list)
    schedule_class: Optional[str] = None
    service_class: Optional[str] = None
    direction: Optional[str] = None
    trips: List[NBTrip] = field(default_factory=list)


@dataclass
class NBPrediction:
    """A single arrival/departure prediction."""
    epoch_time: int  # Epoch milliseconds
    seconds: int = 0
    dir_tag: Optional[str] = None
    vehicle: Optional[str] = None
    block: Optional[str] = None
    trip_tag: Optional[str] = None
    affected_by_layover: bool = False


@dataclass
class NBPredictions:
    """Predictions for one route/stop pair across all directions."""
    route_tag: str
    stop_tag: str
    predictions: List[NBPrediction] = field(default_factory=list)


@dataclass
class NBVehicle:
    """A vehicle location report."""
    id: str
    route_tag: Optional[str]
    dir_tag: Optional[str]
    lat: float
    lon: float
    heading: int = 0
    secs_since_report: int = 0
    predictable: bool = True


@dataclass
class NBMessage:
    """A service message, optionally scoped to routes (and their stops)."""
    id: str
    text: str
    priority: Optional[str] = None
    start_boundary: int = 0  # Epoch milliseconds, 0 when unbounded
    end_boundary: int = 0
    routes: List[NBRoute] = field(default_factory=list)


# Working records


@dataclass
class FlatPrediction:
    """A prediction joined with its route and stop; tags are rewritten in place."""
    route_tag: str
    stop_tag: str
    epoch_time: int  # Epoch milliseconds
    dir_tag: Optional[str] = None
    vehicle: Optional[str] = None
    block: Optional[str] = None
    trip_tag: Optional[str] = None


@dataclass
class FlatStopTime:
    """A schedule stop time flattened out of its schedule table."""
    route_tag: str
    schedule_class: str
    service_class: str
    direction_tag: str
    block_tag: str
    stop_tag: str
    epoch_time: int  # Milliseconds since midnight
    trip_index: int = 0
    gtfs_stop_id: Optional[str] = None

    def sort_key(self):
        # Arrival columns ("_a") sort ahead of departure columns ("_d") at the same time
        if self.stop_tag.endswith("_a"):
            rank = 0
        elif self.stop_tag.endswith("_d"):
            rank = 2
        else:
            rank = 1
        return (self.epoch_time, rank)

    @property
    def time_as_string(self) -> str:
        seconds = self.epoch_time // 1000
        return f"{seconds // 3600:02d}:{seconds // 60 % 60:02d}:{seconds % 60:02d}"


@dataclass
class RouteStopCoverage:
    """The set of stops polled for live predictions on a route."""
    route_tag: str
    stop_tags: Set[str]


class RouteDirectionStopKey(NamedTuple):
    route_tag: str
    direction_tag: Optional[str]
    stop_tag: str


class ServiceDateBlockKey(NamedTuple):
    route_id: str
    block_id: str
    service_date: date


class TripUpdateId(NamedTuple):
    vehicle_id: str
    trip_id: Optional[str]

    @property
    def feed_entity_id(self) -> str:
        entity_id = f"v={self.vehicle_id}"
        if self.trip_id is not None:
            entity_id += f",t={self.trip_id}"
        return entity_id


# GTFS records


@dataclass(frozen=True)
class GtfsStop:
    """A canonical stop."""
    id: str
    name: str
    lat: float
    lon: float


@dataclass(frozen=True)
class GtfsRoute:
    """A canonical route."""
    id: str
    short_name: Optional[str] = None
    long_name: Optional[str] = None


@dataclass(frozen=True)
class GtfsTrip:
    """A canonical trip."""
    id: str
    route_id: str
    service_id: str
    block_id: Optional[str] = None
    direction_id: Optional[str] = None


@dataclass(frozen=True)
class GtfsStopTime:
    """A canonical stop time; times are seconds since service-date start."""
    trip_id: str
    stop_id: str
    stop_sequence: int
    arrival_time: Optional[int]
    departure_time: Optional[int]

    @property
    def is_time_set(self) -> bool:
        return self.arrival_time is not None and self.departure_time is not None

    @property
    def time(self) -> int:
        """Mid point between arrival and departure."""
        return (self.arrival_time + self.departure_time) // 2


@dataclass(frozen=True)
class ServiceCalendar:
    """A calendar.txt row."""
    service_id: str
    days: str  # Monday-first 7-character day mask, e.g. "1111100"
    start_date: date
    end_date: date


# Schedule indices


@dataclass(frozen=True)
class StopTimeIndex:
    """Sorted mid times of one stop within a block, with positions into the block."""
    times: List[int]
    positions: List[int]


@dataclass(frozen=True)
class StopTimeIndices:
    """All matched stop times of a block plus a per-stop time index."""
    stop_times: List[GtfsStopTime]
    indices_by_stop: Dict[str, StopTimeIndex]

    @classmethod
    def create(cls, stop_times: List[GtfsStopTime]) -> "StopTimeIndices":
        """Build the per-stop index for stop times already sorted by time."""
        positions_by_stop: Dict[str, List[int]] = {}
        for position, stop_time in enumerate(stop_times):
            positions_by_stop.setdefault(stop_time.stop_id, []).append(position)

        indices_by_stop = {}
        for stop_id, positions in positions_by_stop.items():
            positions.sort(key=lambda p: (stop_times[p].time, p))
            times = [stop_times[p].time for p in positions]
            indices_by_stop[stop_id] = StopTimeIndex(times=times, positions=positions)
        return cls(stop_times=stop_times, indices_by_stop=indices_by_stop)

    def get_index_for_stop(self, stop_id: str) -> Optional[StopTimeIndex]:
        return self.indices_by_stop.get(stop_id)


@dataclass
class VehicleStatus:
    """Per-vehicle state carried across live polls."""
    service_date: date
    service_date_value: int  # Epoch milliseconds of the service date start
    last_schedule_deviation: int = 0  # Seconds, positive when late
    last_update_time: float = 0.0

    def touch(self, now: float) -> None:
        self.last_update_time = now
