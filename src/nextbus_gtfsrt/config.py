"""Runtime configuration for the NextBus to GTFS-realtime bridge."""

import os
from dataclasses import dataclass, field
from typing import Optional

from .exceptions import ConfigurationError

DEFAULT_BASE_URL = "http://webservices.nextbus.com"

# Fetch gate
DEFAULT_THROTTLE_WINDOW = 20  # seconds
DEFAULT_THROTTLE_SIZE = 2 * 1024 * 1024  # bytes per window
DEFAULT_REQUEST_TIMEOUT = 30  # seconds

# Polling
DEFAULT_MIN_TIME_BETWEEN_REQUESTS = 30  # seconds
DEFAULT_REFRESH_HOUR = 4  # local wall-clock hour of the daily refresh

# Matching
DEFAULT_STOP_MATCHING_DISTANCE = 75.0  # meters
DEFAULT_MISS_PENALTY = 15  # minutes
DEFAULT_OUT_OF_ORDER_PENALTY = 15  # minutes
DEFAULT_MAX_TRIP_SCORE = 2  # alignment score units (whole minutes plus penalties)
DEFAULT_ALL_MISSES_SCORE = 4 * 60  # minutes

# Live inference
DEFAULT_EARLY_PENALTY_FACTOR = 2
DEFAULT_VEHICLE_STATUS_MAX_AGE = 6 * 60 * 60  # seconds


@dataclass
class Config:
    """
    All tunables in one place; every empirical constant can be overridden.

    Alignment scores (miss_penalty, out_of_order_penalty, max_trip_score,
    all_misses_score) are in whole minutes: a trip scores its summed minute
    deltas plus penalties, and a best score above max_trip_score discards the
    match.
    """
    agency_id: Optional[str] = None
    base_url: str = field(default_factory=lambda: os.environ.get("NEXTBUS_URL", DEFAULT_BASE_URL))
    cache_dir: Optional[str] = None
    gtfs_path: Optional[str] = None
    gtfs_trip_matching: bool = False

    enable_trip_updates: bool = True
    enable_vehicle_positions: bool = False
    enable_alerts: bool = False

    min_time_between_requests: float = DEFAULT_MIN_TIME_BETWEEN_REQUESTS
    refresh_hour: int = DEFAULT_REFRESH_HOUR

    throttle_window: float = DEFAULT_THROTTLE_WINDOW
    throttle_size: int = DEFAULT_THROTTLE_SIZE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT

    stop_matching_distance: float = DEFAULT_STOP_MATCHING_DISTANCE
    miss_penalty: int = DEFAULT_MISS_PENALTY
    out_of_order_penalty: int = DEFAULT_OUT_OF_ORDER_PENALTY
    max_trip_score: int = DEFAULT_MAX_TRIP_SCORE
    all_misses_score: int = DEFAULT_ALL_MISSES_SCORE

    early_penalty_factor: int = DEFAULT_EARLY_PENALTY_FACTOR
    vehicle_status_max_age: float = DEFAULT_VEHICLE_STATUS_MAX_AGE

    def validate(self) -> None:
        """Raise ConfigurationError for settings we can't start without."""
        if not self.agency_id:
            raise ConfigurationError("agency id is required")
        if not 0 <= self.refresh_hour < 24:
            raise ConfigurationError(f"refresh hour out of range: {self.refresh_hour}")
        if self.throttle_window <= 0 or self.throttle_size <= 0:
            raise ConfigurationError("throttle window and size must be positive")
