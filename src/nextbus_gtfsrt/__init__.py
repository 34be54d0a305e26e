"""nextbus-gtfsrt - NextBus real-time data matched to GTFS and published as GTFS-realtime."""

__version__ = "0.1.0"

from .config import Config
from .coverage import RouteStopCoverageService
from .downloader import DownloaderService
from .exceptions import ConfigurationError, DownloadCancelled, NextBusApiError, NextBusError
from .gtfs_loader import GTFSLoader
from .matching_service import MappingSnapshot, NextBusToGtfsService
from .nextbus_client import NextBusClient
from .realtime_service import RealtimeService
from .sink import GtfsRealtimeSink, IncrementalUpdate

__all__ = [
    "Config",
    "ConfigurationError",
    "DownloadCancelled",
    "DownloaderService",
    "GTFSLoader",
    "GtfsRealtimeSink",
    "IncrementalUpdate",
    "MappingSnapshot",
    "NextBusApiError",
    "NextBusClient",
    "NextBusError",
    "NextBusToGtfsService",
    "RealtimeService",
    "RouteStopCoverageService",
]
