"""Command line entry point: poll one NextBus agency and keep GTFS-realtime feeds current."""

import argparse
import logging
import sys
import threading
from typing import List, Optional

from .config import Config
from .coverage import RouteStopCoverageService
from .downloader import DownloaderService
from .exceptions import ConfigurationError
from .matching_service import NextBusToGtfsService
from .nextbus_client import NextBusClient
from .realtime_service import RealtimeService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nextbus-gtfsrt",
        description="Convert a NextBus agency's real-time data into GTFS-realtime feeds.",
    )
    parser.add_argument("--agencyId", dest="agency_id", help="NextBus agency tag (required)")
    parser.add_argument("--cacheDir", dest="cache_dir", help="Directory for cached route and schedule data")
    parser.add_argument("--gtfsPath", dest="gtfs_path", help="GTFS directory or zip to match against")
    parser.add_argument(
        "--gtfsTripMatching",
        dest="gtfs_trip_matching",
        action="store_true",
        help="Infer GTFS trip ids for block-level predictions (needs --gtfsPath)",
    )
    parser.add_argument("--tripUpdates", dest="trip_updates", action="store_true", help="Produce trip updates")
    parser.add_argument(
        "--vehiclePositions", dest="vehicle_positions", action="store_true", help="Produce vehicle positions"
    )
    parser.add_argument("--alerts", dest="alerts", action="store_true", help="Produce alerts")
    parser.add_argument(
        "--refreshHour", dest="refresh_hour", type=int, default=Config.refresh_hour,
        help="Local hour of the daily route configuration refresh",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    config = Config(
        agency_id=args.agency_id,
        cache_dir=args.cache_dir,
        gtfs_path=args.gtfs_path,
        gtfs_trip_matching=args.gtfs_trip_matching,
        refresh_hour=args.refresh_hour,
    )
    # Trip updates are the default feed when none is requested explicitly
    if args.trip_updates or args.vehicle_positions or args.alerts:
        config.enable_trip_updates = args.trip_updates
        config.enable_vehicle_positions = args.vehicle_positions
        config.enable_alerts = args.alerts
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = config_from_args(args)
    try:
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    downloader = DownloaderService(config.throttle_window, config.throttle_size, config.request_timeout)
    client = NextBusClient(downloader, config.agency_id, config.base_url, config.cache_dir)
    matching_service = NextBusToGtfsService(config, client)
    coverage_service = RouteStopCoverageService(
        client, config.refresh_hour, get_timezone=lambda: matching_service.timezone
    )
    coverage_service.add_refresh_listener(matching_service.handle_route_configurations)
    realtime_service = RealtimeService(
        config, client, coverage_service, matching_service, downloader=downloader
    )

    stopped = threading.Event()
    try:
        coverage_service.start()
        realtime_service.start()
        logger.info(f"Polling agency {config.agency_id}; press Ctrl+C to stop")
        while not stopped.wait(1):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        coverage_service.stop()
        realtime_service.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
