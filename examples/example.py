"""Example usage of the NextBus to GTFS-realtime matching pipeline."""

import logging
import sys
from pathlib import Path

# Add src to path so we can import nextbus_gtfsrt
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from nextbus_gtfsrt.config import Config
from nextbus_gtfsrt.coverage import compute_route_stop_coverage
from nextbus_gtfsrt.downloader import DownloaderService
from nextbus_gtfsrt.matching_service import NextBusToGtfsService
from nextbus_gtfsrt.nextbus_client import NextBusClient
from nextbus_gtfsrt.realtime_service import build_trip_updates, flatten_predictions, group_predictions_by_id

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def print_trip_updates(agency_id: str, gtfs_path: str, route_tag: str):
    """
    Match one agency to its GTFS feed and print trip updates for a single route.

    Args:
        agency_id: NextBus agency tag (e.g., "sf-muni")
        gtfs_path: GTFS directory or zip for the same agency
        route_tag: NextBus route to poll (e.g., "N")
    """
    print(f"\n{'='*70}")
    print(f"Agency {agency_id}, route {route_tag}")
    print(f"{'='*70}\n")

    config = Config(agency_id=agency_id, gtfs_path=gtfs_path, gtfs_trip_matching=True, cache_dir=".nextbus-cache")
    downloader = DownloaderService(config.throttle_window, config.throttle_size, config.request_timeout)
    client = NextBusClient(downloader, agency_id, config.base_url, config.cache_dir)

    try:
        routes = client.download_route_configurations()
        matching_service = NextBusToGtfsService(config, client)
        matching_service.match_to_gtfs(routes)

        coverage = [c for c in compute_route_stop_coverage(routes) if c.route_tag == route_tag]
        if not coverage:
            print(f"Unknown route: {route_tag}")
            sys.exit(1)

        predictions = flatten_predictions(client.download_predictions(coverage[0]))
        matching_service.map_predictions(predictions)
        update = build_trip_updates(group_predictions_by_id(predictions))

        print(f"GTFS route id: {matching_service.get_route_id(route_tag)}")
        print(f"Trip updates: {len(update.updated_entities)}\n")
        for entity in update.updated_entities:
            trip_update = entity.trip_update
            print(f"{entity.id}:")
            for stop_time_update in trip_update.stop_time_update:
                print(f"  stop {stop_time_update.stop_id} at {stop_time_update.departure.time}")

        print("\n" + "=" * 70 + "\n")

    except Exception as e:
        logger.error(f"Failed to fetch data: {e}", exc_info=True)
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        downloader.close()


if __name__ == "__main__":
    if len(sys.argv) != 4:
        print("Usage: example.py AGENCY_ID GTFS_PATH ROUTE_TAG")
        sys.exit(1)
    print_trip_updates(*sys.argv[1:])
