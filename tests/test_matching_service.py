"""Tests for NextBusToGtfsService."""

import tempfile
import unittest
from unittest.mock import MagicMock, patch
import sys
from pathlib import Path

# Add src to path so we can import nextbus_gtfsrt
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from gtfs_fixtures import AGENCY, CALENDAR, ROUTES, STOP_TIMES, STOPS, TRIPS, make_sample_loader
from nextbus_gtfsrt.config import Config
from nextbus_gtfsrt.matching_service import MappingSnapshot, NextBusToGtfsService
from nextbus_gtfsrt.models import (
    FlatPrediction,
    NBDirection,
    NBRoute,
    NBStop,
    NBStopTime,
    NBTrip,
    RouteDirectionStopKey,
)
from nextbus_gtfsrt.trip_inference import TripInferencer

# 2024-01-01 12:00:00 UTC, and the start of that service day in ms
NOW = 1704110400
SERVICE_DATE_VALUE = 1704067200000


def make_routes():
    """NextBus route 1 laid over GTFS stops A, B and C in both directions."""
    stops = [
        NBStop("a", lat=47.6000, lon=-122.3000),
        NBStop("b", lat=47.6010, lon=-122.3000),
        NBStop("c", lat=47.6020, lon=-122.3000),
    ]
    return [
        NBRoute(
            tag="1",
            stops=stops,
            directions=[
                NBDirection(tag="out", stops=stops),
                NBDirection(tag="in", stops=list(reversed(stops))),
            ],
        )
    ]


def make_schedules(block_id="B1"):
    def schedule(direction, start):
        return NBRoute(
            tag="1",
            schedule_class="2024",
            service_class="mtwth",
            direction=direction,
            trips=[
                NBTrip(
                    block_id,
                    [NBStopTime(tag, (start + i * 300) * 1000) for i, tag in enumerate(["a", "b", "c"])],
                )
            ],
        )

    return {"1": [schedule("out", 8 * 3600), schedule("in", 9 * 3600)]}


def write_gtfs_directory(path: Path) -> None:
    tables = {
        "agency": AGENCY,
        "stops": STOPS,
        "routes": ROUTES,
        "trips": TRIPS,
        "stop_times": STOP_TIMES,
        "calendar": CALENDAR,
    }
    for name, text in tables.items():
        (path / f"{name}.txt").write_text(text.strip() + "\n", encoding="utf-8")


class TestNextBusToGtfsService(unittest.TestCase):
    """Test matching passes and prediction mapping."""

    def setUp(self):
        self.loader = make_sample_loader()
        self.routes = make_routes()

    def make_service(self, **overrides):
        config = Config(agency_id="test", gtfs_path="unused", **overrides)
        return NextBusToGtfsService(config, inferencer=TripInferencer(clock=lambda: NOW))

    def test_snapshot_holds_route_and_stop_ids(self):
        service = self.make_service()

        service.match_to_gtfs(self.routes, loader=self.loader)

        snapshot = service.snapshot
        self.assertEqual(dict(snapshot.route_ids), {"1": "R1"})
        self.assertEqual(snapshot.stop_ids[RouteDirectionStopKey("1", "out", "b")], "B")
        self.assertEqual(snapshot.stop_ids[RouteDirectionStopKey("1", "in", "c")], "C")
        self.assertEqual(dict(snapshot.stop_time_indices), {})
        self.assertEqual(service.get_route_id("1"), "R1")
        self.assertEqual(service.get_stop_id("1", "out", "a"), "A")
        self.assertIsNone(service.get_stop_id("1", "out", "zz"))

    def test_map_predictions_rewrites_known_tags(self):
        service = self.make_service()
        service.match_to_gtfs(self.routes, loader=self.loader)
        known = FlatPrediction("1", "b", 0, dir_tag="out")
        unknown_route = FlatPrediction("99", "b", 0, dir_tag="out")
        unknown_stop = FlatPrediction("1", "zz", 0, dir_tag="out")

        service.map_predictions([known, unknown_route, unknown_stop])

        self.assertEqual((known.route_tag, known.stop_tag), ("R1", "B"))
        self.assertEqual((unknown_route.route_tag, unknown_route.stop_tag), ("99", "b"))
        self.assertEqual((unknown_stop.route_tag, unknown_stop.stop_tag), ("R1", "zz"))

    def test_trip_inference_end_to_end(self):
        service = self.make_service(gtfs_trip_matching=True)
        service.match_to_gtfs(self.routes, loader=self.loader, schedules=make_schedules())
        self.assertEqual(len(service.snapshot.stop_time_indices), 5)

        predictions = [
            FlatPrediction("1", "a", SERVICE_DATE_VALUE + 28860 * 1000, dir_tag="out", vehicle="v1", block="B1"),
            FlatPrediction("1", "c", SERVICE_DATE_VALUE + 29460 * 1000, dir_tag="out", vehicle="v1", block="B1"),
            FlatPrediction("1", "a", SERVICE_DATE_VALUE + 32430 * 1000, dir_tag="in", vehicle="v1", block="B1"),
        ]
        service.map_predictions(predictions)

        self.assertEqual([p.stop_tag for p in predictions], ["A", "C", "A"])
        self.assertEqual([p.trip_tag for p in predictions], ["T1", "T1", "T2"])

    def test_agency_timezone_applied_to_inference(self):
        service = self.make_service()
        service.match_to_gtfs(self.routes, loader=self.loader)
        self.assertEqual(str(service.inferencer.timezone), "UTC")
        self.assertIs(service.timezone, service.snapshot.timezone)

    def test_timezone_changes_only_with_published_snapshot(self):
        service = self.make_service()
        service.match_to_gtfs(self.routes, loader=self.loader)
        snapshot = service.snapshot

        relocated = make_sample_loader()
        relocated.agency_timezone = "America/Los_Angeles"
        with patch.object(service.route_matcher, "get_route_matches", side_effect=RuntimeError("bad feed")):
            with self.assertRaises(RuntimeError):
                service.match_to_gtfs(self.routes, loader=relocated)

        self.assertIs(service.snapshot, snapshot)
        self.assertEqual(str(service.inferencer.timezone), "UTC")

        service.match_to_gtfs(self.routes, loader=relocated)
        self.assertEqual(str(service.snapshot.timezone), "America/Los_Angeles")
        self.assertEqual(str(service.inferencer.timezone), "America/Los_Angeles")

    def test_scheduled_refresh_downloads_fresh_schedules(self):
        client = MagicMock()
        client.download_route_schedule.side_effect = [
            make_schedules()["1"],
            make_schedules(block_id="B9")["1"],
        ]
        with tempfile.TemporaryDirectory() as tmp:
            write_gtfs_directory(Path(tmp))
            config = Config(agency_id="test", gtfs_path=tmp, gtfs_trip_matching=True)
            service = NextBusToGtfsService(config, client)

            service.handle_route_configurations(self.routes, True)
            self.assertEqual({key.block_id for key in service.snapshot.stop_time_indices}, {"B1"})

            service.handle_route_configurations(self.routes, False)

        self.assertEqual({key.block_id for key in service.snapshot.stop_time_indices}, {"B9"})
        self.assertEqual(
            [c[0] for c in client.download_route_schedule.call_args_list], [("1", True), ("1", False)]
        )

    def test_failed_pass_keeps_previous_snapshot(self):
        with tempfile.TemporaryDirectory() as tmp:
            write_gtfs_directory(Path(tmp))
            service = NextBusToGtfsService(Config(agency_id="test", gtfs_path=tmp))

            service.handle_route_configurations(self.routes)
            snapshot = service.snapshot
            self.assertEqual(dict(snapshot.route_ids), {"1": "R1"})

            with patch(
                "nextbus_gtfsrt.matching_service.GTFSLoader.load_from_path",
                side_effect=IOError("disk gone"),
            ):
                with self.assertLogs("nextbus_gtfsrt.matching_service", level="ERROR"):
                    service.handle_route_configurations(self.routes)

        self.assertIs(service.snapshot, snapshot)

    def test_disabled_without_gtfs_path(self):
        service = NextBusToGtfsService(Config(agency_id="test"))
        self.assertFalse(service.enabled)

        service.match_to_gtfs(self.routes)
        prediction = FlatPrediction("1", "a", 0, dir_tag="out")
        service.map_predictions([prediction])

        self.assertEqual(service.snapshot, MappingSnapshot())
        self.assertEqual(prediction.stop_tag, "a")


if __name__ == "__main__":
    unittest.main()
