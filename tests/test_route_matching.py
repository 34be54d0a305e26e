"""Tests for RouteMatcher."""

import unittest
import sys
from pathlib import Path

# Add src to path so we can import nextbus_gtfsrt
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from gtfs_fixtures import make_loader, make_sample_loader
from nextbus_gtfsrt.models import NBRoute, NBStop
from nextbus_gtfsrt.route_matching import RouteMatcher, get_stop_ids_by_route


class TestRouteMatcher(unittest.TestCase):
    """Test stop-overlap route matching."""

    def setUp(self):
        self.loader = make_sample_loader()
        self.stops = self.loader.stops
        self.matcher = RouteMatcher()

    def test_stop_ids_by_route(self):
        stops_by_route = get_stop_ids_by_route(self.loader)
        self.assertEqual(stops_by_route["R1"], {"A", "B", "C"})
        self.assertEqual(stops_by_route["R2"], {"X"})

    def test_best_overlap_wins(self):
        route = NBRoute(tag="1", stops=[NBStop("a"), NBStop("b"), NBStop("c")])
        potential = {"a": [self.stops["A"]], "b": [self.stops["B"]], "c": [self.stops["X"]]}

        matches = self.matcher.get_route_matches([route], self.loader, potential)

        self.assertEqual(matches["1"].gtfs_route.id, "R1")
        self.assertAlmostEqual(matches["1"].ratio, 2 / 3)
        self.assertIs(matches["1"].nb_route, route)

    def test_zero_overlap_loses_to_any_positive_ratio(self):
        route = NBRoute(tag="2", stops=[NBStop("x"), NBStop("y"), NBStop("z"), NBStop("w")])
        potential = {"x": [self.stops["X"]]}

        matches = self.matcher.get_route_matches([route], self.loader, potential)

        self.assertEqual(matches["2"].gtfs_route.id, "R2")
        self.assertAlmostEqual(matches["2"].ratio, 0.25)

    def test_ties_go_to_smallest_route_id(self):
        loader = make_loader(
            routes="""
route_id,route_short_name
Z9,9
A1,1
""",
            trips="""
route_id,service_id,trip_id
Z9,S,TZ
A1,S,TA
""",
            stop_times="""
trip_id,arrival_time,departure_time,stop_id,stop_sequence
TZ,08:00:00,08:00:00,S1,1
TA,08:00:00,08:00:00,S1,1
""",
            stops="""
stop_id,stop_name,stop_lat,stop_lon
S1,Shared,47.0,-122.0
""",
        )
        route = NBRoute(tag="n", stops=[NBStop("s")])

        matches = self.matcher.get_route_matches([route], loader, {"s": [loader.stops["S1"]]})

        self.assertEqual(matches["n"].gtfs_route.id, "A1")

    def test_unmatched_routes_are_left_out(self):
        no_stops = NBRoute(tag="empty")
        no_hits = NBRoute(tag="nohits", stops=[NBStop("q")])

        matches = self.matcher.get_route_matches([no_stops, no_hits], self.loader, {"q": []})

        self.assertEqual(matches, {})


if __name__ == "__main__":
    unittest.main()
