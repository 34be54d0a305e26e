"""Tests for GtfsRealtimeSink."""

import unittest
import sys
from pathlib import Path

from google.transit import gtfs_realtime_pb2

# Add src to path so we can import nextbus_gtfsrt
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from nextbus_gtfsrt.sink import GtfsRealtimeSink, IncrementalUpdate


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def vehicle_entity(entity_id, lat=47.6):
    entity = gtfs_realtime_pb2.FeedEntity()
    entity.id = entity_id
    entity.vehicle.vehicle.id = entity_id
    entity.vehicle.position.latitude = lat
    entity.vehicle.position.longitude = -122.3
    return entity


class TestGtfsRealtimeSink(unittest.TestCase):
    """Test entity storage and feed rendering."""

    def setUp(self):
        self.clock = FakeClock(1000.0)
        self.sink = GtfsRealtimeSink(entity_max_age=600, clock=self.clock)

    def test_feed_header(self):
        feed = self.sink.get_feed_message()

        self.assertEqual(feed.header.gtfs_realtime_version, "2.0")
        self.assertEqual(feed.header.incrementality, gtfs_realtime_pb2.FeedHeader.FULL_DATASET)
        self.assertEqual(feed.header.timestamp, 1000)
        self.assertEqual(len(feed.entity), 0)

    def test_updates_replace_entities_by_id(self):
        first = IncrementalUpdate()
        first.add_updated_entity(vehicle_entity("b"))
        first.add_updated_entity(vehicle_entity("a", lat=47.0))
        self.sink.handle_incremental_update(first)

        second = IncrementalUpdate()
        second.add_updated_entity(vehicle_entity("a", lat=48.0))
        self.sink.handle_incremental_update(second)

        feed = self.sink.get_feed_message()
        self.assertEqual([e.id for e in feed.entity], ["a", "b"])
        self.assertAlmostEqual(feed.entity[0].vehicle.position.latitude, 48.0, places=4)
        self.assertEqual(self.sink.entity_ids, ["a", "b"])

    def test_stale_entities_expire(self):
        update = IncrementalUpdate()
        update.add_updated_entity(vehicle_entity("old"))
        self.sink.handle_incremental_update(update)

        self.clock.now += 300
        update = IncrementalUpdate()
        update.add_updated_entity(vehicle_entity("new"))
        self.sink.handle_incremental_update(update)

        self.clock.now += 301
        feed = self.sink.get_feed_message()

        self.assertEqual([e.id for e in feed.entity], ["new"])

    def test_entities_kept_without_max_age(self):
        sink = GtfsRealtimeSink(entity_max_age=None, clock=self.clock)
        update = IncrementalUpdate()
        update.add_updated_entity(vehicle_entity("a"))
        sink.handle_incremental_update(update)

        self.clock.now += 24 * 60 * 60

        self.assertEqual(len(sink.get_feed_message().entity), 1)

    def test_feed_serializes(self):
        update = IncrementalUpdate()
        update.add_updated_entity(vehicle_entity("a"))
        self.sink.handle_incremental_update(update)

        parsed = gtfs_realtime_pb2.FeedMessage()
        parsed.ParseFromString(self.sink.get_feed_message().SerializeToString())

        self.assertEqual(parsed.entity[0].vehicle.vehicle.id, "a")


if __name__ == "__main__":
    unittest.main()
