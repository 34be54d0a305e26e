"""In-memory GTFS-realtime feed built from incremental entity updates."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from google.transit import gtfs_realtime_pb2

logger = logging.getLogger(__name__)

GTFS_REALTIME_VERSION = "2.0"
DEFAULT_ENTITY_MAX_AGE = 10 * 60  # seconds


@dataclass
class IncrementalUpdate:
    """A batch of feed entities, each replacing any stored entity with the same id."""
    updated_entities: List[gtfs_realtime_pb2.FeedEntity] = field(default_factory=list)

    def add_updated_entity(self, entity: gtfs_realtime_pb2.FeedEntity) -> None:
        self.updated_entities.append(entity)


class GtfsRealtimeSink:
    """Holds the current entities of one feed and renders them as a full dataset."""

    def __init__(
        self,
        entity_max_age: Optional[float] = DEFAULT_ENTITY_MAX_AGE,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the sink.

        Args:
            entity_max_age: Seconds an entity survives without being updated;
                None keeps entities until replaced.
            clock: Time source, in epoch seconds.
        """
        self._entity_max_age = entity_max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._entities: Dict[str, Tuple[gtfs_realtime_pb2.FeedEntity, float]] = {}

    def handle_incremental_update(self, update: IncrementalUpdate) -> None:
        now = self._clock()
        with self._lock:
            for entity in update.updated_entities:
                self._entities[entity.id] = (entity, now)
        logger.debug(f"Received {len(update.updated_entities)} updated entities")

    def get_feed_message(self) -> gtfs_realtime_pb2.FeedMessage:
        """The current entities as a FULL_DATASET FeedMessage."""
        now = self._clock()
        feed = gtfs_realtime_pb2.FeedMessage()
        feed.header.gtfs_realtime_version = GTFS_REALTIME_VERSION
        feed.header.incrementality = gtfs_realtime_pb2.FeedHeader.FULL_DATASET
        feed.header.timestamp = int(now)

        with self._lock:
            self._expire_entities(now)
            for entity_id in sorted(self._entities):
                feed.entity.add().CopyFrom(self._entities[entity_id][0])
        return feed

    @property
    def entity_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._entities)

    def _expire_entities(self, now: float) -> None:
        if self._entity_max_age is None:
            return
        expired = [
            entity_id
            for entity_id, (_, updated_at) in self._entities.items()
            if now - updated_at > self._entity_max_age
        ]
        for entity_id in expired:
            del self._entities[entity_id]
        if expired:
            logger.debug(f"Expired {len(expired)} entities")
