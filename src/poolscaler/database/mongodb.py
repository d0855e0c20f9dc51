#!/usr/bin/env python3
"""
MongoDB history of scaling intents and their outcomes
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.errors import ConnectionFailure, PyMongoError

from ..models import Failed, Outcome, PoolState, ScaleIntent

logger = logging.getLogger(__name__)


@dataclass
class ScalingRecord:
    """One executed intent and what came of it"""
    pool: str
    direction: str
    magnitude: int
    reason: str
    old_size: int
    new_size: int
    outcome: str
    timestamp: datetime
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    consecutive_failures: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(cls, pool: str, intent: ScaleIntent, outcome: Outcome, before: PoolState,
              after: PoolState, timestamp: datetime, duration_ms: Optional[int] = None) -> "ScalingRecord":
        return cls(
            pool=pool,
            direction=intent.direction.value,
            magnitude=intent.magnitude,
            reason=intent.reason.value,
            old_size=before.current_size,
            new_size=after.current_size,
            outcome=outcome.kind,
            timestamp=timestamp,
            error=outcome.error if isinstance(outcome, Failed) else None,
            duration_ms=duration_ms,
            consecutive_failures=after.consecutive_failures,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to MongoDB document"""
        return {
            "pool": self.pool,
            "direction": self.direction,
            "magnitude": self.magnitude,
            "reason": self.reason,
            "old_size": self.old_size,
            "new_size": self.new_size,
            "outcome": self.outcome,
            "timestamp": self.timestamp,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "consecutive_failures": self.consecutive_failures,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScalingRecord":
        """Create from MongoDB document"""
        return cls(
            pool=data.get("pool"),
            direction=data.get("direction"),
            magnitude=data.get("magnitude", 0),
            reason=data.get("reason"),
            old_size=data.get("old_size", 0),
            new_size=data.get("new_size", 0),
            outcome=data.get("outcome"),
            timestamp=data.get("timestamp"),
            error=data.get("error"),
            duration_ms=data.get("duration_ms"),
            consecutive_failures=data.get("consecutive_failures", 0),
            metadata=data.get("metadata") or {},
        )


class MongoScalingHistory:
    """Append-only scaling history in the `scaling_events` collection"""

    def __init__(self, connection_string: str = "mongodb://localhost:27017",
                 database_name: str = "poolscaler", client: Optional[MongoClient] = None):
        self.connection_string = connection_string
        self.database_name = database_name
        self.client = client
        self.db = None
        self.connect()

    def connect(self) -> None:
        """Establish MongoDB connection"""
        try:
            if self.client is None:
                self.client = MongoClient(self.connection_string, serverSelectionTimeoutMS=5000)
            self.client.admin.command('ping')
            self.db = self.client[self.database_name]
            logger.info(f"Connected to MongoDB: {self.database_name}")
            self._create_indexes()
        except ConnectionFailure as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    @property
    def collection(self) -> Collection:
        return self.db.scaling_events

    def _create_indexes(self) -> None:
        self.collection.create_index([("pool", ASCENDING), ("timestamp", DESCENDING)])
        self.collection.create_index([("outcome", ASCENDING)])
        logger.info("MongoDB indexes created")

    def record(self, record: ScalingRecord) -> bool:
        """Insert a record; False if the write failed"""
        try:
            self.collection.insert_one(record.to_dict())
            logger.debug(f"Recorded {record.direction} x{record.magnitude} for pool '{record.pool}'")
            return True
        except PyMongoError as e:
            logger.error(f"Failed to record scaling history for pool '{record.pool}': {e}")
            return False

    def recent(self, pool: str, limit: int = 50) -> List[ScalingRecord]:
        """Newest records first"""
        try:
            docs = self.collection.find({"pool": pool}).sort("timestamp", DESCENDING).limit(limit)
            return [ScalingRecord.from_dict(doc) for doc in docs]
        except PyMongoError as e:
            logger.error(f"Failed to read scaling history for pool '{pool}': {e}")
            return []

    def close(self) -> None:
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")
