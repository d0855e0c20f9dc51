#!/usr/bin/env python3
"""
Base event classes for reconciler signals
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Tuple


class EventType(str, Enum):
    """Event types emitted by the reconciler"""

    # Non-fatal warnings
    STALE_SAMPLE_WARNING = "StaleSampleWarning"
    INVALID_SAMPLE_WARNING = "InvalidSampleWarning"

    # Failure handling
    EXECUTOR_FAILURE = "ExecutorFailure"
    CIRCUIT_OPEN = "CircuitOpen"
    CIRCUIT_CLOSED = "CircuitClosed"
    PARTIAL_SCALE = "PartialScale"

    # Decisions and results
    SCALE_INTENT_ISSUED = "ScaleIntentIssued"
    SCALE_OUTCOME_RECORDED = "ScaleOutcomeRecorded"

    # Loop lifecycle
    RECONCILER_STARTED = "ReconcilerStarted"
    RECONCILER_STOPPED = "ReconcilerStopped"


@dataclass
class Event:
    """Base class for all reconciler events"""

    event_type: ClassVar[EventType]
    level: ClassVar[int] = logging.INFO
    required: ClassVar[Tuple[str, ...]] = ()

    pool: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    data: Dict[str, Any] = field(default_factory=dict)
    source: str = "reconciler"
    # Excluded from equality so identical decisions compare equal
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()), compare=False)

    def __post_init__(self):
        for key in self.required:
            if key not in self.data:
                raise ValueError(f"{key} is required")

    def describe(self) -> str:
        details = ", ".join(f"{k}={v}" for k, v in self.data.items())
        return f"{self.event_type.value}[{self.pool}] {details}".rstrip()

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary"""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "pool": self.pool,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class EventHandler:
    """Base class for event handlers"""

    def __init__(self, name: str):
        self.name = name

    async def handle(self, event: Event) -> bool:
        """
        Handle an event

        Args:
            event: The event to handle

        Returns:
            True if handled successfully, False otherwise
        """
        raise NotImplementedError("Subclasses must implement handle() method")
