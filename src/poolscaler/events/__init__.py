#!/usr/bin/env python3
"""
Events module: signals the reconciler emits and the bus that delivers them
"""

from .base import Event, EventHandler, EventType
from .event_bus import EventBus
from .handlers import RedisStreamHandler, SignalLogHandler, SignalMetricsHandler
from .signals import (
    CircuitClosed,
    CircuitOpened,
    ExecutorFailed,
    InvalidSampleWarning,
    PartialScaleApplied,
    ReconcilerStarted,
    ReconcilerStopped,
    ScaleIntentIssued,
    ScaleOutcomeRecorded,
    StaleSampleWarning,
)

__all__ = [
    "Event",
    "EventType",
    "EventHandler",
    "EventBus",
    "RedisStreamHandler",
    "SignalLogHandler",
    "SignalMetricsHandler",
    "CircuitClosed",
    "CircuitOpened",
    "ExecutorFailed",
    "InvalidSampleWarning",
    "PartialScaleApplied",
    "ReconcilerStarted",
    "ReconcilerStopped",
    "ScaleIntentIssued",
    "ScaleOutcomeRecorded",
    "StaleSampleWarning",
]
