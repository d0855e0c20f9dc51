#!/usr/bin/env python3
"""
Signal events surfaced by the reconciler instead of raised faults
"""

import logging
from dataclasses import dataclass

from .base import Event, EventType


@dataclass(eq=True)
class StaleSampleWarning(Event):
    """Latest load sample is older than the staleness threshold"""
    event_type = EventType.STALE_SAMPLE_WARNING
    level = logging.WARNING
    required = ("age_seconds", "threshold_seconds")


@dataclass(eq=True)
class InvalidSampleWarning(Event):
    """Load sample is missing or out of range"""
    event_type = EventType.INVALID_SAMPLE_WARNING
    level = logging.WARNING
    required = ("problem",)


@dataclass(eq=True)
class ExecutorFailed(Event):
    """Executor reported a failed scale operation"""
    event_type = EventType.EXECUTOR_FAILURE
    level = logging.ERROR
    required = ("error", "consecutive_failures")


@dataclass(eq=True)
class CircuitOpened(Event):
    """Scale-up suppressed after repeated executor failures"""
    event_type = EventType.CIRCUIT_OPEN
    level = logging.WARNING
    required = ("open_until",)


@dataclass(eq=True)
class CircuitClosed(Event):
    """Scale-up allowed again"""
    event_type = EventType.CIRCUIT_CLOSED
    required = ("cause",)


@dataclass(eq=True)
class PartialScaleApplied(Event):
    """Executor applied only part of an intent"""
    event_type = EventType.PARTIAL_SCALE
    level = logging.WARNING
    required = ("requested_size", "new_size")


@dataclass(eq=True)
class ScaleIntentIssued(Event):
    """Reconciler decided to scale"""
    event_type = EventType.SCALE_INTENT_ISSUED
    required = ("direction", "magnitude", "reason")


@dataclass(eq=True)
class ScaleOutcomeRecorded(Event):
    """Executor outcome applied to pool state"""
    event_type = EventType.SCALE_OUTCOME_RECORDED
    required = ("outcome", "current_size")


@dataclass(eq=True)
class ReconcilerStarted(Event):
    event_type = EventType.RECONCILER_STARTED
    required = ("current_size",)


@dataclass(eq=True)
class ReconcilerStopped(Event):
    event_type = EventType.RECONCILER_STOPPED
