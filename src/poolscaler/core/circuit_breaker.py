#!/usr/bin/env python3
"""
Circuit breaker for scale-up attempts

Unlike a classic breaker wrapped around a call, this one is expressed over
PoolState so the reconciler stays a pure function:

- CLOSED: scale-up allowed
- OPEN: too many consecutive executor failures, scale-up suppressed until
  the backoff window ends (scale-down is still allowed)
- HALF_OPEN: window elapsed but the failure count is still at threshold; one
  scale-up may be tried and another failure reopens with a longer window
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict

from ..models import PoolState

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def backoff_window(
    base_seconds: float,
    failures: int,
    threshold: int,
    multiplier: float = 2.0,
    cap_factor: float = 10.0,
) -> float:
    """
    Exponential backoff for the scale-up suppression window

    Args:
        base_seconds: Window used the first time the circuit opens
        failures: Consecutive failures including the one just recorded
        threshold: Failures needed to open the circuit
        multiplier: Growth factor for each failure beyond the threshold
        cap_factor: Window never exceeds base_seconds * cap_factor

    Returns:
        Window length in seconds (0 below the threshold)
    """
    if failures < threshold or base_seconds <= 0:
        return 0.0
    # Bounded exponent: long outages must not overflow the float
    exponent = min(failures - threshold, 64)
    return min(base_seconds * multiplier ** exponent, base_seconds * cap_factor)


def open_until(now: datetime, window_seconds: float) -> datetime:
    return now + timedelta(seconds=window_seconds)


def circuit_state(state: PoolState, now: datetime, threshold: int) -> CircuitState:
    """Derive the breaker state of a pool at a given instant"""
    if state.circuit_open_until is not None and now < state.circuit_open_until:
        return CircuitState.OPEN
    if state.consecutive_failures >= threshold:
        return CircuitState.HALF_OPEN
    return CircuitState.CLOSED


def describe(state: PoolState, now: datetime, threshold: int) -> Dict[str, Any]:
    """Get current circuit breaker state for status endpoints"""
    current = circuit_state(state, now, threshold)
    remaining = 0.0
    if current is CircuitState.OPEN:
        remaining = (state.circuit_open_until - now).total_seconds()
    return {
        "state": current.value,
        "consecutive_failures": state.consecutive_failures,
        "failure_threshold": threshold,
        "open_until": state.circuit_open_until.isoformat() if state.circuit_open_until else None,
        "remaining_seconds": round(remaining, 3),
    }
