#!/usr/bin/env python3
"""
Capacity reconciler: decides whether a worker pool should grow or shrink

Both entry points are pure functions of their arguments. PoolState goes in
and a new PoolState comes out together with the intent and any signals, so
pools never share mutable data and tests can drive time through `now`.
"""

import logging
import math
from datetime import datetime
from typing import List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import InvalidSpec
from ..events.base import Event
from ..events.signals import (
    CircuitClosed,
    CircuitOpened,
    ExecutorFailed,
    InvalidSampleWarning,
    PartialScaleApplied,
    StaleSampleWarning,
)
from ..models import (
    Failed,
    LoadSample,
    Outcome,
    PartialSucceeded,
    PoolSpec,
    PoolState,
    ScaleDirection,
    ScaleIntent,
    ScaleReason,
)
from .circuit_breaker import backoff_window, open_until
from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

# Absorbs float noise so utilization == target lands exactly on current size
_TARGET_TOLERANCE = 1e-9


class ReconcilerConfig(BaseModel):
    """Tuning shared by every pool a process reconciles"""
    model_config = ConfigDict(frozen=True)

    tick_interval: float = Field(30.0, gt=0, description="Seconds between evaluations")
    staleness_threshold: Optional[float] = Field(
        None, gt=0, description="Max sample age in seconds (default: 2x tick interval)"
    )
    hysteresis_margin: float = Field(0.1, ge=0, lt=1)
    failure_threshold: int = Field(3, ge=1)
    backoff_multiplier: float = Field(2.0, ge=1)
    backoff_cap_factor: float = Field(10.0, ge=1)
    assumed_node_capacity: int = Field(10, gt=0, description="Work units one node absorbs")
    executor_timeout: float = Field(600.0, gt=0)

    @property
    def staleness_seconds(self) -> float:
        if self.staleness_threshold is not None:
            return self.staleness_threshold
        return 2 * self.tick_interval

    @classmethod
    def from_config(cls, data: dict) -> "ReconcilerConfig":
        try:
            return cls(**data)
        except ValidationError as e:
            raise InvalidSpec(f"invalid reconciler configuration: {e}") from e


DEFAULT_CONFIG = ReconcilerConfig()


class Evaluation(NamedTuple):
    """Result of one evaluation tick"""
    intent: ScaleIntent
    state: PoolState
    signals: List[Event]


class Transition(NamedTuple):
    """Result of applying an executor outcome"""
    state: PoolState
    signals: List[Event]


def compute_target(spec: PoolSpec, current_size: int, sample: LoadSample,
                   config: ReconcilerConfig = DEFAULT_CONFIG) -> int:
    """Unclamped pool size that would bring utilization back to target"""
    raw = current_size * sample.utilization / spec.target_utilization
    target = math.ceil(raw - _TARGET_TOLERANCE)
    if sample.pending_work_units > 0:
        target += math.ceil(sample.pending_work_units / config.assumed_node_capacity)
    return max(target, 0)


def clamp(spec: PoolSpec, target: int) -> int:
    return max(spec.min_size, min(spec.max_size, target))


def sample_problem(sample: Optional[LoadSample]) -> Optional[str]:
    """Return why a sample cannot be used, or None if it is usable"""
    if sample is None:
        return "no sample available"
    if sample.timestamp.tzinfo is None:
        return "sample timestamp has no timezone"
    if math.isnan(sample.utilization) or math.isinf(sample.utilization):
        return f"utilization is not a finite number ({sample.utilization})"
    if not 0.0 <= sample.utilization <= 1.0:
        return f"utilization {sample.utilization} outside [0, 1]"
    if sample.pending_work_units < 0:
        return f"pending work units {sample.pending_work_units} is negative"
    return None


def observe_size(state: PoolState, observed_size: Optional[int]) -> PoolState:
    """
    Fold an externally observed ready-node count into the state.

    Ignored while an operation is in flight; the outcome will report the new
    size instead.
    """
    if observed_size is None or observed_size < 0 or not state.idle:
        return state
    if observed_size == state.current_size:
        return state
    return state.model_copy(update={"current_size": observed_size})


def _cooldown_elapsed(last: Optional[datetime], now: datetime, cooldown: float) -> bool:
    if last is None:
        return True
    return (now - last).total_seconds() >= cooldown


def _track_low_utilization(spec: PoolSpec, state: PoolState, sample: LoadSample,
                           config: ReconcilerConfig) -> PoolState:
    threshold = spec.target_utilization * (1 - config.hysteresis_margin)
    if sample.utilization < threshold:
        if state.low_utilization_since is None:
            return state.model_copy(update={"low_utilization_since": sample.timestamp})
        return state
    if state.low_utilization_since is not None:
        return state.model_copy(update={"low_utilization_since": None})
    return state


def _forget_low_utilization(state: PoolState) -> PoolState:
    # A gap in observations breaks the below-target window
    if state.low_utilization_since is None:
        return state
    return state.model_copy(update={"low_utilization_since": None})


def _issue(state: PoolState, direction: ScaleDirection, magnitude: int,
           reason: ScaleReason, target: int, signals: List[Event]) -> Evaluation:
    intent = ScaleIntent(direction=direction, magnitude=magnitude, reason=reason, target_size=target)
    pending = state.model_copy(update={"pending_delta": intent.signed_delta})
    return Evaluation(intent, pending, signals)


def evaluate(spec: PoolSpec, state: PoolState, sample: Optional[LoadSample], now: datetime,
             config: ReconcilerConfig = DEFAULT_CONFIG) -> Evaluation:
    """
    Decide whether the pool should scale on this tick

    Args:
        spec: Pool bounds and tuning
        state: Current reconciler state for the pool
        sample: Latest load sample (None if the metrics source had nothing)
        now: Evaluation instant
        config: Reconciler tuning

    Returns:
        Evaluation with the intent, the updated state and emitted signals.
        Actionable intents mark the returned state with pending_delta.
    """
    # At most one scaling operation in flight per pool
    if not state.idle:
        return Evaluation(ScaleIntent.none(ScaleReason.OPERATION_PENDING), state, [])

    problem = sample_problem(sample)
    if problem is not None:
        warning = InvalidSampleWarning(pool=spec.name, timestamp=now, data={"problem": problem})
        return Evaluation(ScaleIntent.none(ScaleReason.INVALID_SAMPLE), _forget_low_utilization(state), [warning])

    age = (now - sample.timestamp).total_seconds()
    if age > config.staleness_seconds:
        warning = StaleSampleWarning(
            pool=spec.name,
            timestamp=now,
            data={"age_seconds": round(age, 3), "threshold_seconds": config.staleness_seconds},
        )
        return Evaluation(ScaleIntent.none(ScaleReason.STALE_SAMPLE), _forget_low_utilization(state), [warning])

    signals: List[Event] = []
    if state.circuit_open_until is not None and now >= state.circuit_open_until:
        state = state.model_copy(update={"circuit_open_until": None})
        signals.append(CircuitClosed(pool=spec.name, timestamp=now, data={"cause": "backoff_elapsed"}))

    state = _track_low_utilization(spec, state, sample, config)

    current = state.current_size
    raw_target = compute_target(spec, current, sample, config)
    target = clamp(spec, raw_target)
    clamped = target != raw_target

    # Scale-up is checked first: availability wins over cost on noisy input
    if target > current:
        if current < spec.min_size:
            reason = ScaleReason.FAILURE_RECOVERY
        elif clamped:
            reason = ScaleReason.BOUNDS_CLAMP
        else:
            reason = ScaleReason.HIGH_UTILIZATION

        if state.circuit_open_until is not None:
            signals.append(CircuitOpened(
                pool=spec.name,
                timestamp=now,
                data={
                    "open_until": state.circuit_open_until.isoformat(),
                    "suppressed_magnitude": target - current,
                },
            ))
            return Evaluation(ScaleIntent.none(ScaleReason.CIRCUIT_OPEN), state, signals)

        # Restoring the floor is not held back by the scale-up cooldown
        if reason is not ScaleReason.FAILURE_RECOVERY and \
                not _cooldown_elapsed(state.last_scale_up_at, now, spec.scale_up_cooldown):
            return Evaluation(ScaleIntent.none(ScaleReason.COOLDOWN_ACTIVE), state, signals)

        return _issue(state, ScaleDirection.UP, target - current, reason, target, signals)

    if target < current:
        above_max = current > spec.max_size
        reason = ScaleReason.BOUNDS_CLAMP if clamped else ScaleReason.LOW_UTILIZATION

        if not _cooldown_elapsed(state.last_scale_down_at, now, spec.scale_down_cooldown):
            return Evaluation(ScaleIntent.none(ScaleReason.COOLDOWN_ACTIVE), state, signals)

        if not above_max:
            since = state.low_utilization_since
            if since is None or (now - since).total_seconds() < spec.scale_down_cooldown:
                return Evaluation(ScaleIntent.none(ScaleReason.HYSTERESIS_HOLD), state, signals)

        return _issue(state, ScaleDirection.DOWN, current - target, reason, target, signals)

    reason = ScaleReason.AT_BOUNDS if clamped else ScaleReason.EQUILIBRIUM
    return Evaluation(ScaleIntent.none(reason), state, signals)


def record_scale_result(spec: PoolSpec, state: PoolState, intent: ScaleIntent, outcome: Outcome,
                        now: datetime, config: ReconcilerConfig = DEFAULT_CONFIG) -> Transition:
    """
    Apply an executor outcome to the pool state

    Args:
        spec: Pool bounds and tuning
        state: State returned by the evaluation that produced the intent
        intent: Intent the executor attempted
        outcome: Succeeded, PartialSucceeded or Failed
        now: Instant the outcome was observed
        config: Reconciler tuning

    Returns:
        Transition with the updated state and emitted signals
    """
    update = {"pending_delta": 0}
    if intent.direction is ScaleDirection.UP:
        update["last_scale_up_at"] = now
    elif intent.direction is ScaleDirection.DOWN:
        update["last_scale_down_at"] = now

    signals: List[Event] = []

    if isinstance(outcome, Failed):
        failures = state.consecutive_failures + 1
        update["consecutive_failures"] = failures
        signals.append(ExecutorFailed(
            pool=spec.name,
            timestamp=now,
            data={
                "error": outcome.error,
                "direction": intent.direction.value,
                "magnitude": intent.magnitude,
                "consecutive_failures": failures,
            },
        ))
        if failures >= config.failure_threshold:
            base = spec.scale_up_cooldown or config.tick_interval
            window = backoff_window(
                base,
                failures,
                config.failure_threshold,
                multiplier=config.backoff_multiplier,
                cap_factor=config.backoff_cap_factor,
            )
            until = open_until(now, window)
            update["circuit_open_until"] = until
            signals.append(CircuitOpened(
                pool=spec.name,
                timestamp=now,
                data={"open_until": until.isoformat(), "window_seconds": window,
                      "consecutive_failures": failures},
            ))
        return Transition(state.model_copy(update=update), signals)

    update["current_size"] = outcome.new_size
    update["consecutive_failures"] = 0
    update["low_utilization_since"] = None
    if state.circuit_open_until is not None:
        update["circuit_open_until"] = None
        signals.append(CircuitClosed(
            pool=spec.name,
            timestamp=now,
            data={"cause": f"successful_scale_{intent.direction.value}"},
        ))
    if isinstance(outcome, PartialSucceeded):
        signals.append(PartialScaleApplied(
            pool=spec.name,
            timestamp=now,
            data={"requested_size": intent.target_size, "new_size": outcome.new_size},
        ))
    return Transition(state.model_copy(update=update), signals)


class CapacityReconciler:
    """Binds a pool spec, tuning and clock around the pure decision functions"""

    def __init__(self, spec: PoolSpec, config: Optional[ReconcilerConfig] = None,
                 clock: Optional[Clock] = None):
        if not isinstance(spec, PoolSpec):
            raise InvalidSpec(f"expected PoolSpec, got {type(spec).__name__}")
        self.spec = spec
        self.config = config or DEFAULT_CONFIG
        self.clock = clock or SystemClock()
        logger.info(
            f"Reconciler for pool '{spec.name}' initialized: "
            f"bounds=[{spec.min_size}, {spec.max_size}], target_utilization={spec.target_utilization}, "
            f"cooldowns=up {spec.scale_up_cooldown}s/down {spec.scale_down_cooldown}s"
        )

    @property
    def pool(self) -> str:
        return self.spec.name

    def initial_state(self, observed_size: Optional[int] = None) -> PoolState:
        """State at startup; falls back to the pool's desired size when nothing was observed"""
        if observed_size is None:
            observed_size = self.spec.desired_size
        return PoolState.initial(observed_size)

    def evaluate(self, state: PoolState, sample: Optional[LoadSample]) -> Evaluation:
        return evaluate(self.spec, state, sample, self.clock.now(), self.config)

    def record(self, state: PoolState, intent: ScaleIntent, outcome: Outcome) -> Transition:
        return record_scale_result(self.spec, state, intent, outcome, self.clock.now(), self.config)
