"""
Tests for the capacity reconciler decision logic
"""

import math
from datetime import timedelta

import pytest

from conftest import T0, at
from poolscaler.core.clock import ManualClock
from poolscaler.core.reconciler import (
    CapacityReconciler,
    ReconcilerConfig,
    compute_target,
    evaluate,
    observe_size,
    record_scale_result,
    sample_problem,
)
from poolscaler.errors import InvalidSpec
from poolscaler.events import (
    CircuitClosed,
    CircuitOpened,
    ExecutorFailed,
    InvalidSampleWarning,
    PartialScaleApplied,
    StaleSampleWarning,
)
from poolscaler.models import (
    Failed,
    LoadSample,
    PartialSucceeded,
    PoolSpec,
    PoolState,
    ScaleDirection,
    ScaleIntent,
    ScaleReason,
    Succeeded,
)


class TestScaleUp:
    """Growing the pool"""

    def test_high_utilization_scales_up_by_one(self, spec, config, make_sample):
        evaluation = evaluate(spec, PoolState(current_size=2), make_sample(0.95), T0, config)

        assert evaluation.intent.direction is ScaleDirection.UP
        assert evaluation.intent.magnitude == 1
        assert evaluation.intent.reason is ScaleReason.HIGH_UTILIZATION
        assert evaluation.intent.target_size == 3
        assert evaluation.state.pending_delta == 1
        assert evaluation.signals == []

    def test_at_max_size_no_scale(self, spec, config, make_sample):
        evaluation = evaluate(spec, PoolState(current_size=6), make_sample(0.95), T0, config)

        assert evaluation.intent.direction is ScaleDirection.NONE
        assert evaluation.intent.magnitude == 0
        assert evaluation.intent.reason is ScaleReason.AT_BOUNDS
        assert evaluation.state.pending_delta == 0

    def test_clamped_scale_up_reports_bounds_clamp(self, spec, config, make_sample):
        # 5 * 1.0 / 0.7 rounds up to 8, clamped to 6
        evaluation = evaluate(spec, PoolState(current_size=5), make_sample(1.0), T0, config)

        assert evaluation.intent.direction is ScaleDirection.UP
        assert evaluation.intent.magnitude == 1
        assert evaluation.intent.reason is ScaleReason.BOUNDS_CLAMP

    def test_pending_work_adds_capacity(self, spec, config, make_sample):
        # Equilibrium utilization, 15 queued units at 10 per node -> 2 more nodes
        evaluation = evaluate(spec, PoolState(current_size=2), make_sample(0.7, pending=15), T0, config)

        assert evaluation.intent.direction is ScaleDirection.UP
        assert evaluation.intent.magnitude == 2
        assert evaluation.intent.target_size == 4

    def test_scale_up_cooldown(self, spec, config, make_sample):
        state = PoolState(current_size=2, last_scale_up_at=at(-30))

        evaluation = evaluate(spec, state, make_sample(0.95), T0, config)

        assert evaluation.intent.direction is ScaleDirection.NONE
        assert evaluation.intent.reason is ScaleReason.COOLDOWN_ACTIVE

    def test_scale_up_after_cooldown_elapsed(self, spec, config, make_sample):
        state = PoolState(current_size=2, last_scale_up_at=at(-60))

        evaluation = evaluate(spec, state, make_sample(0.95), T0, config)

        assert evaluation.intent.direction is ScaleDirection.UP

    def test_below_min_recovers_without_waiting_for_cooldown(self, spec, config, make_sample):
        state = PoolState(current_size=1, last_scale_up_at=at(-10))

        evaluation = evaluate(spec, state, make_sample(0.5), T0, config)

        assert evaluation.intent.direction is ScaleDirection.UP
        assert evaluation.intent.magnitude == 1
        assert evaluation.intent.reason is ScaleReason.FAILURE_RECOVERY


class TestScaleDown:
    """Shrinking the pool"""

    def test_low_utilization_held_until_window_spans_cooldown(self, spec, config, make_sample):
        evaluation = evaluate(spec, PoolState(current_size=4), make_sample(0.3), T0, config)

        assert evaluation.intent.direction is ScaleDirection.NONE
        assert evaluation.intent.reason is ScaleReason.HYSTERESIS_HOLD
        assert evaluation.state.low_utilization_since == T0

        later = evaluate(spec, evaluation.state, make_sample(0.3, at=at(300)), at(300), config)

        assert later.intent.direction is ScaleDirection.DOWN
        assert later.intent.magnitude == 2
        assert later.intent.reason is ScaleReason.LOW_UTILIZATION
        assert later.state.pending_delta == -2

    def test_utilization_recovery_resets_window(self, spec, config, make_sample):
        first = evaluate(spec, PoolState(current_size=4), make_sample(0.3), T0, config)
        # 0.65 is above 0.7 * (1 - 0.1) = 0.63
        middle = evaluate(spec, first.state, make_sample(0.65, at=at(150)), at(150), config)
        assert middle.state.low_utilization_since is None

        last = evaluate(spec, middle.state, make_sample(0.3, at=at(300)), at(300), config)

        assert last.intent.reason is ScaleReason.HYSTERESIS_HOLD
        assert last.state.low_utilization_since == at(300)

    def test_within_hysteresis_margin_is_equilibrium(self, spec, config, make_sample):
        # 4 * 0.64 / 0.7 -> 4 after rounding up
        evaluation = evaluate(spec, PoolState(current_size=4), make_sample(0.64), T0, config)

        assert evaluation.intent.reason is ScaleReason.EQUILIBRIUM
        assert evaluation.state.low_utilization_since is None

    def test_scale_down_cooldown(self, spec, config, make_sample):
        state = PoolState(current_size=4, last_scale_down_at=at(-100), low_utilization_since=at(-400))

        evaluation = evaluate(spec, state, make_sample(0.3), T0, config)

        assert evaluation.intent.direction is ScaleDirection.NONE
        assert evaluation.intent.reason is ScaleReason.COOLDOWN_ACTIVE

    def test_at_min_size_no_scale_down(self, spec, config, make_sample):
        state = PoolState(current_size=2, low_utilization_since=at(-400))

        evaluation = evaluate(spec, state, make_sample(0.1), T0, config)

        assert evaluation.intent.direction is ScaleDirection.NONE
        assert evaluation.intent.reason is ScaleReason.AT_BOUNDS

    def test_above_max_shrinks_without_hysteresis(self, spec, config, make_sample):
        evaluation = evaluate(spec, PoolState(current_size=8), make_sample(0.9), T0, config)

        assert evaluation.intent.direction is ScaleDirection.DOWN
        assert evaluation.intent.magnitude == 2
        assert evaluation.intent.reason is ScaleReason.BOUNDS_CLAMP
        assert evaluation.intent.target_size == 6

    def test_scale_down_allowed_while_circuit_open(self, spec, config, make_sample):
        state = PoolState(
            current_size=4,
            consecutive_failures=3,
            circuit_open_until=at(500),
            low_utilization_since=at(-400),
        )

        evaluation = evaluate(spec, state, make_sample(0.3), T0, config)

        assert evaluation.intent.direction is ScaleDirection.DOWN
        assert evaluation.intent.magnitude == 2


class TestDegradedInput:
    """Bad samples and in-flight operations never produce actionable intents"""

    def test_pending_operation_blocks_evaluation(self, spec, config, make_sample):
        state = PoolState(current_size=2, pending_delta=1)

        evaluation = evaluate(spec, state, make_sample(0.95), T0, config)

        assert evaluation.intent.direction is ScaleDirection.NONE
        assert evaluation.intent.reason is ScaleReason.OPERATION_PENDING
        assert evaluation.state == state

    def test_stale_sample(self, spec, config, make_sample):
        sample = make_sample(0.95, at=at(-61))

        evaluation = evaluate(spec, PoolState(current_size=2), sample, T0, config)

        assert evaluation.intent.reason is ScaleReason.STALE_SAMPLE
        assert len(evaluation.signals) == 1
        assert isinstance(evaluation.signals[0], StaleSampleWarning)
        assert evaluation.signals[0].data["threshold_seconds"] == 60

    def test_stale_sample_restarts_low_utilization_window(self, spec, config, make_sample):
        state = PoolState(current_size=4, low_utilization_since=at(-400))

        stale = evaluate(spec, state, make_sample(0.3, at=at(-120)), T0, config)
        fresh = evaluate(spec, stale.state, make_sample(0.3), T0, config)

        assert stale.state.low_utilization_since is None
        assert fresh.intent.reason is ScaleReason.HYSTERESIS_HOLD
        assert fresh.state.low_utilization_since == T0

    def test_sample_at_staleness_threshold_is_used(self, spec, config, make_sample):
        evaluation = evaluate(spec, PoolState(current_size=2), make_sample(0.95, at=at(-60)), T0, config)

        assert evaluation.intent.direction is ScaleDirection.UP

    def test_explicit_staleness_threshold(self, spec, make_sample):
        config = ReconcilerConfig(tick_interval=30, staleness_threshold=10)

        evaluation = evaluate(spec, PoolState(current_size=2), make_sample(0.95, at=at(-11)), T0, config)

        assert evaluation.intent.reason is ScaleReason.STALE_SAMPLE

    @pytest.mark.parametrize("sample", [
        None,
        LoadSample(timestamp=T0, utilization=1.5),
        LoadSample(timestamp=T0, utilization=-0.1),
        LoadSample(timestamp=T0, utilization=math.nan),
        LoadSample(timestamp=T0, utilization=0.5, pending_work_units=-1),
        LoadSample(timestamp=T0.replace(tzinfo=None), utilization=0.5),
    ])
    def test_invalid_sample(self, spec, config, sample):
        state = PoolState(current_size=2)

        evaluation = evaluate(spec, state, sample, T0, config)

        assert evaluation.intent.direction is ScaleDirection.NONE
        assert evaluation.intent.reason is ScaleReason.INVALID_SAMPLE
        assert evaluation.state == state
        assert isinstance(evaluation.signals[0], InvalidSampleWarning)

    def test_sample_problem_accepts_valid_sample(self, make_sample):
        assert sample_problem(make_sample(0.0)) is None
        assert sample_problem(make_sample(1.0, pending=3)) is None


class TestEquilibriumAndPurity:
    """Stable inputs, repeatability and bounds"""

    def test_equilibrium(self, spec, config, make_sample):
        evaluation = evaluate(spec, PoolState(current_size=2), make_sample(0.7), T0, config)

        assert evaluation.intent.direction is ScaleDirection.NONE
        assert evaluation.intent.reason is ScaleReason.EQUILIBRIUM

    def test_evaluate_is_idempotent(self, spec, config, make_sample):
        state = PoolState(current_size=2)
        sample = make_sample(0.95)

        assert evaluate(spec, state, sample, T0, config) == evaluate(spec, state, sample, T0, config)

    def test_idempotent_with_signals(self, spec, config, make_sample):
        state = PoolState(current_size=2)
        sample = make_sample(0.95, at=at(-120))

        first = evaluate(spec, state, sample, T0, config)
        second = evaluate(spec, state, sample, T0, config)

        assert first == second
        assert first.signals

    def test_input_state_is_not_modified(self, spec, config, make_sample):
        state = PoolState(current_size=2)
        snapshot = state.to_snapshot()

        evaluate(spec, state, make_sample(0.95), T0, config)

        assert state.to_snapshot() == snapshot

    @pytest.mark.parametrize("current", [2, 3, 4, 5, 6])
    @pytest.mark.parametrize("utilization", [0.0, 0.2, 0.5, 0.7, 0.9, 1.0])
    def test_intent_stays_within_bounds(self, spec, config, make_sample, current, utilization):
        state = PoolState(current_size=current, low_utilization_since=at(-1000))

        intent = evaluate(spec, state, make_sample(utilization, pending=5), T0, config).intent

        assert spec.min_size <= current + intent.signed_delta <= spec.max_size

    def test_compute_target_rounds_up(self, spec, config, make_sample):
        assert compute_target(spec, 2, make_sample(0.95), config) == 3
        assert compute_target(spec, 3, make_sample(0.7), config) == 3
        assert compute_target(spec, 0, make_sample(0.9), config) == 0


class TestRecordScaleResult:
    """Feeding executor outcomes back"""

    def _scale_up(self, spec, config, make_sample, state, now):
        evaluation = evaluate(spec, state, make_sample(0.95, at=now), now, config)
        assert evaluation.intent.direction is ScaleDirection.UP
        return evaluation

    def test_success_applies_new_size(self, spec, config, make_sample):
        evaluation = self._scale_up(spec, config, make_sample, PoolState(current_size=2), T0)

        transition = record_scale_result(spec, evaluation.state, evaluation.intent, Succeeded(new_size=3),
                                         at(5), config)

        assert transition.state.current_size == 3
        assert transition.state.pending_delta == 0
        assert transition.state.last_scale_up_at == at(5)
        assert transition.state.consecutive_failures == 0
        assert transition.signals == []

    def test_failure_keeps_size_and_counts(self, spec, config, make_sample):
        evaluation = self._scale_up(spec, config, make_sample, PoolState(current_size=2), T0)

        transition = record_scale_result(spec, evaluation.state, evaluation.intent,
                                         Failed(error="capacity"), at(5), config)

        assert transition.state.current_size == 2
        assert transition.state.pending_delta == 0
        assert transition.state.consecutive_failures == 1
        assert transition.state.last_scale_up_at == at(5)
        assert transition.state.circuit_open_until is None
        assert isinstance(transition.signals[0], ExecutorFailed)
        assert transition.signals[0].data["error"] == "capacity"

    def test_partial_success(self, spec, config, make_sample):
        state = PoolState(current_size=2)
        evaluation = evaluate(spec, state, make_sample(0.7, pending=15), T0, config)

        transition = record_scale_result(spec, evaluation.state, evaluation.intent,
                                         PartialSucceeded(new_size=3), T0, config)

        assert transition.state.current_size == 3
        assert transition.state.pending_delta == 0
        assert any(isinstance(s, PartialScaleApplied) for s in transition.signals)

    def test_three_failures_open_circuit_then_recover(self, spec, config, make_sample):
        state = PoolState(current_size=2)
        now = T0
        for attempt in range(3):
            evaluation = self._scale_up(spec, config, make_sample, state, now)
            transition = record_scale_result(spec, evaluation.state, evaluation.intent,
                                             Failed(error="boom"), now, config)
            state = transition.state
            if attempt < 2:
                now += timedelta(seconds=spec.scale_up_cooldown)

        assert state.consecutive_failures == 3
        assert state.circuit_open_until == now + timedelta(seconds=60)
        assert any(isinstance(s, CircuitOpened) for s in transition.signals)

        blocked = evaluate(spec, state, make_sample(0.95, at=now + timedelta(seconds=1)),
                           now + timedelta(seconds=1), config)
        assert blocked.intent.direction is ScaleDirection.NONE
        assert blocked.intent.reason is ScaleReason.CIRCUIT_OPEN
        assert any(isinstance(s, CircuitOpened) for s in blocked.signals)

        reopened_at = now + timedelta(seconds=60)
        recovered = evaluate(spec, blocked.state, make_sample(0.95, at=reopened_at), reopened_at, config)
        assert recovered.intent.direction is ScaleDirection.UP
        assert recovered.state.circuit_open_until is None
        assert any(isinstance(s, CircuitClosed) for s in recovered.signals)

    def test_failure_after_half_open_doubles_window(self, spec, config, make_sample):
        state = PoolState(current_size=2, consecutive_failures=3)
        evaluation = self._scale_up(spec, config, make_sample, state, T0)

        transition = record_scale_result(spec, evaluation.state, evaluation.intent,
                                         Failed(error="boom"), T0, config)

        assert transition.state.consecutive_failures == 4
        assert transition.state.circuit_open_until == at(120)

    def test_circuit_base_falls_back_to_tick_interval(self, config, make_sample):
        spec = PoolSpec(name="fast", min_size=1, max_size=5, desired_size=1,
                        scale_up_cooldown=0, target_utilization=0.5)
        state = PoolState(current_size=1, consecutive_failures=2, pending_delta=1)
        intent = ScaleIntent(direction=ScaleDirection.UP, magnitude=1,
                             reason=ScaleReason.HIGH_UTILIZATION, target_size=2)

        transition = record_scale_result(spec, state, intent, Failed(error="boom"), T0, config)

        assert transition.state.circuit_open_until == at(30)

    def test_successful_scale_down_closes_circuit(self, spec, config, make_sample):
        state = PoolState(
            current_size=4,
            consecutive_failures=3,
            circuit_open_until=at(500),
            low_utilization_since=at(-400),
        )
        evaluation = evaluate(spec, state, make_sample(0.3), T0, config)
        assert evaluation.intent.direction is ScaleDirection.DOWN

        transition = record_scale_result(spec, evaluation.state, evaluation.intent,
                                         Succeeded(new_size=2), at(10), config)

        assert transition.state.circuit_open_until is None
        assert transition.state.consecutive_failures == 0
        assert transition.state.current_size == 2
        assert transition.state.last_scale_down_at == at(10)
        assert transition.state.low_utilization_since is None
        assert any(isinstance(s, CircuitClosed) for s in transition.signals)


class TestObserveSize:

    def test_observed_size_replaces_current(self):
        assert observe_size(PoolState(current_size=4), 3).current_size == 3

    def test_ignored_while_pending(self):
        state = PoolState(current_size=4, pending_delta=1)
        assert observe_size(state, 3) is state

    def test_ignored_when_unknown(self):
        state = PoolState(current_size=4)
        assert observe_size(state, None) is state

    def test_node_loss_triggers_recovery(self, spec, config, make_sample):
        state = observe_size(PoolState(current_size=2), 1)

        evaluation = evaluate(spec, state, make_sample(0.5), T0, config)

        assert evaluation.intent.reason is ScaleReason.FAILURE_RECOVERY


class TestCapacityReconciler:

    def test_uses_injected_clock(self, spec, config, make_sample):
        clock = ManualClock(T0)
        reconciler = CapacityReconciler(spec, config, clock)
        state = reconciler.initial_state()

        clock.advance(30)
        evaluation = reconciler.evaluate(state, make_sample(0.95, at=clock.now()))
        transition = reconciler.record(evaluation.state, evaluation.intent, Succeeded(new_size=3))

        assert state.current_size == spec.desired_size
        assert transition.state.last_scale_up_at == at(30)

    def test_initial_state_prefers_observed_size(self, spec):
        reconciler = CapacityReconciler(spec)
        assert reconciler.initial_state(5).current_size == 5

    def test_rejects_non_spec(self):
        with pytest.raises(InvalidSpec):
            CapacityReconciler({"min_size": 1})

    def test_invalid_config_raises_invalid_spec(self):
        with pytest.raises(InvalidSpec):
            ReconcilerConfig.from_config({"failure_threshold": 0})
