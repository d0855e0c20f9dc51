#!/usr/bin/env python3
"""
Per-pool reconcile loop

Each pool gets one cooperative asyncio task that ticks at the configured
interval: fetch a sample, evaluate, and when the intent is actionable run the
executor under a timeout and feed the outcome back. Blocking clients
(Prometheus, Kubernetes, Redis, MongoDB) are called through the default
thread pool so a slow pool never stalls the others.
"""

import asyncio
import logging
import time
from typing import List, Optional

from ..database import MongoScalingHistory, RedisStateStore, ScalingRecord
from ..events import (
    Event,
    EventBus,
    ReconcilerStarted,
    ReconcilerStopped,
    ScaleIntentIssued,
    ScaleOutcomeRecorded,
)
from ..events.event_metrics import (
    CIRCUIT_OPEN,
    CONSECUTIVE_FAILURES,
    CURRENT_SIZE,
    ERRORS,
    EXECUTOR_OUTCOMES,
    PENDING_DELTA,
    SCALING_DECISIONS,
    TICK_DURATION,
)
from ..executors import ScaleExecutor, execute_with_timeout
from ..models import PoolState, ScaleIntent
from .circuit_breaker import CircuitState, circuit_state, describe
from .metrics import MetricsSource
from .reconciler import CapacityReconciler, observe_size

logger = logging.getLogger(__name__)


class PoolReconcileLoop:
    """Drives one pool's reconciler against its metrics source and executor"""

    def __init__(self, reconciler: CapacityReconciler, metrics_source: MetricsSource,
                 executor: ScaleExecutor, event_bus: Optional[EventBus] = None,
                 state_store: Optional[RedisStateStore] = None,
                 history: Optional[MongoScalingHistory] = None,
                 sync_observed_size: bool = True):
        """
        Initialize the loop

        Args:
            reconciler: Reconciler bound to this pool's spec
            metrics_source: Source of load samples and ready-node counts
            executor: Applies actionable intents
            event_bus: Receives every signal (a private bus is used if omitted)
            state_store: Optional checkpoint store
            history: Optional scaling history sink
            sync_observed_size: Fold the observed ready-node count into state each tick
        """
        self.reconciler = reconciler
        self.metrics_source = metrics_source
        self.executor = executor
        self.event_bus = event_bus or EventBus()
        self.state_store = state_store
        self.history = history
        self.sync_observed_size = sync_observed_size

        self.state: Optional[PoolState] = None
        self.last_intent: Optional[ScaleIntent] = None
        self.last_tick_at = None
        self.last_error: Optional[str] = None
        self.ticks = 0

        self._checkpointed: Optional[PoolState] = None
        self._lock: Optional[asyncio.Lock] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def pool(self) -> str:
        return self.reconciler.pool

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _call(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _publish(self, events: List[Event]) -> None:
        await self.event_bus.publish_all(events)

    async def _observed_size(self) -> Optional[int]:
        try:
            return await self._call(self.metrics_source.get_ready_node_count, self.pool)
        except Exception as e:
            logger.warning(f"Could not observe ready nodes for pool '{self.pool}': {e}")
            return None

    async def initialize(self) -> PoolState:
        """
        Build the starting state

        A checkpoint wins over a fresh state; an operation that was in flight
        when it was written is forgotten and the observed size takes over.
        """
        restored = None
        if self.state_store is not None:
            restored = await self._call(self.state_store.load, self.pool)

        observed = await self._observed_size()
        if restored is not None:
            if not restored.idle:
                logger.warning(
                    f"Pool '{self.pool}' checkpoint had {restored.pending_delta:+d} in flight; "
                    f"resuming from observed size"
                )
            state = observe_size(restored.model_copy(update={"pending_delta": 0}), observed)
            logger.info(f"Restored pool '{self.pool}' from checkpoint: current_size={state.current_size}")
        else:
            state = self.reconciler.initial_state(observed)
            logger.info(f"Pool '{self.pool}' starting at current_size={state.current_size}")

        self.state = state
        self._checkpointed = restored
        self._update_gauges()
        await self._publish([ReconcilerStarted(
            pool=self.pool,
            timestamp=self.reconciler.clock.now(),
            data={"current_size": state.current_size},
        )])
        return state

    async def run_once(self) -> Optional[ScaleIntent]:
        """
        Run a single tick

        Returns:
            The intent decided on this tick, or None if the tick failed
        """
        if self._lock is None:
            self._lock = asyncio.Lock()

        async with self._lock:
            start_time = time.time()
            try:
                intent = await self._tick()
                self.last_error = None
                return intent
            except Exception as e:
                ERRORS.labels(type=type(e).__name__).inc()
                self.last_error = f"{type(e).__name__}: {e}"
                logger.error(f"Reconcile tick failed for pool '{self.pool}': {e}", exc_info=True)
                return None
            finally:
                self.ticks += 1
                TICK_DURATION.labels(pool=self.pool).observe(time.time() - start_time)

    async def _tick(self) -> ScaleIntent:
        if self.state is None:
            await self.initialize()

        sample = await self._call(self.metrics_source.get_latest_sample, self.pool)
        if self.sync_observed_size:
            self.state = observe_size(self.state, await self._observed_size())

        evaluation = self.reconciler.evaluate(self.state, sample)
        intent = evaluation.intent
        self.state = evaluation.state
        self.last_intent = intent
        self.last_tick_at = self.reconciler.clock.now()

        SCALING_DECISIONS.labels(
            pool=self.pool, direction=intent.direction.value, reason=intent.reason.value
        ).inc()
        logger.debug(f"Pool '{self.pool}' decision: {intent.direction.value} ({intent.reason.value})")
        await self._publish(evaluation.signals)

        if intent.actionable:
            await self._execute(intent)

        self._update_gauges()
        await self._checkpoint()
        return intent

    async def _execute(self, intent: ScaleIntent) -> None:
        before = self.state
        logger.info(
            f"Pool '{self.pool}': scaling {intent.direction.value} by {intent.magnitude} "
            f"({before.current_size} -> {intent.target_size}, reason={intent.reason.value})"
        )
        await self._publish([ScaleIntentIssued(
            pool=self.pool,
            timestamp=self.reconciler.clock.now(),
            data={
                "direction": intent.direction.value,
                "magnitude": intent.magnitude,
                "reason": intent.reason.value,
                "target_size": intent.target_size,
            },
        )])
        self._update_gauges()

        start_time = time.time()
        outcome = await execute_with_timeout(
            self.executor, self.pool, intent, before.current_size, self.reconciler.config.executor_timeout
        )
        duration_ms = int((time.time() - start_time) * 1000)
        EXECUTOR_OUTCOMES.labels(pool=self.pool, kind=outcome.kind).inc()

        transition = self.reconciler.record(before, intent, outcome)
        self.state = transition.state
        now = self.reconciler.clock.now()
        await self._publish(transition.signals + [ScaleOutcomeRecorded(
            pool=self.pool,
            timestamp=now,
            data={"outcome": outcome.kind, "current_size": self.state.current_size},
        )])

        if self.history is not None:
            record = ScalingRecord.build(self.pool, intent, outcome, before, self.state, now, duration_ms)
            await self._call(self.history.record, record)

    async def _checkpoint(self) -> None:
        if self.state_store is None or self.state == self._checkpointed:
            return
        if await self._call(self.state_store.save, self.pool, self.state):
            self._checkpointed = self.state

    def _update_gauges(self) -> None:
        state = self.state
        CURRENT_SIZE.labels(pool=self.pool).set(state.current_size)
        PENDING_DELTA.labels(pool=self.pool).set(state.pending_delta)
        CONSECUTIVE_FAILURES.labels(pool=self.pool).set(state.consecutive_failures)
        is_open = circuit_state(
            state, self.reconciler.clock.now(), self.reconciler.config.failure_threshold
        ) is CircuitState.OPEN
        CIRCUIT_OPEN.labels(pool=self.pool).set(1 if is_open else 0)

    async def _run(self) -> None:
        interval = self.reconciler.config.tick_interval
        logger.info(f"Reconcile loop for pool '{self.pool}' running every {interval}s")
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def start(self) -> None:
        if self.running:
            return
        if self.state is None:
            await self.initialize()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"reconcile-{self.pool}")

    async def stop(self) -> None:
        """Stop after the current tick finishes"""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        await self._publish([ReconcilerStopped(pool=self.pool, timestamp=self.reconciler.clock.now())])
        logger.info(f"Reconcile loop for pool '{self.pool}' stopped")

    def status(self) -> dict:
        """Snapshot for status endpoints"""
        now = self.reconciler.clock.now()
        spec = self.reconciler.spec
        threshold = self.reconciler.config.failure_threshold
        return {
            "pool": self.pool,
            "running": self.running,
            "spec": spec.model_dump(mode="json"),
            "state": self.state.to_snapshot() if self.state else None,
            "circuit": describe(self.state, now, threshold) if self.state else None,
            "last_intent": self.last_intent.model_dump(mode="json") if self.last_intent else None,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_error": self.last_error,
            "ticks": self.ticks,
        }
