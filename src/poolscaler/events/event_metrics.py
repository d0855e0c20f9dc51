#!/usr/bin/env python3
"""
Prometheus metrics for reconciler decisions, signals and executor outcomes
"""

from prometheus_client import Counter, Gauge, Histogram

SCALING_DECISIONS = Counter(
    'poolscaler_scaling_decisions_total',
    'Scaling decisions by direction and reason',
    ['pool', 'direction', 'reason']
)

SIGNALS_TOTAL = Counter(
    'poolscaler_signals_total',
    'Signals emitted by the reconciler',
    ['pool', 'event_type']
)

EXECUTOR_OUTCOMES = Counter(
    'poolscaler_executor_outcomes_total',
    'Executor outcomes by kind',
    ['pool', 'kind']
)

ERRORS = Counter(
    'poolscaler_errors_total',
    'Errors absorbed by the reconcile loops',
    ['type']
)

HANDLER_ERRORS = Counter(
    'poolscaler_event_handler_errors_total',
    'Event handler failures',
    ['handler', 'event_type']
)

CURRENT_SIZE = Gauge(
    'poolscaler_pool_current_size',
    'Ready nodes the reconciler believes the pool has',
    ['pool']
)

PENDING_DELTA = Gauge(
    'poolscaler_pool_pending_delta',
    'Signed node change currently in flight',
    ['pool']
)

CONSECUTIVE_FAILURES = Gauge(
    'poolscaler_pool_consecutive_failures',
    'Consecutive executor failures',
    ['pool']
)

CIRCUIT_OPEN = Gauge(
    'poolscaler_pool_circuit_open',
    'Scale-up circuit state (1=open, 0=closed)',
    ['pool']
)

TICK_DURATION = Histogram(
    'poolscaler_tick_duration_seconds',
    'Time taken by one reconcile tick, including execution',
    ['pool'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0]
)
