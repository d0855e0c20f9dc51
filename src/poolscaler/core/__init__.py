"""
Core reconciler components
"""

from .clock import ManualClock, SystemClock
from .pool_loop import PoolReconcileLoop
from .reconciler import (
    CapacityReconciler,
    Evaluation,
    ReconcilerConfig,
    Transition,
    evaluate,
    record_scale_result,
)

__all__ = [
    "CapacityReconciler",
    "Evaluation",
    "ManualClock",
    "PoolReconcileLoop",
    "ReconcilerConfig",
    "SystemClock",
    "Transition",
    "evaluate",
    "record_scale_result",
]
