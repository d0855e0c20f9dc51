"""
Models package for pool configuration, state and scaling decisions
"""

from .pool import (
    Failed,
    LoadSample,
    Outcome,
    PartialSucceeded,
    PoolSpec,
    PoolState,
    ScaleDirection,
    ScaleIntent,
    ScaleReason,
    Succeeded,
)

__all__ = [
    "Failed",
    "LoadSample",
    "Outcome",
    "PartialSucceeded",
    "PoolSpec",
    "PoolState",
    "ScaleDirection",
    "ScaleIntent",
    "ScaleReason",
    "Succeeded",
]
