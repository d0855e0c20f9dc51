"""
Executors carry scaling intents out against the underlying platform
"""

from .base import BlockingScaleExecutor, ScaleExecutor, execute_with_timeout
from .dry_run import DryRunExecutor

__all__ = [
    "BlockingScaleExecutor",
    "DryRunExecutor",
    "ScaleExecutor",
    "execute_with_timeout",
]
