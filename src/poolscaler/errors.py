#!/usr/bin/env python3
"""
Error taxonomy for the capacity reconciler

Only InvalidSpec is fatal, and only at startup. Everything that can go wrong
during a tick is absorbed and surfaced as a signal event instead.
"""


class InvalidSpec(Exception):
    """Pool or reconciler configuration is inconsistent; refuse to start"""

    def __init__(self, message: str, pool: str = ""):
        self.pool = pool
        prefix = f"pool '{pool}': " if pool else ""
        super().__init__(f"{prefix}{message}")


class ExecutorFailure(Exception):
    """Raised by executors when the platform rejects or fails a scale operation"""

    def __init__(self, message: str, pool: str = "", cause: Exception = None):
        self.pool = pool
        self.cause = cause
        super().__init__(message)
