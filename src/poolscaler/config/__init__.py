"""
Configuration module
"""

from .settings import PoolConfig, PoolSettings, ReconcilerSettings, Settings, expand_env

__all__ = ["PoolConfig", "PoolSettings", "ReconcilerSettings", "Settings", "expand_env"]
