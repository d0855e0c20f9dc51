"""
Optional persistence: state checkpoints in Redis, scaling history in MongoDB
"""

from .mongodb import MongoScalingHistory, ScalingRecord
from .redis_client import RedisStateStore

__all__ = ["MongoScalingHistory", "RedisStateStore", "ScalingRecord"]
