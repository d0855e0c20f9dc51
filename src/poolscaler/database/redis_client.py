#!/usr/bin/env python3
"""
Redis-backed checkpoints of reconciler state
"""

import json
import logging
from typing import Optional

import redis
from pydantic import ValidationError

from ..models import PoolState

logger = logging.getLogger(__name__)


class RedisStateStore:
    """Stores one PoolState snapshot per pool under `<prefix>pool:<name>:state`"""

    def __init__(self, host: str = "localhost", port: int = 6379,
                 db: int = 0, password: Optional[str] = None,
                 key_prefix: str = "poolscaler:", client: Optional[redis.Redis] = None):
        """
        Initialize the store

        Args:
            host: Redis host
            port: Redis port
            db: Redis database number
            password: Redis password
            key_prefix: Prefix for all keys
            client: Pre-built client (skips connecting)
        """
        self.key_prefix = key_prefix
        self.client = client if client is not None else self.connect(host, port, db, password)

    @staticmethod
    def connect(host: str, port: int, db: int, password: Optional[str]) -> redis.Redis:
        """Connect to Redis"""
        try:
            client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True
            )
            client.ping()
            logger.info(f"Connected to Redis at {host}:{port}")
            return client
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    def _make_key(self, pool: str) -> str:
        return f"{self.key_prefix}pool:{pool}:state"

    def save(self, pool: str, state: PoolState) -> bool:
        """
        Checkpoint a pool's state

        Returns:
            True if the snapshot was written
        """
        try:
            return bool(self.client.set(self._make_key(pool), json.dumps(state.to_snapshot())))
        except redis.RedisError as e:
            logger.error(f"Failed to checkpoint state for pool '{pool}': {e}")
            return False

    def load(self, pool: str) -> Optional[PoolState]:
        """Restore a pool's last checkpoint, None if absent or unreadable"""
        try:
            raw = self.client.get(self._make_key(pool))
        except redis.RedisError as e:
            logger.error(f"Failed to read state for pool '{pool}': {e}")
            return None

        if raw is None:
            return None

        try:
            return PoolState.from_snapshot(json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Discarding unreadable checkpoint for pool '{pool}': {e}")
            return None

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self.client.close()
        logger.info("Redis connection closed")
