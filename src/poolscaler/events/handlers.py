#!/usr/bin/env python3
"""
Event handlers: logging, Prometheus counters and Redis stream export
"""

import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .base import Event, EventHandler
from .event_metrics import SIGNALS_TOTAL

logger = logging.getLogger(__name__)


class SignalLogHandler(EventHandler):
    """Logs every event at the level its class declares"""

    def __init__(self, log: Optional[logging.Logger] = None):
        super().__init__("signal_log")
        self.log = log or logger

    async def handle(self, event: Event) -> bool:
        self.log.log(event.level, event.describe())
        return True


class SignalMetricsHandler(EventHandler):
    """Counts events per pool and type"""

    def __init__(self):
        super().__init__("signal_metrics")

    async def handle(self, event: Event) -> bool:
        SIGNALS_TOTAL.labels(pool=event.pool, event_type=event.event_type.value).inc()
        return True


class RedisStreamHandler(EventHandler):
    """Appends events to a Redis stream for external consumers"""

    def __init__(self, redis_client: aioredis.Redis, stream_name: str = "poolscaler:events",
                 maxlen: int = 10000):
        super().__init__("redis_stream")
        self.redis_client = redis_client
        self.stream_name = stream_name
        self.maxlen = maxlen

    async def handle(self, event: Event) -> bool:
        event_data = event.to_dict()
        # Streams hold flat string fields
        flattened = {}
        for key, value in event_data.items():
            if isinstance(value, dict):
                for subkey, subvalue in value.items():
                    flattened[f"{key}.{subkey}"] = str(subvalue)
            else:
                flattened[key] = str(value)

        try:
            await self.redis_client.xadd(self.stream_name, flattened, maxlen=self.maxlen)
        except RedisError as e:
            logger.error(f"Failed to publish {event.event_type.value} to {self.stream_name}: {e}")
            return False
        logger.debug(f"Published event {event.event_type.value} ({event.event_id})")
        return True

    async def close(self) -> None:
        await self.redis_client.close()
