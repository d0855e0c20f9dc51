"""
Tests for signal events, the event bus and its handlers
"""

import logging
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import T0
from poolscaler.events import (
    CircuitOpened,
    EventBus,
    EventHandler,
    EventType,
    ExecutorFailed,
    RedisStreamHandler,
    SignalLogHandler,
    SignalMetricsHandler,
    StaleSampleWarning,
)


class RecordingHandler(EventHandler):
    def __init__(self, name="recorder"):
        super().__init__(name)
        self.events = []

    async def handle(self, event):
        self.events.append(event)
        return True


class FailingHandler(EventHandler):
    async def handle(self, event):
        raise RuntimeError("handler broke")


class TestEvents:

    def test_required_data_enforced(self):
        with pytest.raises(ValueError, match="open_until"):
            CircuitOpened(pool="general", timestamp=T0, data={})

    def test_equality_ignores_event_id(self):
        first = StaleSampleWarning(pool="general", timestamp=T0, data={"age_seconds": 90, "threshold_seconds": 60})
        second = StaleSampleWarning(pool="general", timestamp=T0, data={"age_seconds": 90, "threshold_seconds": 60})

        assert first.event_id != second.event_id
        assert first == second

    def test_to_dict(self):
        event = ExecutorFailed(pool="general", timestamp=T0, data={"error": "boom", "consecutive_failures": 1})

        payload = event.to_dict()

        assert payload["event_type"] == "ExecutorFailure"
        assert payload["pool"] == "general"
        assert payload["timestamp"] == T0.isoformat()
        assert payload["data"]["error"] == "boom"

    def test_levels(self):
        assert ExecutorFailed.level == logging.ERROR
        assert StaleSampleWarning.level == logging.WARNING


def stale(pool="general"):
    return StaleSampleWarning(pool=pool, timestamp=T0, data={"age_seconds": 90, "threshold_seconds": 60})


class TestEventBus:

    @pytest.mark.asyncio
    async def test_typed_and_wildcard_subscribers(self):
        bus = EventBus()
        typed = RecordingHandler("typed")
        everything = RecordingHandler("everything")
        bus.subscribe(typed, EventType.STALE_SAMPLE_WARNING)
        bus.subscribe(everything)

        handled = await bus.publish(stale())
        await bus.publish(ExecutorFailed(pool="general", timestamp=T0,
                                         data={"error": "boom", "consecutive_failures": 1}))

        assert handled == 2
        assert len(typed.events) == 1
        assert len(everything.events) == 2

    @pytest.mark.asyncio
    async def test_handler_failure_is_contained(self):
        bus = EventBus()
        recorder = RecordingHandler()
        bus.subscribe(FailingHandler("broken"))
        bus.subscribe(recorder)

        handled = await bus.publish(stale())

        assert handled == 1
        assert len(recorder.events) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        recorder = RecordingHandler()
        bus.subscribe(recorder)
        bus.unsubscribe(recorder)

        assert await bus.publish(stale()) == 0

    @pytest.mark.asyncio
    async def test_history_is_per_pool_and_bounded(self):
        bus = EventBus(history_size=3)
        for _ in range(5):
            await bus.publish(stale("general"))
        await bus.publish(stale("batch"))

        assert len(bus.recent("general")) == 3
        assert len(bus.recent("general", limit=2)) == 2
        assert len(bus.recent("batch")) == 1
        assert bus.recent("unknown") == []


class TestHandlers:

    @pytest.mark.asyncio
    async def test_log_handler_uses_event_level(self, caplog):
        handler = SignalLogHandler()

        with caplog.at_level(logging.INFO):
            await handler.handle(stale())

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "StaleSampleWarning[general]" in record.getMessage()

    @pytest.mark.asyncio
    async def test_metrics_handler_counts_signals(self):
        labels = {"pool": "metrics-test", "event_type": "StaleSampleWarning"}
        before = REGISTRY.get_sample_value("poolscaler_signals_total", labels) or 0

        await SignalMetricsHandler().handle(stale("metrics-test"))

        assert REGISTRY.get_sample_value("poolscaler_signals_total", labels) == before + 1

    @pytest.mark.asyncio
    async def test_redis_stream_handler_flattens_event(self):
        client = AsyncMock()
        handler = RedisStreamHandler(client, stream_name="test:events", maxlen=100)

        assert await handler.handle(stale())

        stream, fields = client.xadd.call_args.args
        assert stream == "test:events"
        assert fields["event_type"] == "StaleSampleWarning"
        assert fields["data.age_seconds"] == "90"
        assert client.xadd.call_args.kwargs["maxlen"] == 100

    @pytest.mark.asyncio
    async def test_redis_stream_errors_absorbed(self):
        client = AsyncMock()
        client.xadd.side_effect = RedisConnectionError("down")
        handler = RedisStreamHandler(client)

        assert await handler.handle(stale()) is False
