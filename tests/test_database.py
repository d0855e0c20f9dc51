"""
Tests for Redis checkpoints and MongoDB scaling history
"""

import json
from unittest.mock import MagicMock, Mock

import pytest
import redis
from pymongo.errors import ConnectionFailure, PyMongoError

from conftest import T0, at
from poolscaler.database import MongoScalingHistory, RedisStateStore, ScalingRecord
from poolscaler.models import Failed, PoolState, ScaleDirection, ScaleIntent, ScaleReason, Succeeded


@pytest.fixture
def redis_client():
    """Mock Redis client backed by a dict"""
    data = {}
    client = Mock()
    client.set.side_effect = lambda key, value: data.__setitem__(key, value) or True
    client.get.side_effect = data.get
    client.data = data
    return client


class TestRedisStateStore:

    def test_checkpoint_round_trip(self, redis_client):
        store = RedisStateStore(client=redis_client)
        state = PoolState(
            current_size=4,
            last_scale_up_at=T0,
            consecutive_failures=3,
            circuit_open_until=at(60),
            low_utilization_since=at(-30),
        )

        assert store.save("general", state)
        assert store.load("general") == state
        assert "poolscaler:pool:general:state" in redis_client.data

    def test_missing_checkpoint(self, redis_client):
        assert RedisStateStore(client=redis_client).load("general") is None

    def test_corrupt_checkpoint_discarded(self, redis_client):
        redis_client.data["poolscaler:pool:general:state"] = "{not json"

        assert RedisStateStore(client=redis_client).load("general") is None

    def test_invalid_checkpoint_discarded(self, redis_client):
        redis_client.data["poolscaler:pool:general:state"] = json.dumps({"current_size": -3})

        assert RedisStateStore(client=redis_client).load("general") is None

    def test_redis_errors_are_absorbed(self):
        client = Mock()
        client.set.side_effect = redis.ConnectionError("down")
        client.get.side_effect = redis.ConnectionError("down")
        store = RedisStateStore(client=client)

        assert store.save("general", PoolState(current_size=2)) is False
        assert store.load("general") is None

    def test_health_check(self, redis_client):
        store = RedisStateStore(client=redis_client)
        redis_client.ping.return_value = True
        assert store.health_check()

        redis_client.ping.side_effect = redis.ConnectionError("down")
        assert store.health_check() is False

    def test_connect_failure_raises(self, monkeypatch):
        failing = Mock()
        failing.ping.side_effect = redis.ConnectionError("refused")
        monkeypatch.setattr(redis, "Redis", Mock(return_value=failing))

        with pytest.raises(redis.ConnectionError):
            RedisStateStore(host="nowhere")


class TestScalingRecord:

    def test_build_from_outcome(self):
        intent = ScaleIntent(direction=ScaleDirection.UP, magnitude=2,
                             reason=ScaleReason.HIGH_UTILIZATION, target_size=4)
        before = PoolState(current_size=2, pending_delta=2)
        after = PoolState(current_size=2, consecutive_failures=1)

        record = ScalingRecord.build("general", intent, Failed(error="timeout"), before, after, T0, 1500)

        assert record.direction == "up"
        assert record.reason == "HighUtilization"
        assert record.outcome == "failed"
        assert record.error == "timeout"
        assert record.consecutive_failures == 1
        assert ScalingRecord.from_dict(record.to_dict()) == record


class TestMongoScalingHistory:

    @pytest.fixture
    def mongo_client(self):
        return MagicMock()

    def test_connect_creates_indexes(self, mongo_client):
        history = MongoScalingHistory(database_name="test", client=mongo_client)

        mongo_client.admin.command.assert_called_once_with('ping')
        assert history.collection.create_index.call_count == 2

    def test_record_inserts_document(self, mongo_client):
        history = MongoScalingHistory(client=mongo_client)
        intent = ScaleIntent(direction=ScaleDirection.DOWN, magnitude=1,
                             reason=ScaleReason.LOW_UTILIZATION, target_size=3)
        record = ScalingRecord.build("general", intent, Succeeded(new_size=3),
                                     PoolState(current_size=4), PoolState(current_size=3), T0)

        assert history.record(record)

        document = history.collection.insert_one.call_args.args[0]
        assert document["pool"] == "general"
        assert document["old_size"] == 4
        assert document["new_size"] == 3

    def test_record_failure_absorbed(self, mongo_client):
        history = MongoScalingHistory(client=mongo_client)
        history.collection.insert_one.side_effect = PyMongoError("write failed")
        record = ScalingRecord("general", "up", 1, "HighUtilization", 2, 3, "succeeded", T0)

        assert history.record(record) is False

    def test_recent(self, mongo_client):
        history = MongoScalingHistory(client=mongo_client)
        doc = ScalingRecord("general", "up", 1, "HighUtilization", 2, 3, "succeeded", T0).to_dict()
        history.collection.find.return_value.sort.return_value.limit.return_value = [doc]

        records = history.recent("general", limit=10)

        assert len(records) == 1
        assert records[0].new_size == 3
        history.collection.find.assert_called_once_with({"pool": "general"})

    def test_connection_failure_raises(self, mongo_client):
        mongo_client.admin.command.side_effect = ConnectionFailure("no server")

        with pytest.raises(ConnectionFailure):
            MongoScalingHistory(client=mongo_client)
