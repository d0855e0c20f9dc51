"""
Shared fixtures for the poolscaler test suite
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import Mock

import pytest

from poolscaler.core.clock import ManualClock
from poolscaler.core.reconciler import ReconcilerConfig
from poolscaler.models import LoadSample, PoolSpec

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class MockKubernetesClient:
    """Mock CoreV1Api returning canned nodes and pods"""

    def __init__(self):
        self.nodes = []
        self.pods = []

    def list_node(self, **kwargs):
        return Mock(items=self.nodes)

    def list_pod_for_all_namespaces(self, **kwargs):
        return Mock(items=self.pods)

    def list_namespaced_pod(self, namespace, **kwargs):
        return Mock(items=self.pods)

    def add_node(self, name: str, ready: bool = True, labels: Optional[dict] = None,
                 unschedulable: bool = False):
        node = Mock()
        node.metadata = Mock()
        node.metadata.name = name
        node.metadata.labels = labels or {}
        node.spec = Mock(unschedulable=unschedulable)
        node.status = Mock()
        node.status.conditions = [Mock(type="Ready", status="True" if ready else "False")]
        self.nodes.append(node)
        return node


@pytest.fixture
def spec():
    """Pool with bounds [2, 6], target utilization 0.7"""
    return PoolSpec(
        name="general",
        min_size=2,
        max_size=6,
        desired_size=2,
        scale_up_cooldown=60,
        scale_down_cooldown=300,
        target_utilization=0.7,
    )


@pytest.fixture
def config():
    return ReconcilerConfig(tick_interval=30)


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def make_sample():
    """Factory for samples taken at a given instant (defaults to T0)"""
    def _make(utilization: float, at: datetime = T0, pending: int = 0) -> LoadSample:
        return LoadSample(timestamp=at, utilization=utilization, pending_work_units=pending)
    return _make


@pytest.fixture
def k8s_client():
    return MockKubernetesClient()


def at(seconds: float) -> datetime:
    """Instant `seconds` after T0"""
    return T0 + timedelta(seconds=seconds)
