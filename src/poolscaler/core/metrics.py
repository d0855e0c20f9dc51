#!/usr/bin/env python3
"""
Metrics sources: where the reconciler gets its load samples and node counts
"""

import logging
import math
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Optional

import requests
from kubernetes import client
from kubernetes import config as k8s_config

from ..models import LoadSample

logger = logging.getLogger(__name__)

CONTROL_PLANE_LABELS = ("node-role.kubernetes.io/control-plane", "node-role.kubernetes.io/master")


class MetricsSource(ABC):
    """Supplies the latest LoadSample per pool"""

    @abstractmethod
    def get_latest_sample(self, pool: str) -> Optional[LoadSample]:
        """Return the most recent sample, or None when nothing usable is available"""

    def get_ready_node_count(self, pool: str) -> Optional[int]:
        """Observed count of ready nodes; None when the source cannot tell"""
        return None


class StaticMetricsSource(MetricsSource):
    """Serves samples pushed into it; used for dry runs and tests"""

    def __init__(self, samples: Optional[Dict[str, LoadSample]] = None,
                 node_counts: Optional[Dict[str, int]] = None):
        self.samples: Dict[str, LoadSample] = dict(samples or {})
        self.node_counts: Dict[str, int] = dict(node_counts or {})

    def push(self, pool: str, sample: LoadSample) -> None:
        self.samples[pool] = sample

    def set_node_count(self, pool: str, count: int) -> None:
        self.node_counts[pool] = count

    def get_latest_sample(self, pool: str) -> Optional[LoadSample]:
        return self.samples.get(pool)

    def get_ready_node_count(self, pool: str) -> Optional[int]:
        return self.node_counts.get(pool)


class KubernetesNodeCounter:
    """Counts ready worker nodes and pending pods through the Kubernetes API"""

    def __init__(self, in_cluster: bool = False, kubeconfig_path: Optional[str] = None,
                 api: Optional[client.CoreV1Api] = None):
        """
        Initialize the counter

        Args:
            in_cluster: Load the service-account config mounted into the pod
            kubeconfig_path: Kubeconfig to load when not running in-cluster
            api: Pre-built CoreV1Api (skips config loading)
        """
        self.k8s_api = api if api is not None else self._init_kubernetes_client(in_cluster, kubeconfig_path)

    @staticmethod
    def _init_kubernetes_client(in_cluster: bool, kubeconfig_path: Optional[str]) -> client.CoreV1Api:
        if in_cluster:
            logger.info("Loading in-cluster Kubernetes config")
            k8s_config.load_incluster_config()
        else:
            if kubeconfig_path and not os.path.exists(kubeconfig_path):
                raise FileNotFoundError(f"Kubeconfig file not found: {kubeconfig_path}")
            logger.info(f"Loading kubeconfig from: {kubeconfig_path or 'default location'}")
            k8s_config.load_kube_config(config_file=kubeconfig_path)
        return client.CoreV1Api()

    def count_ready_nodes(self, label_selector: Optional[str] = None) -> int:
        """Ready, schedulable, non-control-plane nodes matching the selector"""
        kwargs = {"label_selector": label_selector} if label_selector else {}
        nodes = self.k8s_api.list_node(**kwargs)

        ready = 0
        for node in nodes.items:
            labels = node.metadata.labels or {}
            if any(label in labels for label in CONTROL_PLANE_LABELS):
                continue
            # Cordoned nodes are on their way out
            if node.spec is not None and node.spec.unschedulable:
                continue
            conditions = (node.status.conditions if node.status else None) or []
            if any(c.type == "Ready" and c.status == "True" for c in conditions):
                ready += 1
        logger.debug(f"Ready nodes for selector '{label_selector}': {ready}")
        return ready

    def count_pending_pods(self, namespace: Optional[str] = None) -> int:
        selector = "status.phase=Pending"
        if namespace:
            pods = self.k8s_api.list_namespaced_pod(namespace, field_selector=selector)
        else:
            pods = self.k8s_api.list_pod_for_all_namespaces(field_selector=selector)
        return len(pods.items)


class PoolQueries:
    """PromQL and selectors describing one pool"""

    def __init__(self, utilization: str, pending_work: Optional[str] = None,
                 node_selector: Optional[str] = None, node_count: Optional[str] = None):
        self.utilization = utilization
        self.pending_work = pending_work
        self.node_selector = node_selector
        self.node_count = node_count


class PrometheusMetricsSource(MetricsSource):
    """Builds samples from Prometheus instant queries, with node counts from Kubernetes"""

    def __init__(self, url: str, queries: Dict[str, PoolQueries], timeout: float = 5.0,
                 node_counter: Optional[KubernetesNodeCounter] = None,
                 session: Optional[requests.Session] = None):
        self.url = url.rstrip("/")
        self.queries = queries
        self.timeout = timeout
        self.node_counter = node_counter
        self.session = session or requests.Session()

    def _query_prometheus(self, query: str) -> Optional[tuple]:
        """
        Run an instant query

        Returns:
            (timestamp, value) of the first series, or None if the result is empty
        """
        response = self.session.get(
            f"{self.url}/api/v1/query",
            params={"query": query},
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("status") != "success":
            raise ValueError(f"Prometheus query failed: {payload.get('error', 'unknown error')}")

        result = payload.get("data", {}).get("result", [])
        if not result:
            return None
        ts, raw = result[0]["value"]
        return datetime.fromtimestamp(float(ts), tz=timezone.utc), float(raw)

    def _pending_work(self, queries: PoolQueries) -> Optional[tuple]:
        """(timestamp, pending work units) from the pending query or the pending pod count"""
        if queries.pending_work:
            result = self._query_prometheus(queries.pending_work)
            if result is None or math.isnan(result[1]):
                return None
            return result[0], int(result[1])
        if self.node_counter is not None:
            return datetime.now(timezone.utc), self.node_counter.count_pending_pods()
        return None

    def get_latest_sample(self, pool: str) -> Optional[LoadSample]:
        queries = self.queries.get(pool)
        if queries is None:
            logger.warning(f"No metrics queries configured for pool '{pool}'")
            return None

        try:
            utilization = self._query_prometheus(queries.utilization)
            pending = self._pending_work(queries)

            if utilization is None:
                # An empty pool reports no utilization series; queued work still has to reach it
                if pending is not None and pending[1] > 0:
                    logger.info(f"Pool '{pool}' has no utilization series but {pending[1]} pending work units")
                    return LoadSample(timestamp=pending[0], utilization=0.0, pending_work_units=pending[1])
                logger.warning(f"Utilization query for pool '{pool}' returned no series")
                return None

            timestamp, value = utilization
            return LoadSample(
                timestamp=timestamp,
                utilization=value,
                pending_work_units=pending[1] if pending is not None else 0,
            )

        except Exception as e:
            logger.error(f"Error collecting sample for pool '{pool}': {e}")
            return None

    def get_ready_node_count(self, pool: str) -> Optional[int]:
        queries = self.queries.get(pool)
        try:
            if self.node_counter is not None:
                selector = queries.node_selector if queries else None
                return self.node_counter.count_ready_nodes(selector)
            if queries and queries.node_count:
                result = self._query_prometheus(queries.node_count)
                if result is not None and not math.isnan(result[1]):
                    return int(result[1])
        except Exception as e:
            logger.error(f"Error counting ready nodes for pool '{pool}': {e}")
        return None
