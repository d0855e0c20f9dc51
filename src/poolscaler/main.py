#!/usr/bin/env python3
"""
Pool Scaler - Main Entry Point
Keeps worker pools converged with load by running one reconcile loop per pool
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import threading
from typing import Dict, Optional

import redis.asyncio as aioredis
from prometheus_client import start_http_server

from .api import APIServer
from .config import Settings
from .core.clock import Clock, SystemClock
from .core.logging_config import setup_logging
from .core.metrics import KubernetesNodeCounter, MetricsSource, PrometheusMetricsSource, StaticMetricsSource
from .core.pool_loop import PoolReconcileLoop
from .core.reconciler import CapacityReconciler
from .database import MongoScalingHistory, RedisStateStore
from .errors import InvalidSpec
from .events import EventBus, RedisStreamHandler, SignalLogHandler, SignalMetricsHandler
from .events.event_metrics import ERRORS
from .executors import DryRunExecutor, ScaleExecutor
from .executors.docker_workers import DockerWorkerExecutor
from .executors.eks import EksNodegroupExecutor
from .models import ScaleIntent

logger = logging.getLogger(__name__)


def build_metrics_source(settings: Settings) -> MetricsSource:
    """Metrics source selected by RECONCILER_METRICS_SOURCE"""
    if settings.reconciler.metrics_source == "static":
        return StaticMetricsSource()

    node_counter = None
    if settings.kubernetes.enabled:
        node_counter = KubernetesNodeCounter(
            in_cluster=settings.kubernetes.in_cluster,
            kubeconfig_path=settings.kubernetes.kubeconfig_path,
        )
    return PrometheusMetricsSource(
        url=settings.prometheus.url,
        queries=settings.pool_queries(),
        timeout=settings.prometheus.query_timeout,
        node_counter=node_counter,
    )


def build_executor(settings: Settings) -> ScaleExecutor:
    """Executor selected by RECONCILER_EXECUTOR; dry-run wins over everything"""
    kind = settings.reconciler.executor
    if settings.reconciler.dry_run or kind == "dry_run":
        return DryRunExecutor()

    if kind == "eks":
        return EksNodegroupExecutor(
            cluster_name=settings.aws.cluster_name,
            nodegroups=settings.nodegroups(),
            region=settings.aws.region,
            poll_interval=settings.aws.poll_interval,
            poll_timeout=settings.aws.poll_timeout,
            max_workers=max(1, len(settings.pools)),
        )

    environment = {}
    if settings.docker.server_url:
        environment["K3S_URL"] = settings.docker.server_url
    if settings.docker.token:
        environment["K3S_TOKEN"] = settings.docker.token
    return DockerWorkerExecutor(
        image=settings.docker.image,
        network=settings.docker.network,
        worker_prefix=settings.docker.worker_prefix,
        environment=environment,
        max_workers=settings.docker.max_concurrent,
    )


def build_state_store(settings: Settings) -> Optional[RedisStateStore]:
    if not settings.redis.enabled:
        return None
    return RedisStateStore(
        host=settings.redis.host,
        port=settings.redis.port,
        db=settings.redis.db,
        password=settings.redis.password,
        key_prefix=settings.redis.key_prefix,
    )


def build_history(settings: Settings) -> Optional[MongoScalingHistory]:
    if not settings.mongodb.enabled:
        return None
    return MongoScalingHistory(settings.mongodb.url, settings.mongodb.database_name)


def build_event_bus(settings: Settings) -> EventBus:
    event_bus = EventBus()
    event_bus.subscribe(SignalLogHandler())
    event_bus.subscribe(SignalMetricsHandler())
    if settings.redis.enabled and settings.redis.event_stream:
        redis_client = aioredis.Redis(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            password=settings.redis.password,
            decode_responses=True,
        )
        event_bus.subscribe(RedisStreamHandler(redis_client, stream_name=settings.redis.event_stream))
    return event_bus


class ReconcilerService:
    """Main service that owns one reconcile loop per configured pool"""

    def __init__(self, settings: Settings, metrics_source: Optional[MetricsSource] = None,
                 executor: Optional[ScaleExecutor] = None, event_bus: Optional[EventBus] = None,
                 state_store: Optional[RedisStateStore] = None,
                 history: Optional[MongoScalingHistory] = None,
                 clock: Optional[Clock] = None):
        """
        Build the service

        Collaborators left as None are built from settings, except the
        state store and history which are only built when enabled.

        Raises:
            InvalidSpec: If any pool or the reconciler tuning is invalid
        """
        self.settings = settings
        specs = settings.pool_specs()
        config = settings.reconciler_config()

        self.clock = clock or SystemClock()
        self.metrics_source = metrics_source or build_metrics_source(settings)
        self.executor = executor or build_executor(settings)
        self.event_bus = event_bus or build_event_bus(settings)
        self.state_store = state_store
        self.history = history

        self.loops: Dict[str, PoolReconcileLoop] = {}
        for spec in specs:
            self.loops[spec.name] = PoolReconcileLoop(
                reconciler=CapacityReconciler(spec, config, self.clock),
                metrics_source=self.metrics_source,
                executor=self.executor,
                event_bus=self.event_bus,
                state_store=self.state_store,
                history=self.history,
                sync_observed_size=settings.reconciler.sync_observed_size,
            )

        self.event_loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown: Optional[asyncio.Event] = None
        logger.info(f"Reconciler service initialized with pools: {', '.join(self.loops)}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconcilerService":
        return cls(
            settings,
            state_store=build_state_store(settings),
            history=build_history(settings),
        )

    def is_running(self) -> bool:
        return any(loop.running for loop in self.loops.values())

    async def start(self) -> None:
        self.event_loop = asyncio.get_running_loop()
        for loop in self.loops.values():
            await loop.start()

    async def stop(self) -> None:
        for loop in self.loops.values():
            await loop.stop()

    async def run_tick(self, name: str) -> Optional[ScaleIntent]:
        """
        Run one tick of a pool on the loop that owns it

        The API serves from its own thread and event loop; ticks are handed
        over so a pool's lock and tasks stay on a single loop.
        """
        loop = self.loops[name]
        current = asyncio.get_running_loop()
        if self.event_loop is None or self.event_loop is current or self.event_loop.is_closed():
            return await loop.run_once()
        future = asyncio.run_coroutine_threadsafe(loop.run_once(), self.event_loop)
        return await asyncio.wrap_future(future)

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        if self._shutdown is not None:
            self._shutdown.set()

    async def serve(self) -> None:
        """Run every pool loop until a shutdown is requested"""
        self._shutdown = asyncio.Event()
        event_loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                event_loop.add_signal_handler(signum, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                logger.warning(f"Cannot install handler for signal {signum}")

        await self.start()
        logger.info(f"Reconciling {len(self.loops)} pool(s) every {self.settings.reconciler.tick_interval}s")
        await self._shutdown.wait()
        await self.stop()

    def cleanup(self) -> None:
        """Cleanup resources"""
        try:
            self.executor.close()
            if self.state_store is not None:
                self.state_store.close()
            if self.history is not None:
                self.history.close()
            logger.info("Cleanup completed")
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
            ERRORS.labels(type="cleanup").inc()


def main():
    """Entry point"""
    parser = argparse.ArgumentParser(description='Worker pool capacity reconciler')
    parser.add_argument(
        '--config',
        default=os.getenv('CONFIG_PATH', 'config/config.yaml'),
        help='Path to configuration file'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Run in dry-run mode (no actual scaling)'
    )
    args = parser.parse_args()

    try:
        settings = Settings.load_from_yaml_with_env_override(args.config)
        if args.dry_run:
            settings.reconciler.dry_run = True

        setup_logging(
            level=settings.logging.level,
            log_file=settings.logging.file,
            enable_colors=settings.logging.colors
        )
        if args.dry_run:
            logger.info("Dry-run mode enabled")

        service = ReconcilerService.from_settings(settings)
    except InvalidSpec as e:
        logger.critical(f"Invalid configuration, refusing to start: {e}")
        sys.exit(2)

    start_http_server(settings.api.metrics_port)
    logger.info(f"Prometheus metrics server started on :{settings.api.metrics_port}")

    if settings.api.enabled:
        api_server = APIServer(service, settings.api.model_dump())
        api_thread = threading.Thread(
            target=api_server.run,
            kwargs={'host': settings.api.host, 'port': settings.api.port},
            daemon=True
        )
        api_thread.start()
        logger.info(f"API server started on {settings.api.host}:{settings.api.port}")

    try:
        asyncio.run(service.serve())
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        service.cleanup()


if __name__ == "__main__":
    main()
