#!/usr/bin/env python3
"""
Executor that runs worker nodes as Docker containers (k3s agents)

Containers are labelled with their pool so the executor can find them again;
names carry a monotonically increasing suffix so they are never reused.
"""

import asyncio
import concurrent.futures
import logging
import time
from typing import Dict, List, Optional, Tuple

import docker
from docker.errors import DockerException, NotFound

from ..errors import ExecutorFailure
from ..models import Outcome, PartialSucceeded, ScaleDirection, ScaleIntent, Succeeded
from .base import ScaleExecutor

logger = logging.getLogger(__name__)

POOL_LABEL = "poolscaler.pool"


class DockerWorkerExecutor(ScaleExecutor):
    """Adds and removes worker containers concurrently"""

    name = "docker"

    def __init__(self, image: str, network: str, worker_prefix: str = "worker",
                 environment: Optional[Dict[str, str]] = None, command: Optional[str] = "agent",
                 privileged: bool = True, max_workers: int = 3, docker_client=None):
        """
        Initialize the executor

        Args:
            image: Worker image (e.g. a k3s agent image)
            network: Docker network workers join
            worker_prefix: Container name prefix
            environment: Environment passed to every worker (join URL, token)
            command: Container command
            privileged: Run workers privileged (required by k3s agents)
            max_workers: Concurrent Docker API operations
            docker_client: Pre-built Docker client
        """
        self.image = image
        self.network = network
        self.worker_prefix = worker_prefix
        self.environment = dict(environment or {})
        self.command = command
        self.privileged = privileged
        self.max_workers = max_workers
        self._docker_client = docker_client

        # Docker SDK calls block; keep them off the event loop
        self.thread_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="docker-scaling"
        )
        logger.info(f"DockerWorkerExecutor initialized with max_workers={max_workers}")

    @property
    def docker_client(self):
        if self._docker_client is None:
            self._docker_client = docker.from_env()
            self._docker_client.ping()
            logger.info("Docker client initialized")
        return self._docker_client

    def list_workers(self, pool: str) -> List:
        """Running worker containers for a pool, oldest first"""
        containers = self.docker_client.containers.list(filters={"label": f"{POOL_LABEL}={pool}"})
        return sorted(containers, key=lambda c: c.attrs.get("Created", ""))

    async def apply(self, pool: str, intent: ScaleIntent, current_size: int) -> Outcome:
        loop = asyncio.get_running_loop()
        try:
            existing = await loop.run_in_executor(self.thread_pool, self.list_workers, pool)
        except DockerException as e:
            raise ExecutorFailure(f"cannot list workers for pool '{pool}': {e}", pool=pool, cause=e)

        if intent.direction is ScaleDirection.UP:
            done, errors = await self._scale_up(pool, intent.magnitude, existing)
        else:
            done, errors = await self._scale_down(pool, intent.magnitude, existing)

        for error in errors:
            logger.error(f"Scale-{intent.direction.value} error: {error}")

        if done == 0:
            raise ExecutorFailure(
                f"no workers changed for pool '{pool}': {'; '.join(errors) or 'unknown error'}",
                pool=pool,
            )

        new_size = max(0, current_size + (done if intent.direction is ScaleDirection.UP else -done))
        if done < intent.magnitude:
            return PartialSucceeded(new_size=new_size)
        return Succeeded(new_size=new_size)

    async def _scale_up(self, pool: str, count: int, existing: List) -> Tuple[int, List[str]]:
        logger.info(f"Starting concurrent scale-up of {count} workers for pool '{pool}'")
        start_time = time.time()
        loop = asyncio.get_running_loop()
        first_number = self._next_number(pool, existing)
        semaphore = asyncio.Semaphore(self.max_workers)

        async def _create_single_worker(number: int) -> Optional[str]:
            async with semaphore:
                name = f"{self.worker_prefix}-{pool}-{number}"
                try:
                    await loop.run_in_executor(self.thread_pool, self._create_worker_sync, pool, name)
                    logger.info(f"Successfully created container: {name}")
                    return None
                except DockerException as e:
                    return f"Error creating {name}: {e}"

        results = await asyncio.gather(*[_create_single_worker(first_number + i) for i in range(count)])
        errors = [r for r in results if r]
        done = count - len(errors)
        logger.info(f"Concurrent scale-up completed in {time.time() - start_time:.2f}s: "
                    f"{done} successful, {len(errors)} errors")
        return done, errors

    async def _scale_down(self, pool: str, count: int, existing: List) -> Tuple[int, List[str]]:
        logger.info(f"Starting concurrent scale-down of {count} workers for pool '{pool}'")
        start_time = time.time()
        loop = asyncio.get_running_loop()
        # Newest workers go first
        victims = list(reversed(existing))[:count]
        errors = []
        if len(victims) < count:
            errors.append(f"only {len(victims)} worker containers found, {count} requested")

        semaphore = asyncio.Semaphore(self.max_workers)

        async def _remove_single_worker(container) -> Optional[str]:
            async with semaphore:
                try:
                    await loop.run_in_executor(self.thread_pool, self._remove_worker_sync, container)
                    logger.info(f"Successfully removed container: {container.name}")
                    return None
                except DockerException as e:
                    return f"Error removing {container.name}: {e}"

        results = await asyncio.gather(*[_remove_single_worker(c) for c in victims])
        removal_errors = [r for r in results if r]
        errors.extend(removal_errors)
        done = len(victims) - len(removal_errors)
        logger.info(f"Concurrent scale-down completed in {time.time() - start_time:.2f}s: "
                    f"{done} successful, {len(errors)} errors")
        return done, errors

    def _next_number(self, pool: str, existing: List) -> int:
        prefix = f"{self.worker_prefix}-{pool}-"
        numbers = [
            int(c.name[len(prefix):])
            for c in existing
            if c.name.startswith(prefix) and c.name[len(prefix):].isdigit()
        ]
        return max(numbers, default=0) + 1

    def _create_worker_sync(self, pool: str, name: str):
        """Synchronous worker creation (runs in thread pool)"""
        environment = dict(self.environment)
        environment.setdefault("K3S_NODE_NAME", name)
        return self.docker_client.containers.run(
            image=self.image,
            name=name,
            hostname=name,
            detach=True,
            privileged=self.privileged,
            environment=environment,
            network=self.network,
            restart_policy={"Name": "always"},
            labels={POOL_LABEL: pool},
            command=self.command,
        )

    def _remove_worker_sync(self, container) -> None:
        """Synchronous container removal (runs in thread pool)"""
        try:
            container.remove(force=True)
        except NotFound:
            logger.warning(f"Container {container.name} already gone, treating as removed")

    def close(self) -> None:
        self.thread_pool.shutdown(wait=False)
        if self._docker_client is not None:
            self._docker_client.close()
