#!/usr/bin/env python3
"""
Executor interface and the timeout wrapper the pool loop calls it through
"""

import asyncio
import concurrent.futures
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Optional

from ..errors import ExecutorFailure
from ..models import Failed, Outcome, ScaleIntent

logger = logging.getLogger(__name__)


class ScaleExecutor(ABC):
    """Carries a ScaleIntent out against the underlying platform"""

    name = "executor"

    @abstractmethod
    async def apply(self, pool: str, intent: ScaleIntent, current_size: int) -> Outcome:
        """
        Apply an intent

        Args:
            pool: Pool identifier
            intent: Actionable intent produced by the reconciler
            current_size: Pool size the intent was computed against

        Returns:
            Succeeded or PartialSucceeded; failures are raised as ExecutorFailure
        """

    def close(self) -> None:
        """Release client resources"""


class BlockingScaleExecutor(ScaleExecutor):
    """
    Base for executors built on blocking SDKs.

    The blocking call runs in a dedicated thread pool so the event loop (and
    the other pools' loops) keep ticking while the platform works. Cancelling
    apply() sets the cancel event handed to apply_sync(), which must stop
    waiting once it is set so the worker thread is free for the next attempt.
    """

    def __init__(self, max_workers: int = 3):
        self.thread_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=f"{self.name}-scaling",
        )

    @abstractmethod
    def apply_sync(self, pool: str, intent: ScaleIntent, current_size: int,
                   cancelled: Optional[threading.Event] = None) -> Outcome:
        """Blocking implementation of apply()"""

    async def apply(self, pool: str, intent: ScaleIntent, current_size: int) -> Outcome:
        loop = asyncio.get_running_loop()
        cancelled = threading.Event()
        try:
            return await loop.run_in_executor(
                self.thread_pool, self.apply_sync, pool, intent, current_size, cancelled
            )
        except asyncio.CancelledError:
            cancelled.set()
            logger.warning(f"Executor '{self.name}' abandoned {intent.direction.value} for pool '{pool}'")
            raise

    def close(self) -> None:
        self.thread_pool.shutdown(wait=False)


async def execute_with_timeout(executor: ScaleExecutor, pool: str, intent: ScaleIntent,
                               current_size: int, timeout: Optional[float]) -> Outcome:
    """
    Run an executor and convert every way it can go wrong into a Failed outcome

    Args:
        executor: Executor to run
        pool: Pool identifier
        intent: Intent to apply
        current_size: Pool size the intent was computed against
        timeout: Seconds before the operation is abandoned

    Returns:
        The executor's outcome, or Failed on timeout or error
    """
    start_time = time.time()
    try:
        outcome = await asyncio.wait_for(executor.apply(pool, intent, current_size), timeout=timeout)
        logger.info(
            f"Executor '{executor.name}' finished {intent.direction.value} x{intent.magnitude} "
            f"for pool '{pool}' in {time.time() - start_time:.2f}s: {outcome.kind}"
        )
        return outcome
    except asyncio.TimeoutError:
        logger.error(f"Executor '{executor.name}' timed out after {timeout}s for pool '{pool}'")
        return Failed(error=f"timeout after {timeout}s")
    except ExecutorFailure as e:
        logger.error(f"Executor '{executor.name}' failed for pool '{pool}': {e}")
        return Failed(error=str(e))
    except Exception as e:
        logger.error(f"Executor '{executor.name}' raised unexpectedly for pool '{pool}': {e}", exc_info=True)
        return Failed(error=f"{type(e).__name__}: {e}")
