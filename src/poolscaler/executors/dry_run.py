#!/usr/bin/env python3
"""
Dry-run executor: reports success without touching the platform
"""

import logging

from ..models import Outcome, ScaleIntent, Succeeded
from .base import ScaleExecutor

logger = logging.getLogger(__name__)


class DryRunExecutor(ScaleExecutor):
    name = "dry-run"

    async def apply(self, pool: str, intent: ScaleIntent, current_size: int) -> Outcome:
        new_size = max(0, current_size + intent.signed_delta)
        logger.info(
            f"Dry-run mode: would scale pool '{pool}' {intent.direction.value} "
            f"by {intent.magnitude} ({current_size} -> {new_size}), reason: {intent.reason.value}"
        )
        return Succeeded(new_size=new_size)
