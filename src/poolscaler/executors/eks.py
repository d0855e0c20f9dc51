#!/usr/bin/env python3
"""
Executor for EKS managed node groups

Sets the node group's desiredSize through the EKS API and waits for the
resulting update to settle.
"""

import logging
import threading
import time
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ExecutorFailure
from ..models import Outcome, ScaleIntent, Succeeded
from .base import BlockingScaleExecutor

logger = logging.getLogger(__name__)

TERMINAL_UPDATE_STATES = {"Successful", "Failed", "Cancelled"}


class EksNodegroupExecutor(BlockingScaleExecutor):
    """Scales EKS managed node groups via update_nodegroup_config"""

    name = "eks"

    def __init__(self, cluster_name: str, nodegroups: Optional[Dict[str, str]] = None,
                 region: Optional[str] = None, poll_interval: float = 15.0,
                 poll_timeout: float = 540.0, eks_client=None, max_workers: int = 3):
        """
        Initialize the executor

        Args:
            cluster_name: EKS cluster the node groups belong to
            nodegroups: Pool name -> node group name (defaults to the pool name)
            region: AWS region for the client
            poll_interval: Seconds between describe_update calls
            poll_timeout: Give up waiting for the update after this many seconds
            eks_client: Pre-built boto3 EKS client
            max_workers: Concurrent node group updates
        """
        super().__init__(max_workers=max_workers)
        self.cluster_name = cluster_name
        self.nodegroups = dict(nodegroups or {})
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.eks = eks_client or boto3.session.Session(region_name=region).client("eks")
        logger.info(f"EKS executor initialized for cluster '{cluster_name}'")

    def nodegroup_for(self, pool: str) -> str:
        return self.nodegroups.get(pool, pool)

    def apply_sync(self, pool: str, intent: ScaleIntent, current_size: int,
                   cancelled: Optional[threading.Event] = None) -> Outcome:
        nodegroup = self.nodegroup_for(pool)
        target = intent.target_size
        if target is None:
            target = max(0, current_size + intent.signed_delta)

        logger.info(f"Setting desiredSize of node group '{nodegroup}' to {target} (was {current_size})")
        try:
            response = self.eks.update_nodegroup_config(
                clusterName=self.cluster_name,
                nodegroupName=nodegroup,
                scalingConfig={"desiredSize": target},
            )
        except (ClientError, BotoCoreError) as e:
            raise ExecutorFailure(f"update_nodegroup_config rejected for '{nodegroup}': {e}", pool=pool, cause=e)

        update_id = response["update"]["id"]
        status = self._wait_for_update(pool, nodegroup, update_id, cancelled or threading.Event())
        if status["status"] != "Successful":
            errors = "; ".join(
                f"{err.get('errorCode')}: {err.get('errorMessage')}" for err in status.get("errors", [])
            )
            raise ExecutorFailure(
                f"node group update {update_id} ended {status['status']}" + (f" ({errors})" if errors else ""),
                pool=pool,
            )
        return Succeeded(new_size=target)

    def _wait_for_update(self, pool: str, nodegroup: str, update_id: str,
                         cancelled: threading.Event) -> Dict:
        deadline = time.monotonic() + self.poll_timeout
        while True:
            try:
                update = self.eks.describe_update(
                    name=self.cluster_name,
                    nodegroupName=nodegroup,
                    updateId=update_id,
                )["update"]
            except (ClientError, BotoCoreError) as e:
                raise ExecutorFailure(f"describe_update failed for '{nodegroup}': {e}", pool=pool, cause=e)

            if update["status"] in TERMINAL_UPDATE_STATES:
                return update
            if time.monotonic() >= deadline:
                raise ExecutorFailure(
                    f"node group update {update_id} still {update['status']} after {self.poll_timeout}s",
                    pool=pool,
                )
            logger.debug(f"Node group '{nodegroup}' update {update_id}: {update['status']}")
            if cancelled.wait(self.poll_interval):
                raise ExecutorFailure(
                    f"stopped waiting for node group update {update_id} ({update['status']})",
                    pool=pool,
                )
