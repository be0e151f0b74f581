"""Trigger a cluster rebalance and poll it to completion."""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from operator_couchbase.client import ManagementApiClient
from operator_couchbase.topology import ServerNode

logger = logging.getLogger(__name__)


@dataclass
class RebalanceController:
    """
    Rebalance after node joins.

    Only call this when at least one join added a node; rebalancing an
    unchanged topology is skipped by the orchestrator.

    Attributes:
        client: Management API client for the cluster
        poll_interval: Seconds between progress polls (default 1.0)
    """

    client: ManagementApiClient
    poll_interval: float = 1.0

    async def trigger(self, primary: ServerNode, known_nodes: Iterable[ServerNode]) -> None:
        """
        Start a rebalance.

        Args:
            primary: Node that receives the request
            known_nodes: All cluster members
        """
        members = list(known_nodes)
        logger.info(
            f"Rebalancing cluster '{self.client.topology.cluster_name}' "
            f"across {len(members)} nodes"
        )
        await self.client.rebalance(primary, members)

    async def await_completion(self, primary: ServerNode) -> None:
        """
        Poll rebalance progress until the status is "none".

        Cancellation is observed at every sleep between polls.
        """
        while True:
            status = await self.client.get_rebalance_progress(primary)
            if status.is_complete:
                break
            logger.debug(f"Rebalance in progress: {status.status}")
            await asyncio.sleep(self.poll_interval)

        logger.info(f"Rebalance complete for cluster '{self.client.topology.cluster_name}'")

    async def rebalance(self, primary: ServerNode, known_nodes: Iterable[ServerNode]) -> None:
        await self.trigger(primary, known_nodes)
        await self.await_completion(primary)
