"""
Joining additional nodes to an initialized cluster.

NodeJoinCoordinator fans out one join per non-primary node and waits for all
of them. Each join runs, in order:

1. wait for the node's resource to report RUNNING
2. skip add-node if "{hostname}:8091" is already a cluster member
3. certificate trust (when a CA is configured), then add-node on the primary
4. alternate addresses, whether or not the node was just added

A failing join is logged and reported in its JoinResult; sibling joins keep
going. Whether a rebalance is needed follows from the `added` flags.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from operator_couchbase.bootstrap import CertificateTrustBootstrapper
from operator_couchbase.client import ManagementApiClient
from operator_couchbase.state import ResourceStateStore
from operator_couchbase.topology import ENDPOINT_SERVICE_KEYS, ServerNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinResult:
    """
    Outcome of one node join.

    Attributes:
        node: The node that was joined
        added: True if add-node was issued for it in this pass
        error: The failure, if the join did not complete
    """

    node: ServerNode
    added: bool = False
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


def alternate_address_ports(node: ServerNode) -> dict[str, int]:
    """Map a node's published endpoints to alternate-address port keys."""
    return {
        ENDPOINT_SERVICE_KEYS[name]: port
        for name, port in node.endpoints.items()
        if name in ENDPOINT_SERVICE_KEYS
    }


@dataclass
class NodeJoinCoordinator:
    """
    Concurrent node joins against the primary.

    Attributes:
        client: Management API client for the cluster
        certificates: Certificate trust bootstrapper, a no-op without a CA
        states: Resource state store used to wait for nodes to be running;
            when None, nodes are assumed reachable
    """

    client: ManagementApiClient
    certificates: CertificateTrustBootstrapper
    states: ResourceStateStore | None = None

    async def join_all(
        self,
        primary: ServerNode,
        nodes: Iterable[ServerNode],
        existing_nodes: Iterable[str],
    ) -> list[JoinResult]:
        """
        Join every non-primary node concurrently.

        Args:
            primary: Node that receives add-node calls
            nodes: Declared nodes; the primary is skipped if present
            existing_nodes: "host:port" entries from GET /pools/nodes

        Returns:
            One JoinResult per joined node, in declaration order.

        Raises:
            asyncio.CancelledError: Cancellation is never captured per node.
        """
        existing = set(existing_nodes)
        targets = [n for n in nodes if n.name != primary.name]
        if not targets:
            return []

        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self._join_isolated(primary, node, existing))
                for node in targets
            ]
        return [task.result() for task in tasks]

    async def _join_isolated(
        self, primary: ServerNode, node: ServerNode, existing: set[str]
    ) -> JoinResult:
        try:
            added = await self.join(primary, node, existing)
        except Exception as e:
            logger.error(f"Failed to join node {node.name}: {e}", exc_info=e)
            return JoinResult(node=node, error=e)
        return JoinResult(node=node, added=added)

    async def join(
        self, primary: ServerNode, node: ServerNode, existing: set[str]
    ) -> bool:
        """
        Join a single node.

        Returns:
            True if add-node was issued, False if the node was already a member.
        """
        if self.states is not None:
            logger.info(f"Waiting for {node.name} to be running")
            await self.states.wait_until_running(node.name)

        added = False
        if node.cluster_address not in existing:
            await self.certificates.load_and_trust(node)
            logger.info(f"Adding node {node.name} to cluster '{self.client.topology.cluster_name}'")
            await self.client.add_node(primary, node.hostname, node.services)
            added = True
        else:
            logger.info(f"Node {node.name} is already a cluster member")

        await self.set_alternate_addresses(node)
        return added

    async def set_alternate_addresses(self, node: ServerNode) -> None:
        """
        Register the node's external hostname and every mapped published port.

        Endpoints whose names have no alternate-address key are ignored.
        """
        ports = alternate_address_ports(node)
        logger.info(f"Setting node {node.name} alternate addresses")
        await self.client.setup_alternate_addresses(node, node.external_hostname, ports)
