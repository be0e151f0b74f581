"""
Cluster initialization and certificate trust for single nodes.

ClusterBootstrapper turns the primary node into a one-node cluster:

    UNINITIALIZED --initialize()--> INITIALIZED

While init is in flight the orchestrator publishes the cluster as INITIALIZING.

The pool check is safe to repeat; initialize() is not, so ensure_initialized()
only submits cluster init after the pool check answered 404.

CertificateTrustBootstrapper makes a node load the cluster's custom root CA
and reload its certificate. Both calls go to the insecure endpoint without
credentials, since the secure endpoint cannot be trusted yet. The primary
only does this before cluster init; an initialized pool already trusts the CA.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from operator_couchbase.client import ManagementApiClient
from operator_couchbase.topology import ClusterSettings, ServerNode

logger = logging.getLogger(__name__)


class ClusterInitState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"


@dataclass
class ClusterBootstrapper:
    """
    Idempotent cluster init on the primary node.

    Attributes:
        client: Management API client for the cluster
    """

    client: ManagementApiClient

    async def is_initialized(self, node: ServerNode) -> bool:
        """
        Check whether the node already has a cluster pool.

        Returns:
            True if GET /pools/default answered 200, False on 404.

        Raises:
            ManagementApiError: On any other status.
        """
        return await self.client.pool_exists(node)

    async def state(self, node: ServerNode) -> ClusterInitState:
        if await self.is_initialized(node):
            return ClusterInitState.INITIALIZED
        return ClusterInitState.UNINITIALIZED

    async def initialize(self, node: ServerNode, settings: ClusterSettings) -> None:
        """
        Submit cluster init. Only valid while the node is uninitialized.

        Args:
            node: The primary node
            settings: Edition, quotas and index storage mode
        """
        logger.info(
            f"Initializing cluster '{self.client.topology.cluster_name}' on {node.name} "
            f"({settings.edition.value} edition)"
        )
        await self.client.initialize_cluster(node, settings)

    async def ensure_initialized(
        self,
        node: ServerNode,
        prepare: Callable[[ServerNode], Awaitable[object]] | None = None,
    ) -> bool:
        """
        Initialize the cluster on the node unless it already is.

        Cluster settings are read here, once, through the topology's
        late-bound settings factory.

        Args:
            node: The primary node
            prepare: Awaited with the node after the pool check and before
                cluster init, only when init is needed

        Returns:
            True if cluster init was submitted, False if it was already done.
        """
        if await self.state(node) is ClusterInitState.INITIALIZED:
            logger.info(f"Cluster already initialized on {node.name}")
            return False

        if prepare is not None:
            await prepare(node)
        await self.initialize(node, self.client.topology.settings())
        return True


@dataclass
class CertificateTrustBootstrapper:
    """
    Loads the cluster's custom CA onto a node.

    Attributes:
        client: Management API client for the cluster
    """

    client: ManagementApiClient

    @property
    def enabled(self) -> bool:
        return self.client.topology.uses_tls

    async def load_and_trust(self, node: ServerNode) -> bool:
        """
        Load trusted CAs, then reload the node certificate.

        Does nothing when the cluster has no certificate authority.

        Returns:
            True if the certificate calls were made.
        """
        if not self.enabled:
            return False

        logger.info(f"Loading node {node.name} certificates")
        await self.client.load_trusted_cas(node)
        await self.client.reload_certificate(node)
        return True
