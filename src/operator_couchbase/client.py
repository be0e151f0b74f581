"""
Management REST API client for cluster nodes.

This module provides ManagementApiClient, the single path through which the
orchestrator talks to a node's management port. It receives an injected
httpx.AsyncClient (configured with TLS verification for the cluster's CA, if
any) and resolves each node's base URL from the topology.

Every request:
- targets the secure endpoint when a CA is configured, except certificate
  bootstrap and pool checks which use the insecure one
- carries HTTP Basic credentials unless the call is explicitly unauthenticated
- is retried on transient failures per RetryPolicy (60 attempts, 1s apart)

A 404 is an expected answer for the pool check and for bucket lookups; any
other non-2xx response raises ManagementApiError with the response body.

Management API documentation:
- https://docs.couchbase.com/server/current/rest-api/rest-intro.html
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from operator_couchbase.exceptions import ManagementApiError
from operator_couchbase.retry import RetryPolicy
from operator_couchbase.topology import (
    BucketSettings,
    ClusterSettings,
    ClusterTopology,
    Edition,
    ServerNode,
    Services,
    services_to_wire,
)
from operator_couchbase.types import (
    Bucket,
    ClusterTask,
    NodeServicesEntry,
    NodeServicesResponse,
    Pool,
    RebalanceStatus,
    SampleBucketResponse,
    ScopesResponse,
)

logger = logging.getLogger(__name__)


def raise_on_failure(response: httpx.Response) -> None:
    """
    Raise ManagementApiError for any non-2xx response.

    Args:
        response: Response to check

    Raises:
        ManagementApiError: With the body text, or the status code when empty
    """
    if not response.is_success:
        raise ManagementApiError.from_response(response)


@dataclass
class ManagementApiClient:
    """
    Authenticated, retrying client for one cluster's management API.

    Attributes:
        topology: Cluster declaration; provides node URLs and credentials
        http: httpx.AsyncClient used for every request
        retry: Retry policy for transient failures

    Example:
        async with httpx.AsyncClient(timeout=10.0) as http:
            client = ManagementApiClient(topology=topology, http=http)
            if not await client.pool_exists(topology.primary):
                await client.initialize_cluster(topology.primary, topology.settings())
    """

    topology: ClusterTopology
    http: httpx.AsyncClient
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    _auth: httpx.BasicAuth | None = field(default=None, init=False, repr=False)

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    @property
    def auth(self) -> httpx.BasicAuth:
        """Basic credentials, built on first use and reused for every call."""
        if self._auth is None:
            self._auth = self.topology.credentials.basic_auth()
        return self._auth

    async def send_request(
        self,
        node: ServerNode,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        json: Any = None,
        authenticated: bool = True,
        auto_retry: bool = True,
        prefer_insecure: bool = False,
    ) -> httpx.Response:
        """
        Send one management request, retrying transient failures.

        Args:
            node: Node whose management endpoint receives the request
            method: HTTP method
            path: Absolute API path, e.g. "/pools/default"
            data: Form fields, sent url-encoded
            json: JSON body
            authenticated: Attach Basic credentials
            auto_retry: Apply the retry policy
            prefer_insecure: Use the plain HTTP endpoint even if a CA is configured

        Returns:
            The response. Non-retryable error statuses are returned as-is so
            callers can treat some of them (404) as signals.

        Raises:
            ManagementApiError: When retries are exhausted on a transient
                status or transport error
        """
        url = self.topology.management_url(node, prefer_insecure=prefer_insecure) + path
        auth = self.auth if authenticated else None

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.http.request(
                    method, url, data=data, json=json, auth=auth
                )
            except httpx.TransportError as e:
                if auto_retry and self.retry.should_retry(attempt):
                    logger.debug(
                        f"{method} {url} attempt {attempt} failed: {e!r}; retrying"
                    )
                    await self.retry.wait()
                    continue
                raise ManagementApiError(
                    f"{method} {url} failed after {attempt} attempt(s): {e}"
                ) from e

            if auto_retry and self.retry.is_retryable_status(response.status_code):
                if self.retry.should_retry(attempt):
                    logger.debug(
                        f"{method} {url} attempt {attempt} returned "
                        f"{response.status_code}; retrying"
                    )
                    await self.retry.wait()
                    continue
                raise ManagementApiError.from_response(response)

            return response

    # -------------------------------------------------------------------------
    # Cluster initialization
    # -------------------------------------------------------------------------

    async def pool_exists(self, node: ServerNode) -> bool:
        """
        Check whether the node already belongs to an initialized cluster.

        Calls GET /pools/default on the insecure endpoint, which answers
        before certificates are configured.

        Returns:
            True on 200, False on 404.

        Raises:
            ManagementApiError: On any other status.
        """
        response = await self.send_request(
            node, "GET", "/pools/default", prefer_insecure=True
        )
        if response.status_code == 200:
            return True
        if response.status_code != 404:
            raise_on_failure(response)
        return False

    async def initialize_cluster(
        self, node: ServerNode, settings: ClusterSettings
    ) -> None:
        """
        Initialize a one-node cluster on the given node.

        Calls POST /clusterInit. Not idempotent: only call after
        pool_exists() returned False.

        Args:
            node: The primary node
            settings: Edition, memory quotas and index storage mode

        Raises:
            ManagementApiError: If the cluster rejects the request.
        """
        credentials = self.topology.credentials
        quotas = settings.memory_quotas
        form = {
            "username": credentials.username,
            "password": credentials.password,
            "clusterName": self.topology.cluster_name,
            "hostname": node.hostname,
            "memoryQuota": str(quotas.data),
            "queryMemoryQuota": str(quotas.query),
            "indexMemoryQuota": str(quotas.index),
            "ftsMemoryQuota": str(quotas.search),
            "indexerStorageMode": settings.resolved_index_storage_mode.value,
            "services": services_to_wire(node.services),
            "port": "SAME",
        }
        if settings.edition is Edition.ENTERPRISE:
            form["cbasMemoryQuota"] = str(quotas.analytics)
            form["eventingMemoryQuota"] = str(quotas.eventing)
            form["nodeEncryption"] = "on"

        response = await self.send_request(
            node, "POST", "/clusterInit", data=form, authenticated=False
        )
        raise_on_failure(response)

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def get_cluster_nodes(self, node: ServerNode) -> Pool:
        """
        List the nodes currently in the cluster.

        Calls GET /pools/nodes.

        Returns:
            Pool whose node hostnames look like "db-1.dev.internal:8091".
        """
        response = await self.send_request(node, "GET", "/pools/nodes")
        raise_on_failure(response)
        return Pool.model_validate(response.json())

    async def add_node(
        self, primary: ServerNode, hostname: str, services: Services
    ) -> None:
        """
        Add a node to the cluster through the primary.

        Calls POST /controller/addNode. The node is not active until the
        next rebalance.

        Args:
            primary: Node that receives the request
            hostname: Internal hostname of the joining node
            services: Services to enable on the joining node
        """
        credentials = self.topology.credentials
        form = {
            "user": credentials.username,
            "password": credentials.password,
            "hostname": hostname,
            "services": services_to_wire(services),
        }
        response = await self.send_request(
            primary, "POST", "/controller/addNode", data=form
        )
        raise_on_failure(response)

    async def get_node_services(self, node: ServerNode) -> NodeServicesEntry:
        """
        Return the service port map of the node that answers.

        Calls GET /pools/default/nodeServices and picks the entry flagged
        thisNode.

        Raises:
            ManagementApiError: If no entry is flagged as this node.
        """
        response = await self.send_request(node, "GET", "/pools/default/nodeServices")
        raise_on_failure(response)
        entry = NodeServicesResponse.model_validate(response.json()).this_node()
        if entry is None:
            raise ManagementApiError(
                f"Node '{node.name}' did not report itself in nodeServices"
            )
        return entry

    async def setup_alternate_addresses(
        self, node: ServerNode, hostname: str, ports: dict[str, int]
    ) -> None:
        """
        Register the node's externally reachable address.

        Calls PUT /node/controller/setupAlternateAddresses/external.

        Args:
            node: Node to configure
            hostname: External hostname
            ports: Service port key (mgmt, kv, ...) -> published port
        """
        form = {"hostname": hostname}
        form.update({key: str(port) for key, port in ports.items()})
        response = await self.send_request(
            node, "PUT", "/node/controller/setupAlternateAddresses/external", data=form
        )
        raise_on_failure(response)

    # -------------------------------------------------------------------------
    # Certificates
    # -------------------------------------------------------------------------

    async def load_trusted_cas(self, node: ServerNode) -> None:
        """POST /node/controller/loadTrustedCAs on the insecure endpoint, unauthenticated."""
        response = await self.send_request(
            node,
            "POST",
            "/node/controller/loadTrustedCAs",
            authenticated=False,
            prefer_insecure=True,
        )
        raise_on_failure(response)

    async def reload_certificate(self, node: ServerNode) -> None:
        """POST /node/controller/reloadCertificate on the insecure endpoint, unauthenticated."""
        response = await self.send_request(
            node,
            "POST",
            "/node/controller/reloadCertificate",
            authenticated=False,
            prefer_insecure=True,
        )
        raise_on_failure(response)

    # -------------------------------------------------------------------------
    # Rebalance
    # -------------------------------------------------------------------------

    async def rebalance(self, primary: ServerNode, known_nodes: list[ServerNode]) -> None:
        """
        Start a rebalance across the given nodes.

        Calls POST /controller/rebalance with knownNodes=ns_1@host,...

        Args:
            primary: Node that receives the request
            known_nodes: Every node in the cluster
        """
        form = {"knownNodes": ",".join(node.otp_name for node in known_nodes)}
        response = await self.send_request(
            primary, "POST", "/controller/rebalance", data=form
        )
        raise_on_failure(response)

    async def get_rebalance_progress(self, node: ServerNode) -> RebalanceStatus:
        response = await self.send_request(
            node, "GET", "/pools/default/rebalanceProgress"
        )
        raise_on_failure(response)
        return RebalanceStatus.model_validate(response.json())

    # -------------------------------------------------------------------------
    # Buckets
    # -------------------------------------------------------------------------

    async def get_bucket(self, node: ServerNode, bucket_name: str) -> Bucket | None:
        """
        Look up a bucket by name.

        Calls GET /pools/default/buckets/{name}.

        Returns:
            The bucket, or None if the cluster answered 404.
        """
        response = await self.send_request(
            node, "GET", f"/pools/default/buckets/{bucket_name}"
        )
        if response.status_code == 404:
            return None
        raise_on_failure(response)
        return Bucket.model_validate(response.json())

    async def create_bucket(
        self, node: ServerNode, bucket_name: str, settings: BucketSettings
    ) -> None:
        """
        Create an empty bucket.

        Calls POST /pools/default/buckets. Unset options are left out of the
        form so cluster defaults apply; ramQuota defaults to 100 MB.
        """
        response = await self.send_request(
            node, "POST", "/pools/default/buckets", data=settings.to_form(bucket_name)
        )
        raise_on_failure(response)

    async def create_sample_bucket(
        self, node: ServerNode, bucket_name: str
    ) -> SampleBucketResponse:
        """
        Install a sample dataset bucket.

        Calls POST /sampleBuckets/install with a JSON array holding the name.

        Returns:
            Response whose task_id identifies the load task, if one was started.
        """
        response = await self.send_request(
            node, "POST", "/sampleBuckets/install", json=[bucket_name]
        )
        raise_on_failure(response)
        return SampleBucketResponse.model_validate(response.json())

    async def flush_bucket(self, node: ServerNode, bucket_name: str) -> None:
        response = await self.send_request(
            node, "POST", f"/pools/default/buckets/{bucket_name}/controller/doFlush"
        )
        raise_on_failure(response)

    async def get_scopes(self, node: ServerNode, bucket_name: str) -> ScopesResponse:
        response = await self.send_request(
            node, "GET", f"/pools/default/buckets/{bucket_name}/scopes"
        )
        raise_on_failure(response)
        return ScopesResponse.model_validate(response.json())

    async def create_scope(
        self, node: ServerNode, bucket_name: str, scope_name: str
    ) -> None:
        response = await self.send_request(
            node,
            "POST",
            f"/pools/default/buckets/{bucket_name}/scopes",
            data={"name": scope_name},
        )
        raise_on_failure(response)

    async def create_collection(
        self,
        node: ServerNode,
        bucket_name: str,
        scope_name: str,
        collection_name: str,
    ) -> None:
        response = await self.send_request(
            node,
            "POST",
            f"/pools/default/buckets/{bucket_name}/scopes/{scope_name}/collections",
            data={"name": collection_name},
        )
        raise_on_failure(response)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    async def get_cluster_tasks(self, node: ServerNode) -> list[ClusterTask]:
        """
        List running cluster tasks.

        Calls GET /pools/default/tasks. Completed tasks are simply absent.
        """
        response = await self.send_request(node, "GET", "/pools/default/tasks")
        raise_on_failure(response)
        return [ClusterTask.model_validate(item) for item in response.json() or []]
