"""
Factory functions wiring the orchestrator's explicit dependencies.

Used by the CLI to build a ready ClusterOrchestrator from a topology and
OperatorSettings without the caller assembling clients by hand.
"""

import httpx

from operator_couchbase.client import ManagementApiClient
from operator_couchbase.config import OperatorSettings
from operator_couchbase.docker.nodes import DockerNodeController
from operator_couchbase.orchestrator import ClusterOrchestrator
from operator_couchbase.protocols import NodeControllerProtocol
from operator_couchbase.retry import RetryPolicy
from operator_couchbase.state import ResourceStateStore
from operator_couchbase.topology import ClusterTopology


def create_http_client(topology: ClusterTopology, timeout: float = 10.0) -> httpx.AsyncClient:
    """
    Create the httpx client for a cluster's management API.

    TLS verification follows the cluster's certificate authority: verified
    against the CA when trusted, disabled when the CA is not trusted, and
    the system store when there is no CA.
    """
    verify = True
    if topology.certificate_authority is not None:
        verify = topology.certificate_authority.ssl_context()
    return httpx.AsyncClient(timeout=timeout, verify=verify)


def create_orchestrator(
    topology: ClusterTopology,
    settings: OperatorSettings | None = None,
    http: httpx.AsyncClient | None = None,
    states: ResourceStateStore | None = None,
    nodes: NodeControllerProtocol | None = None,
) -> ClusterOrchestrator:
    """
    Create a ClusterOrchestrator with its management client and node controller.

    Args:
        topology: Cluster declaration
        settings: Operator settings; defaults read from the environment
        http: Optional pre-configured httpx client. If None, one is created
            with the configured timeout and TLS verification.
        states: Optional shared state store
        nodes: Optional node controller. If None, containers are controlled
            through Docker.

    Returns:
        Orchestrator with every resource registered in NOT_STARTED.

    Example:
        orchestrator = create_orchestrator(load_topology(Path("topology.json")))
        orchestrator.start()
    """
    settings = settings or OperatorSettings()
    if http is None:
        http = create_http_client(topology, timeout=settings.request_timeout)
    if states is None:
        states = ResourceStateStore()
    if nodes is None:
        nodes = DockerNodeController(states, poll_interval=settings.docker_poll_interval)

    client = ManagementApiClient(
        topology=topology,
        http=http,
        retry=RetryPolicy(
            max_attempts=settings.retry_attempts,
            delay_seconds=settings.retry_delay,
        ),
    )
    return ClusterOrchestrator(topology, client, states=states, nodes=nodes)
