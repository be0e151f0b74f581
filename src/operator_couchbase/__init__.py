"""
operator_couchbase - bootstrap multi-node Couchbase clusters.

Drives node containers through initialization, certificate trust, joins,
rebalance and bucket provisioning over the cluster management REST API,
publishing every resource's lifecycle state as it goes.
"""

# Topology
from operator_couchbase.topology import (
    BucketDefinition,
    BucketSettings,
    CertificateAuthority,
    ClusterSettings,
    ClusterTopology,
    Edition,
    MemoryQuotas,
    SampleBucketDefinition,
    ScopeDefinition,
    ServerGroup,
    ServerNode,
    Services,
)

# Management API
from operator_couchbase.client import ManagementApiClient
from operator_couchbase.exceptions import (
    ManagementApiError,
    ResourceFailedError,
    TopologyValidationError,
)
from operator_couchbase.retry import RetryPolicy

# Lifecycle components
from operator_couchbase.bootstrap import CertificateTrustBootstrapper, ClusterBootstrapper
from operator_couchbase.buckets import BucketProvisioner
from operator_couchbase.join import JoinResult, NodeJoinCoordinator
from operator_couchbase.orchestrator import ClusterOrchestrator
from operator_couchbase.rebalance import RebalanceController

# State
from operator_couchbase.state import (
    ResourceKind,
    ResourceSnapshot,
    ResourceState,
    ResourceStateStore,
)

# Wiring
from operator_couchbase.config import OperatorSettings, load_topology
from operator_couchbase.factory import create_http_client, create_orchestrator

__all__ = [
    # Topology
    "BucketDefinition",
    "BucketSettings",
    "CertificateAuthority",
    "ClusterSettings",
    "ClusterTopology",
    "Edition",
    "MemoryQuotas",
    "SampleBucketDefinition",
    "ScopeDefinition",
    "ServerGroup",
    "ServerNode",
    "Services",
    # Management API
    "ManagementApiClient",
    "ManagementApiError",
    "ResourceFailedError",
    "TopologyValidationError",
    "RetryPolicy",
    # Lifecycle components
    "CertificateTrustBootstrapper",
    "ClusterBootstrapper",
    "BucketProvisioner",
    "JoinResult",
    "NodeJoinCoordinator",
    "ClusterOrchestrator",
    "RebalanceController",
    # State
    "ResourceKind",
    "ResourceSnapshot",
    "ResourceState",
    "ResourceStateStore",
    # Wiring
    "OperatorSettings",
    "load_topology",
    "create_http_client",
    "create_orchestrator",
]
