"""
Declarative cluster topology: nodes, server groups, buckets and settings.

A ClusterTopology is built once from configuration and is not mutated while
a bootstrap is running. Runtime state (running, failed, ...) never lives
here; it is published as snapshots through operator_couchbase.state.

Node naming follows the server-group convention:
- every group expands to `{group}-{i}` nodes with a 0-based index
- a node's internal hostname is `{name}.{network_domain}`
- the first node (declaration order) with the data service is the primary
"""

import ssl
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum, Flag

import httpx

from operator_couchbase.exceptions import TopologyValidationError

# Management port inside the container network. Join detection compares
# against "{hostname}:8091" as reported by GET /pools/nodes.
INTERNAL_MANAGEMENT_PORT = 8091
INTERNAL_SECURE_MANAGEMENT_PORT = 18091

DEFAULT_USERNAME = "Administrator"
DEFAULT_NETWORK_DOMAIN = "dev.internal"
DEFAULT_BUCKET_QUOTA_MB = 100
DEFAULT_SERVICE_QUOTA_MB = 1024


# =============================================================================
# Services
# =============================================================================


class Services(Flag):
    """Cluster services that can be enabled on a node."""

    DATA = 1
    QUERY = 2
    INDEX = 4
    SEARCH = 8
    ANALYTICS = 16
    EVENTING = 32
    BACKUP = 64


DEFAULT_SERVICES = Services.DATA | Services.QUERY | Services.INDEX

# Order matters: the management API expects this sequence.
SERVICE_WIRE_NAMES: list[tuple[Services, str]] = [
    (Services.DATA, "kv"),
    (Services.QUERY, "n1ql"),
    (Services.INDEX, "index"),
    (Services.SEARCH, "fts"),
    (Services.ANALYTICS, "cbas"),
    (Services.EVENTING, "eventing"),
    (Services.BACKUP, "backup"),
]


def services_to_wire(services: Services) -> str:
    """
    Render a service set as the comma-separated list the API accepts.

    Args:
        services: Enabled services

    Returns:
        String such as "kv,n1ql,index"
    """
    return ",".join(name for flag, name in SERVICE_WIRE_NAMES if flag in services)


def parse_services(names: list[str]) -> Services:
    """Build a service set from names like ["data", "query"] or ["kv", "n1ql"]."""
    aliases = {wire: flag for flag, wire in SERVICE_WIRE_NAMES}
    result = Services(0)
    for name in names:
        key = name.strip().lower()
        if key in aliases:
            result |= aliases[key]
        else:
            try:
                result |= Services[key.upper()]
            except KeyError:
                raise ValueError(f"Unknown service '{name}'") from None
    return result


# Endpoint name -> alternate-address port key for
# PUT /node/controller/setupAlternateAddresses/external
ENDPOINT_SERVICE_KEYS: dict[str, str] = {
    "management": "mgmt",
    "managements": "mgmtSSL",
    "data": "kv",
    "datas": "kvSSL",
    "view": "capi",
    "views": "capiSSL",
    "query": "n1ql",
    "querys": "n1qlSSL",
    "fts": "fts",
    "ftss": "ftsSSL",
    "analytic": "cbas",
    "analytics": "cbasSSL",
    "eventing": "eventingAdminPort",
    "eventings": "eventingSSL",
    "eventingdebug": "eventingDebug",
    "backup": "backupAPI",
    "backups": "backupAPIHTTPS",
}


# =============================================================================
# Settings
# =============================================================================


class Edition(str, Enum):
    ENTERPRISE = "enterprise"
    COMMUNITY = "community"


class IndexStorageMode(str, Enum):
    PLASMA = "plasma"
    MEMORY_OPTIMIZED = "memory_optimized"
    FORESTDB = "forestdb"


@dataclass
class MemoryQuotas:
    """Per-service memory quotas in megabytes."""

    data: int = DEFAULT_SERVICE_QUOTA_MB
    query: int = DEFAULT_SERVICE_QUOTA_MB
    index: int = DEFAULT_SERVICE_QUOTA_MB
    search: int = DEFAULT_SERVICE_QUOTA_MB
    analytics: int = DEFAULT_SERVICE_QUOTA_MB
    eventing: int = DEFAULT_SERVICE_QUOTA_MB


@dataclass
class ClusterSettings:
    """
    Cluster-wide settings applied at cluster init.

    Attributes:
        edition: Server edition; Community omits Enterprise-only init fields
        memory_quotas: Per-service quotas in MB
        index_storage_mode: Indexer storage; defaults by edition when None
        management_port: Static host port for the primary's management endpoint
        secure_management_port: Static host port for the primary's TLS endpoint
    """

    edition: Edition = Edition.ENTERPRISE
    memory_quotas: MemoryQuotas = field(default_factory=MemoryQuotas)
    index_storage_mode: IndexStorageMode | None = None
    management_port: int | None = None
    secure_management_port: int | None = None

    @property
    def resolved_index_storage_mode(self) -> IndexStorageMode:
        if self.index_storage_mode is not None:
            return self.index_storage_mode
        if self.edition is Edition.ENTERPRISE:
            return IndexStorageMode.PLASMA
        return IndexStorageMode.FORESTDB


# =============================================================================
# Buckets
# =============================================================================


class BucketType(str, Enum):
    COUCHBASE = "couchbase"
    EPHEMERAL = "ephemeral"
    MEMCACHED = "memcached"


class StorageBackend(str, Enum):
    COUCHSTORE = "couchstore"
    MAGMA = "magma"


class CompressionMode(str, Enum):
    OFF = "off"
    PASSIVE = "passive"
    ACTIVE = "active"


class ConflictResolutionType(str, Enum):
    SEQUENCE_NUMBER = "seqno"
    TIMESTAMP = "lww"
    CUSTOM = "custom"


class DurabilityLevel(str, Enum):
    NONE = "none"
    MAJORITY = "majority"
    MAJORITY_AND_PERSIST_TO_ACTIVE = "majorityAndPersistActive"
    PERSIST_TO_MAJORITY = "persistToMajority"


class EvictionPolicy(str, Enum):
    VALUE_ONLY = "valueOnly"
    FULL = "fullEviction"
    NO_EVICTION = "noEviction"
    NOT_RECENTLY_USED = "nruEviction"


@dataclass
class BucketSettings:
    """
    Creation options for a standard bucket.

    Every optional field left as None is omitted from the create request so
    the cluster's own default applies.
    """

    bucket_type: BucketType = BucketType.COUCHBASE
    memory_quota_mb: int | None = None
    replicas: int | None = None
    flush_enabled: bool | None = None
    storage_backend: StorageBackend | None = None
    compression_mode: CompressionMode | None = None
    conflict_resolution: ConflictResolutionType | None = None
    minimum_durability: DurabilityLevel | None = None
    eviction_policy: EvictionPolicy | None = None
    max_ttl_seconds: int | None = None

    def to_form(self, bucket_name: str) -> dict[str, str]:
        """Build the form body for POST /pools/default/buckets."""
        form = {
            "name": bucket_name,
            "bucketType": self.bucket_type.value,
            "ramQuota": str(self.memory_quota_mb or DEFAULT_BUCKET_QUOTA_MB),
        }
        if self.replicas is not None:
            form["replicaNumber"] = str(self.replicas)
        if self.flush_enabled is not None:
            form["flushEnabled"] = "1" if self.flush_enabled else "0"
        if self.storage_backend is not None:
            form["storageBackend"] = self.storage_backend.value
        if self.compression_mode is not None:
            form["compressionMode"] = self.compression_mode.value
        if self.conflict_resolution is not None:
            form["conflictResolutionType"] = self.conflict_resolution.value
        if self.minimum_durability is not None:
            form["durabilityMinLevel"] = self.minimum_durability.value
        if self.eviction_policy is not None:
            form["evictionPolicy"] = self.eviction_policy.value
        if self.max_ttl_seconds is not None:
            form["maxTTL"] = str(self.max_ttl_seconds)
        return form


@dataclass
class ScopeDefinition:
    name: str
    collections: list[str] = field(default_factory=list)


@dataclass
class BucketDefinition:
    """
    A standard bucket created empty.

    Attributes:
        name: Resource name, unique within the topology
        bucket_name: Name on the cluster; defaults to the resource name
        settings: Creation options
        scopes: Scopes and collections ensured after the bucket is healthy
    """

    name: str
    bucket_name: str | None = None
    settings: BucketSettings = field(default_factory=BucketSettings)
    scopes: list[ScopeDefinition] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.bucket_name:
            self.bucket_name = self.name


@dataclass
class SampleBucketDefinition:
    """A bucket installed from one of the cluster's bundled sample datasets."""

    name: str
    bucket_name: str | None = None

    def __post_init__(self) -> None:
        if not self.bucket_name:
            self.bucket_name = self.name


AnyBucket = BucketDefinition | SampleBucketDefinition


# =============================================================================
# Certificates and credentials
# =============================================================================


@dataclass
class CertificateAuthority:
    """
    Custom root CA the nodes' certificates are issued from.

    Attributes:
        certificate: PEM text of the root certificate
        chain: PEM texts of intermediate certificates
        trust_certificate: Verify node TLS against this CA (False disables verification)
    """

    certificate: str
    chain: list[str] = field(default_factory=list)
    trust_certificate: bool = True

    def bundle(self) -> str:
        return "\n".join([self.certificate, *self.chain])

    def ssl_context(self) -> ssl.SSLContext | bool:
        """Return the verify argument for httpx requests on secure endpoints."""
        if not self.trust_certificate:
            return False
        return ssl.create_default_context(cadata=self.bundle())


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)

    def basic_auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.username, self.password)


# =============================================================================
# Nodes and groups
# =============================================================================


@dataclass(frozen=True)
class ServerNode:
    """
    A single cluster node (one container).

    Attributes:
        name: Resource and container name, e.g. "db-0"
        hostname: Internal hostname other nodes use, e.g. "db-0.dev.internal"
        services: Enabled services
        group: Name of the server group the node belongs to
        is_initial: True for the primary node that receives cluster init
        external_hostname: Hostname clients outside the container network use
        endpoints: Endpoint name -> externally published port
    """

    name: str
    hostname: str
    services: Services
    group: str
    is_initial: bool = False
    external_hostname: str = "localhost"
    endpoints: Mapping[str, int] = field(default_factory=dict, hash=False)

    @property
    def cluster_address(self) -> str:
        """Address as listed by GET /pools/nodes, e.g. "db-1.dev.internal:8091"."""
        return f"{self.hostname}:{INTERNAL_MANAGEMENT_PORT}"

    @property
    def otp_name(self) -> str:
        """Internal node name used by rebalance, e.g. "ns_1@db-1.dev.internal"."""
        return f"ns_1@{self.hostname}"


@dataclass
class ServerGroup:
    """
    A set of identical nodes.

    Attributes:
        name: Group name; nodes are named "{name}-{i}"
        services: Services enabled on every node in the group
        replicas: Number of nodes
        external_hostname: Hostname for alternate addresses
        endpoints: Published ports per replica, index-aligned with the nodes
    """

    name: str
    services: Services = DEFAULT_SERVICES
    replicas: int = 1
    external_hostname: str = "localhost"
    endpoints: list[dict[str, int]] = field(default_factory=list)


# =============================================================================
# Cluster
# =============================================================================


@dataclass
class ClusterTopology:
    """
    Complete declaration of one cluster.

    Settings are late-bound: settings_factory is evaluated once, on first call
    to settings(), so it may depend on decisions made after construction.

    Example:
        topology = ClusterTopology(name="couchbase", password="password")
        topology.add_server_group(ServerGroup("db", replicas=3))
        topology.add_bucket(BucketDefinition("orders"))
        topology.primary.name  # "db-0"
    """

    name: str
    password: str = field(repr=False)
    username: str = DEFAULT_USERNAME
    cluster_name: str | None = None
    network_domain: str = DEFAULT_NETWORK_DOMAIN
    certificate_authority: CertificateAuthority | None = None
    settings_factory: Callable[[], ClusterSettings] = ClusterSettings
    server_groups: list[ServerGroup] = field(default_factory=list)
    buckets: list[AnyBucket] = field(default_factory=list)
    _nodes: list[ServerNode] = field(default_factory=list, init=False, repr=False)
    _settings: ClusterSettings | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.cluster_name:
            self.cluster_name = self.name
        self._rebuild_nodes()

    # -------------------------------------------------------------------------
    # Building
    # -------------------------------------------------------------------------

    def add_server_group(self, group: ServerGroup) -> ServerGroup:
        if any(g.name == group.name for g in self.server_groups):
            raise TopologyValidationError(
                self.name, f"duplicate server group '{group.name}'"
            )
        self.server_groups.append(group)
        self._rebuild_nodes()
        return group

    def update_server_group(
        self,
        name: str,
        *,
        services: Services | None = None,
        replicas: int | None = None,
    ) -> ServerGroup:
        """
        Change a group's services or replica count and re-select the primary.

        Raises:
            TopologyValidationError: If the group does not exist
        """
        for index, group in enumerate(self.server_groups):
            if group.name == name:
                changes: dict = {}
                if services is not None:
                    changes["services"] = services
                if replicas is not None:
                    changes["replicas"] = replicas
                updated = replace(group, **changes)
                self.server_groups[index] = updated
                self._rebuild_nodes()
                return updated
        raise TopologyValidationError(self.name, f"unknown server group '{name}'")

    def add_bucket(self, bucket: AnyBucket) -> AnyBucket:
        if any(b.name == bucket.name for b in self.buckets):
            raise TopologyValidationError(self.name, f"duplicate bucket '{bucket.name}'")
        self.buckets.append(bucket)
        return bucket

    def _rebuild_nodes(self) -> None:
        nodes: list[ServerNode] = []
        initial_found = False
        for group in self.server_groups:
            for i in range(group.replicas):
                name = f"{group.name}-{i}"
                is_initial = not initial_found and Services.DATA in group.services
                initial_found = initial_found or is_initial
                nodes.append(
                    ServerNode(
                        name=name,
                        hostname=f"{name}.{self.network_domain}",
                        services=group.services,
                        group=group.name,
                        is_initial=is_initial,
                        external_hostname=group.external_hostname,
                        endpoints=dict(group.endpoints[i]) if i < len(group.endpoints) else {},
                    )
                )
        self._nodes = nodes

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def nodes(self) -> list[ServerNode]:
        return list(self._nodes)

    @property
    def primary(self) -> ServerNode:
        """
        The node used for cluster init and all management calls.

        Raises:
            TopologyValidationError: If no node has the data service
        """
        for node in self._nodes:
            if node.is_initial:
                return node
        raise TopologyValidationError(
            self.name, "at least one server must have the data service"
        )

    @property
    def secondaries(self) -> list[ServerNode]:
        primary = self.primary
        return [n for n in self._nodes if n.name != primary.name]

    def validate(self) -> None:
        """Raise TopologyValidationError if the cluster cannot initialize."""
        if not self._nodes:
            raise TopologyValidationError(self.name, "no servers declared")
        _ = self.primary

    def find_node(self, name: str) -> ServerNode | None:
        return next((n for n in self._nodes if n.name == name), None)

    def find_bucket(self, name: str) -> AnyBucket | None:
        return next((b for b in self.buckets if b.name == name), None)

    @property
    def credentials(self) -> Credentials:
        return Credentials(self.username, self.password)

    @property
    def uses_tls(self) -> bool:
        return self.certificate_authority is not None

    def settings(self) -> ClusterSettings:
        """Evaluate the settings factory once and cache the result."""
        if self._settings is None:
            self._settings = self.settings_factory()
        return self._settings

    def management_url(self, node: ServerNode, *, prefer_insecure: bool = False) -> str:
        """
        Base URL of a node's management API.

        The secure endpoint is used whenever a CA is configured, unless the
        caller needs the insecure one (certificate bootstrap). Published host
        ports are preferred; without them the internal hostname is used.

        Args:
            node: Target node
            prefer_insecure: Force the plain HTTP endpoint

        Returns:
            URL such as "https://localhost:18091"
        """
        secure = self.uses_tls and not prefer_insecure
        endpoint = "managements" if secure else "management"
        scheme = "https" if secure else "http"

        port = node.endpoints.get(endpoint)
        if node.is_initial:
            settings = self.settings()
            override = settings.secure_management_port if secure else settings.management_port
            port = override or port

        if port is None:
            internal = INTERNAL_SECURE_MANAGEMENT_PORT if secure else INTERNAL_MANAGEMENT_PORT
            return f"{scheme}://{node.hostname}:{internal}"
        return f"{scheme}://{node.external_hostname}:{port}"

    def resource_names(self) -> list[str]:
        """Every resource in the hierarchy: cluster, groups, servers, buckets."""
        return [
            self.name,
            *(g.name for g in self.server_groups),
            *(n.name for n in self._nodes),
            *(b.name for b in self.buckets),
        ]
