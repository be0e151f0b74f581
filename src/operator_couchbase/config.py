"""Environment-based settings and topology file loading.

OperatorSettings reads COUCHBASE_* environment variables. The cluster itself
is declared in a JSON topology file:

    {
        "name": "couchbase",
        "password": "password",
        "settings": {"edition": "community", "memory_quotas": {"data": 512}},
        "server_groups": [
            {"name": "db", "services": ["data", "query", "index"], "replicas": 3,
             "endpoints": [{"management": 8091}, {"management": 8191}, {"management": 8291}]}
        ],
        "buckets": [
            {"name": "orders", "settings": {"flush_enabled": true},
             "scopes": [{"name": "sales", "collections": ["invoices"]}]},
            {"name": "travel-sample", "kind": "sample"}
        ]
    }
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from operator_couchbase.topology import (
    DEFAULT_NETWORK_DOMAIN,
    DEFAULT_USERNAME,
    BucketDefinition,
    BucketSettings,
    CertificateAuthority,
    ClusterSettings,
    ClusterTopology,
    SampleBucketDefinition,
    ScopeDefinition,
    ServerGroup,
    parse_services,
)


class OperatorSettings(BaseSettings):
    """Operator configuration.

    All settings can be overridden via environment variables with
    COUCHBASE_ prefix. For example:
        COUCHBASE_TOPOLOGY_FILE=/etc/couchbase/topology.json
        COUCHBASE_PASSWORD=s3cret
    """

    # Cluster declaration
    topology_file: Path = Path("topology.json")
    password: str | None = None

    # Management API
    request_timeout: float = 10.0
    retry_attempts: int = 60
    retry_delay: float = 1.0

    # Node containers
    docker_poll_interval: float = 2.0

    log_level: str = "INFO"

    model_config = {"env_prefix": "COUCHBASE_"}


# =============================================================================
# Topology file schema
# =============================================================================


class CertificateAuthoritySpec(BaseModel):
    certificate_file: Path
    chain_files: list[Path] = Field(default_factory=list)
    trust_certificate: bool = True


class ServerGroupSpec(BaseModel):
    name: str
    services: list[str] = Field(default_factory=lambda: ["data", "query", "index"])
    replicas: int = Field(default=1, ge=1)
    external_hostname: str = "localhost"
    endpoints: list[dict[str, int]] = Field(default_factory=list)


class BucketSpec(BaseModel):
    name: str
    kind: Literal["standard", "sample"] = "standard"
    bucket_name: str | None = None
    settings: BucketSettings = Field(default_factory=BucketSettings)
    scopes: list[ScopeDefinition] = Field(default_factory=list)


class TopologyFile(BaseModel):
    """Root of the JSON topology file."""

    name: str
    password: str | None = None
    username: str = DEFAULT_USERNAME
    cluster_name: str | None = None
    network_domain: str = DEFAULT_NETWORK_DOMAIN
    certificate_authority: CertificateAuthoritySpec | None = None
    settings: ClusterSettings = Field(default_factory=ClusterSettings)
    server_groups: list[ServerGroupSpec] = Field(default_factory=list)
    buckets: list[BucketSpec] = Field(default_factory=list)


def _load_certificate_authority(ca: CertificateAuthoritySpec, base: Path) -> CertificateAuthority:
    def _read(path: Path) -> str:
        return (path if path.is_absolute() else base / path).read_text()

    return CertificateAuthority(
        certificate=_read(ca.certificate_file),
        chain=[_read(p) for p in ca.chain_files],
        trust_certificate=ca.trust_certificate,
    )


def build_topology(
    document: TopologyFile, password: str | None = None, base_dir: Path | None = None
) -> ClusterTopology:
    """Convert a validated topology file into a ClusterTopology.

    Args:
        document: Parsed topology file
        password: Overrides the file's password when set
        base_dir: Directory relative certificate paths are resolved against

    Raises:
        ValueError: If no password is available or a service name is unknown
    """
    resolved_password = password or document.password
    if not resolved_password:
        raise ValueError(
            f"No password for cluster '{document.name}'; set it in the topology file "
            f"or COUCHBASE_PASSWORD"
        )

    certificate_authority = None
    if document.certificate_authority is not None:
        certificate_authority = _load_certificate_authority(
            document.certificate_authority, base_dir or Path.cwd()
        )

    cluster_settings = document.settings
    topology = ClusterTopology(
        name=document.name,
        password=resolved_password,
        username=document.username,
        cluster_name=document.cluster_name,
        network_domain=document.network_domain,
        certificate_authority=certificate_authority,
        settings_factory=lambda: cluster_settings,
    )

    for group in document.server_groups:
        topology.add_server_group(
            ServerGroup(
                name=group.name,
                services=parse_services(group.services),
                replicas=group.replicas,
                external_hostname=group.external_hostname,
                endpoints=group.endpoints,
            )
        )

    for bucket in document.buckets:
        if bucket.kind == "sample":
            topology.add_bucket(SampleBucketDefinition(bucket.name, bucket.bucket_name))
        else:
            topology.add_bucket(
                BucketDefinition(
                    name=bucket.name,
                    bucket_name=bucket.bucket_name,
                    settings=bucket.settings,
                    scopes=bucket.scopes,
                )
            )

    return topology


def load_topology(path: Path, password: str | None = None) -> ClusterTopology:
    """Read and validate a JSON topology file.

    Raises:
        pydantic.ValidationError: On a malformed file
        ValueError: On an unusable declaration
    """
    document = TopologyFile.model_validate_json(path.read_text())
    return build_topology(document, password=password, base_dir=path.parent)
