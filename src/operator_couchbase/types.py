"""
Pydantic response types for the cluster management REST API.

These models validate JSON returned by a node's management port. Internal
declarations (nodes, buckets, settings) are dataclasses in
operator_couchbase.topology.

Notes:
- Unknown fields are ignored; the management API returns far more than we read
- Completion of a rebalance is status == "none"
- Sample bucket loads have no success field; the task simply disappears
"""

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Pools
# =============================================================================


class PoolNode(BaseModel):
    """
    Single node entry from GET /pools/nodes.

    The hostname includes the management port, e.g. "db-2.dev.internal:8091".
    """

    hostname: str
    status: str | None = None
    services: list[str] = Field(default_factory=list)


class Pool(BaseModel):
    """
    Response from GET /pools/nodes.

    Example response:
    {
        "name": "default",
        "nodes": [
            {"hostname": "db-1.dev.internal:8091", "status": "healthy"},
            {"hostname": "db-2.dev.internal:8091", "status": "warmup"}
        ]
    }
    """

    name: str | None = None
    nodes: list[PoolNode] = Field(default_factory=list)

    def hostnames(self) -> set[str]:
        """Return the set of "host:port" strings for every listed node."""
        return {node.hostname for node in self.nodes}


class NodeServicesEntry(BaseModel):
    """
    Entry from nodesExt in GET /pools/default/nodeServices.

    services maps service port keys (mgmt, kv, n1ql, ...) to port numbers.
    """

    model_config = ConfigDict(populate_by_name=True)

    hostname: str | None = None
    services: dict[str, int] = Field(default_factory=dict)
    this_node: bool = Field(default=False, alias="thisNode")


class NodeServicesResponse(BaseModel):
    """
    Response from GET /pools/default/nodeServices.

    Example response:
    {
        "rev": 42,
        "nodesExt": [
            {"hostname": "db-1.dev.internal", "thisNode": true,
             "services": {"mgmt": 8091, "kv": 11210}}
        ]
    }
    """

    model_config = ConfigDict(populate_by_name=True)

    nodes_ext: list[NodeServicesEntry] = Field(default_factory=list, alias="nodesExt")

    def this_node(self) -> NodeServicesEntry | None:
        """Return the entry for the node that answered, if it marked itself."""
        return next((n for n in self.nodes_ext if n.this_node), None)


# =============================================================================
# Rebalance
# =============================================================================


class RebalanceStatus(BaseModel):
    """
    Response from GET /pools/default/rebalanceProgress.

    {"status": "none"} once no rebalance is running, {"status": "running", ...}
    while one is in progress.
    """

    status: str

    @property
    def is_complete(self) -> bool:
        return self.status == "none"


# =============================================================================
# Buckets
# =============================================================================


class BucketNode(BaseModel):
    """Per-node entry in a bucket response; status is "healthy" when ready."""

    hostname: str | None = None
    status: str | None = None


class Bucket(BaseModel):
    """
    Response from GET /pools/default/buckets/{name}.

    Example response:
    {
        "name": "orders",
        "bucketType": "membase",
        "nodes": [{"hostname": "db-1.dev.internal:8091", "status": "healthy"}]
    }
    """

    name: str
    nodes: list[BucketNode] = Field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        """True when the bucket is placed and every node reports healthy."""
        return bool(self.nodes) and all(n.status == "healthy" for n in self.nodes)


class SampleBucketTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: str | None = Field(default=None, alias="taskId")


class SampleBucketResponse(BaseModel):
    """
    Response from POST /sampleBuckets/install.

    Example response:
    {"tasks": [{"taskId": "439b29de-0018-46ba-83c3-d3f58be68b12", "sample": "travel-sample"}]}
    """

    tasks: list[SampleBucketTask] = Field(default_factory=list)

    @property
    def task_id(self) -> str | None:
        return self.tasks[0].task_id if self.tasks else None


class ClusterTask(BaseModel):
    """
    Single entry from GET /pools/default/tasks.

    Only task_id is consulted; a completed task is removed from the list.
    """

    task_id: str | None = None
    status: str | None = None
    type: str | None = None


# =============================================================================
# Scopes and collections
# =============================================================================


class CollectionSpec(BaseModel):
    name: str
    uid: str | None = None


class ScopeSpec(BaseModel):
    name: str
    uid: str | None = None
    collections: list[CollectionSpec] = Field(default_factory=list)


class ScopesResponse(BaseModel):
    """
    Response from GET /pools/default/buckets/{name}/scopes.

    Example response:
    {
        "uid": "2",
        "scopes": [
            {"name": "_default", "uid": "0", "collections": [{"name": "_default", "uid": "0"}]},
            {"name": "inventory", "uid": "8", "collections": [{"name": "airline", "uid": "9"}]}
        ]
    }
    """

    uid: str | None = None
    scopes: list[ScopeSpec] = Field(default_factory=list)

    def find(self, name: str) -> ScopeSpec | None:
        return next((s for s in self.scopes if s.name == name), None)
