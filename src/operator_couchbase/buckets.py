"""
Bucket provisioning: standard buckets, sample buckets and flush.

Standard bucket:
- GET by name; an existing bucket is left alone
- otherwise POST create, then poll until every node reports "healthy"
- declared scopes and collections are created if missing

Sample bucket:
- GET by name; an existing bucket is left alone
- otherwise install the dataset and poll the cluster task list until the
  returned task id disappears (the only completion signal available)

Flush is on demand: POST doFlush, then the same health poll as creation.
"""

import asyncio
import logging
from dataclasses import dataclass

from operator_couchbase.client import ManagementApiClient
from operator_couchbase.health import (
    HealthCheckResult,
    NodeHealth,
    ServiceHealthNodeRequirement,
)
from operator_couchbase.state import ResourceSnapshot, ResourceState, ResourceStateStore
from operator_couchbase.topology import (
    AnyBucket,
    BucketDefinition,
    SampleBucketDefinition,
    ServerNode,
)

logger = logging.getLogger(__name__)


def _mark_loading(snapshot: ResourceSnapshot) -> ResourceSnapshot:
    # A bucket stopped while the install request was in flight stays stopped.
    if snapshot.state is not ResourceState.STARTING:
        return snapshot
    return snapshot.transition(ResourceState.LOADING)


@dataclass
class BucketProvisioner:
    """
    Creates and validates buckets through the primary node.

    Attributes:
        client: Management API client for the cluster
        states: When set, sample buckets are published as LOADING while
            their dataset task runs
        health_poll_interval: Seconds between bucket health polls
        task_poll_interval: Seconds between cluster task list polls
    """

    client: ManagementApiClient
    states: ResourceStateStore | None = None
    health_poll_interval: float = 0.25
    task_poll_interval: float = 0.5

    async def provision(self, node: ServerNode, bucket: AnyBucket) -> bool:
        """
        Provision a bucket using the strategy for its kind.

        Returns:
            True if the bucket was created in this call.
        """
        if isinstance(bucket, SampleBucketDefinition):
            return await self.install_sample(node, bucket)

        created = await self.create_or_get(node, bucket)
        if created:
            await self.wait_healthy(node, bucket.bucket_name)
        if bucket.scopes:
            await self.ensure_scopes(node, bucket)
        return created

    # -------------------------------------------------------------------------
    # Standard buckets
    # -------------------------------------------------------------------------

    async def create_or_get(self, node: ServerNode, bucket: BucketDefinition) -> bool:
        """
        Create the bucket unless it already exists.

        Returns:
            True if a create request was sent, False if the bucket existed.
        """
        if await self.client.get_bucket(node, bucket.bucket_name) is not None:
            logger.info(f"Bucket '{bucket.bucket_name}' already exists")
            return False

        logger.info(f"Creating bucket '{bucket.bucket_name}'")
        await self.client.create_bucket(node, bucket.bucket_name, bucket.settings)
        return True

    async def wait_healthy(self, node: ServerNode, bucket_name: str) -> None:
        """Poll the bucket until every listed node reports "healthy"."""
        logger.info(f"Waiting for bucket '{bucket_name}' to be healthy")
        while True:
            info = await self.client.get_bucket(node, bucket_name)
            if info is not None and info.is_healthy:
                break
            await asyncio.sleep(self.health_poll_interval)
        logger.info(f"Bucket '{bucket_name}' is healthy")

    async def ensure_scopes(self, node: ServerNode, bucket: BucketDefinition) -> None:
        """Create declared scopes and collections that the bucket lacks."""
        existing = await self.client.get_scopes(node, bucket.bucket_name)
        for scope in bucket.scopes:
            current = existing.find(scope.name)
            if current is None:
                logger.info(f"Creating scope '{bucket.bucket_name}.{scope.name}'")
                await self.client.create_scope(node, bucket.bucket_name, scope.name)
                have: set[str] = set()
            else:
                have = {c.name for c in current.collections}

            for collection in scope.collections:
                if collection not in have:
                    logger.info(
                        f"Creating collection '{bucket.bucket_name}.{scope.name}.{collection}'"
                    )
                    await self.client.create_collection(
                        node, bucket.bucket_name, scope.name, collection
                    )

    # -------------------------------------------------------------------------
    # Sample buckets
    # -------------------------------------------------------------------------

    async def install_sample(self, node: ServerNode, bucket: SampleBucketDefinition) -> bool:
        """
        Install a sample dataset unless the bucket already exists.

        Returns:
            True if an install request was sent.
        """
        if await self.client.get_bucket(node, bucket.bucket_name) is not None:
            logger.info(f"Bucket '{bucket.bucket_name}' already exists")
            return False

        logger.info(f"Creating sample bucket '{bucket.bucket_name}'")
        response = await self.client.create_sample_bucket(node, bucket.bucket_name)
        task_id = response.task_id
        if task_id:
            if self.states is not None:
                self.states.publish(bucket.name, _mark_loading)
            await self.wait_for_task(node, task_id)
        logger.info(f"Created sample bucket '{bucket.bucket_name}'")
        return True

    async def wait_for_task(self, node: ServerNode, task_id: str) -> None:
        """Poll the cluster task list until task_id is no longer listed."""
        while True:
            tasks = await self.client.get_cluster_tasks(node)
            if not any(t.task_id == task_id for t in tasks):
                return
            await asyncio.sleep(self.task_poll_interval)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def flush(self, node: ServerNode, bucket_name: str) -> None:
        """Flush all documents from the bucket and wait for it to be healthy."""
        logger.info(f"Flushing bucket '{bucket_name}'")
        await self.client.flush_bucket(node, bucket_name)
        await self.wait_healthy(node, bucket_name)

    async def check_health(
        self,
        node: ServerNode,
        bucket_name: str,
        requirement: ServiceHealthNodeRequirement | None = None,
    ) -> HealthCheckResult:
        """
        Evaluate one bucket's node statuses against a health requirement.

        A missing bucket is reported with no nodes.
        """
        requirement = requirement or ServiceHealthNodeRequirement()
        info = await self.client.get_bucket(node, bucket_name)
        reports = []
        if info is not None:
            reports = [
                NodeHealth(node=n.hostname or f"node-{i}", healthy=n.status == "healthy")
                for i, n in enumerate(info.nodes)
            ]
        return requirement.evaluate(f"kv ({bucket_name})", reports)
