"""
Cluster lifecycle orchestration.

ClusterOrchestrator sequences the bootstrap components against resource
state transitions and publishes the cluster's own state, since a cluster or
bucket is not backed by a process that could report it.

Per-resource lifecycle:

    NotStarted -> Starting -> Running -> Stopping -> Exited
                  Starting -> FailedToStart

Bootstrap pipeline, run once the primary node reports RUNNING:

1. pool check on the primary
2. if the pool is missing: certificate trust (only with a CA), then cluster init
3. alternate addresses for the primary
4. concurrent joins of every other node
5. rebalance, only if a join added a node
6. cluster published RUNNING, then every bucket provisioned in the background

A failing step publishes the cluster FAILED_TO_START with exit code 1 and its
children EXITED with exit code 0. Node joins fail per node; buckets fail per
bucket. Cancellation is never turned into a failed state.
"""

import asyncio
import contextlib
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

from operator_couchbase.bootstrap import CertificateTrustBootstrapper, ClusterBootstrapper
from operator_couchbase.buckets import BucketProvisioner
from operator_couchbase.client import ManagementApiClient
from operator_couchbase.join import JoinResult, NodeJoinCoordinator
from operator_couchbase.protocols import NodeControllerProtocol, ResourceCommand
from operator_couchbase.rebalance import RebalanceController
from operator_couchbase.state import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    ResourceKind,
    ResourceSnapshot,
    ResourceState,
    ResourceStateStore,
)
from operator_couchbase.topology import AnyBucket, ClusterTopology, ServerNode

logger = logging.getLogger(__name__)

INITIALIZED_PROPERTY = "initialized"

# A bucket that reaches one of these before RUNNING cancels its own provisioning.
BUCKET_STOP_STATES = TERMINAL_STATES | {ResourceState.STOPPING}


@dataclass
class BootstrapContext:
    """Values handed from one bootstrap step to the next."""

    primary: ServerNode
    cluster_initialized: bool = False
    join_results: list[JoinResult] = field(default_factory=list)

    @property
    def nodes_added(self) -> bool:
        return any(r.added for r in self.join_results)


class ClusterOrchestrator:
    """
    Event-driven lifecycle controller for one cluster.

    Components are passed in explicitly; any left out are built around the
    given client.

    Example:
        orchestrator = ClusterOrchestrator(topology, client, nodes=DockerNodeController(states))
        task = orchestrator.start()
        snapshot = await orchestrator.wait_until_settled()
        print(snapshot.state)  # ResourceState.RUNNING
    """

    def __init__(
        self,
        topology: ClusterTopology,
        client: ManagementApiClient,
        states: ResourceStateStore | None = None,
        nodes: NodeControllerProtocol | None = None,
        *,
        bootstrapper: ClusterBootstrapper | None = None,
        certificates: CertificateTrustBootstrapper | None = None,
        joins: NodeJoinCoordinator | None = None,
        rebalancer: RebalanceController | None = None,
        buckets: BucketProvisioner | None = None,
    ) -> None:
        self.topology = topology
        self.client = client
        self.states = states if states is not None else ResourceStateStore()
        self.nodes = nodes
        self.bootstrapper = bootstrapper or ClusterBootstrapper(client)
        self.certificates = certificates or CertificateTrustBootstrapper(client)
        self.joins = joins or NodeJoinCoordinator(client, self.certificates, self.states)
        self.rebalancer = rebalancer or RebalanceController(client)
        self.buckets = buckets or BucketProvisioner(client, self.states)

        self._tasks: set[asyncio.Task] = set()
        self._cluster_task: asyncio.Task | None = None
        self._bucket_tasks: dict[str, asyncio.Task] = {}

        self.register_resources()

    @property
    def name(self) -> str:
        return self.topology.name

    # -------------------------------------------------------------------------
    # Resource hierarchy
    # -------------------------------------------------------------------------

    def register_resources(self) -> None:
        """Register an initial snapshot for every resource in the topology."""
        names = self.topology.resource_names()
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate resource names: {', '.join(sorted(duplicates))}")

        self.states.register(ResourceSnapshot(self.name, ResourceKind.CLUSTER))
        for group in self.topology.server_groups:
            self.states.register(
                ResourceSnapshot(group.name, ResourceKind.SERVER_GROUP, parent=self.name)
            )
        for node in self.topology.nodes:
            self.states.register(
                ResourceSnapshot(node.name, ResourceKind.SERVER, parent=node.group)
            )
        for bucket in self.topology.buckets:
            self.states.register(
                ResourceSnapshot(bucket.name, ResourceKind.BUCKET, parent=self.name)
            )

    def publish_hierarchy(
        self,
        name: str,
        state: ResourceState,
        *,
        exit_code: int | None = None,
        error: str | None = None,
        child_state: ResourceState | None = None,
        include_buckets: bool = True,
        **changes: Any,
    ) -> ResourceSnapshot:
        """
        Publish a transition to a resource and, recursively, to its children.

        Servers are skipped: their state comes from the nodes themselves.
        Children get exit code 0 whenever the target gets an exit code.

        Args:
            name: Target resource
            state: State for the target
            exit_code: Exit code for the target only
            error: Failure message for the target only
            child_state: State for children; defaults to state
            include_buckets: Whether bucket children follow the transition
            **changes: Extra snapshot fields for the target (urls, environment)

        Returns:
            The target's new snapshot
        """
        snapshot = self.states.publish(
            name,
            lambda s: s.transition(state, exit_code=exit_code, error=error, **changes),
        )
        for child in self.states.children(name):
            if child.kind is ResourceKind.SERVER:
                continue
            if child.kind is ResourceKind.BUCKET and not include_buckets:
                continue
            self.publish_hierarchy(
                child.name,
                child_state or state,
                exit_code=0 if exit_code is not None else None,
                include_buckets=include_buckets,
            )
        return snapshot

    def _current(self, name: str) -> ResourceSnapshot:
        snapshot = self.states.current(name)
        if snapshot is None:
            raise ValueError(f"Unknown resource '{name}'")
        return snapshot

    def _set_initialized(self, node_name: str, value: bool) -> None:
        self.states.publish(
            node_name, lambda s: s.with_property(INITIALIZED_PROPERTY, True if value else None)
        )

    # -------------------------------------------------------------------------
    # Supervised tasks
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task {task.get_name()} failed: {exc}", exc_info=exc)

    async def shutdown(self) -> None:
        """Cancel every background task and wait for them to finish."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    # -------------------------------------------------------------------------
    # Cluster start
    # -------------------------------------------------------------------------

    def start(self, *, start_nodes: bool = True) -> asyncio.Task | None:
        """
        Start the cluster bootstrap in the background.

        Args:
            start_nodes: Start stopped nodes first (explicit start). The
                automatic start after the primary comes up passes False.

        Returns:
            The bootstrap task, or None if the cluster is already starting
            or running.

        Raises:
            TopologyValidationError: If no node can act as primary.
        """
        current = self._current(self.name)
        if current.state in ACTIVE_STATES:
            logger.warning(f"Cluster '{self.name}' is already in state {current.state.value}")
            return None

        self.topology.validate()

        self.publish_hierarchy(self.name, ResourceState.STARTING)
        self._cluster_task = self._spawn(
            self._start_cluster(start_nodes), name=f"start-{self.name}"
        )
        return self._cluster_task

    async def _start_cluster(self, start_nodes: bool) -> None:
        try:
            await self.bootstrap(start_nodes=start_nodes)
        except Exception as e:
            logger.error(f"Failed to initialize cluster '{self.name}': {e}", exc_info=e)
            self.publish_hierarchy(
                self.name,
                ResourceState.FAILED_TO_START,
                exit_code=1,
                error=str(e),
                child_state=ResourceState.EXITED,
            )
            return

        self._on_cluster_started()

    async def bootstrap(self, *, start_nodes: bool = False) -> BootstrapContext:
        """
        Run the bootstrap pipeline without publishing the final state.

        Returns:
            The context after the last step.
        """
        primary = self.topology.primary
        if start_nodes:
            await self._start_nodes()

        logger.info(f"Waiting for {primary.name} to be running")
        await self.states.wait_until_running(primary.name)

        self.states.publish(self.name, lambda s: s.transition(ResourceState.INITIALIZING))

        context = BootstrapContext(primary=primary)
        steps = (
            self._initialize_primary,
            self._join_nodes,
            self._rebalance,
        )
        for step in steps:
            await step(context)
        return context

    async def _start_nodes(self) -> None:
        if self.nodes is None:
            return

        async def _start(node: ServerNode) -> None:
            current = self._current(node.name)
            if current.state is ResourceState.NOT_STARTED or current.is_terminal:
                self.states.publish(node.name, lambda s: s.transition(ResourceState.STARTING))
                await self.nodes.start_node(node)

        await asyncio.gather(*(_start(node) for node in self.topology.nodes))

    async def _initialize_primary(self, context: BootstrapContext) -> None:
        context.cluster_initialized = await self.bootstrapper.ensure_initialized(
            context.primary, prepare=self.certificates.load_and_trust
        )
        await self.joins.set_alternate_addresses(context.primary)
        self._set_initialized(context.primary.name, True)

    async def _join_nodes(self, context: BootstrapContext) -> None:
        secondaries = self.topology.secondaries
        if not secondaries:
            return

        pool = await self.client.get_cluster_nodes(context.primary)
        context.join_results = await self.joins.join_all(
            context.primary, secondaries, pool.hostnames()
        )
        for result in context.join_results:
            if result.succeeded:
                self._set_initialized(result.node.name, True)

        failed = [r.node.name for r in context.join_results if not r.succeeded]
        if failed:
            logger.warning(f"Nodes failed to join cluster '{self.name}': {', '.join(failed)}")

    async def _rebalance(self, context: BootstrapContext) -> None:
        if not context.nodes_added:
            return

        self.states.publish(self.name, lambda s: s.transition(ResourceState.REBALANCING))
        members = [context.primary] + [r.node for r in context.join_results if r.succeeded]
        await self.rebalancer.rebalance(context.primary, members)

    def _on_cluster_started(self) -> None:
        credentials = self.topology.credentials
        self.publish_hierarchy(
            self.name,
            ResourceState.RUNNING,
            include_buckets=False,
            urls=(self.topology.management_url(self.topology.primary),),
            environment={
                "CB_USERNAME": credentials.username,
                "CB_PASSWORD": credentials.password,
            },
        )
        logger.info(f"Initialized cluster '{self.name}'")

        for bucket in self.topology.buckets:
            self.start_bucket(bucket.name)

    # -------------------------------------------------------------------------
    # Buckets
    # -------------------------------------------------------------------------

    def _find_bucket(self, name: str) -> AnyBucket:
        bucket = self.topology.find_bucket(name)
        if bucket is None:
            raise ValueError(f"Unknown bucket '{name}'")
        return bucket

    def start_bucket(self, name: str) -> asyncio.Task | None:
        """
        Provision one bucket in the background.

        Returns:
            The provisioning task, or None if the bucket is already running,
            already being provisioned, or the cluster is not running.
        """
        bucket = self._find_bucket(name)
        current = self._current(name)
        if current.state is ResourceState.RUNNING or name in self._bucket_tasks:
            logger.warning(f"Bucket '{name}' is already in state {current.state.value}")
            return None
        if self._current(self.name).state is not ResourceState.RUNNING:
            logger.warning(f"Bucket '{name}' cannot start before cluster '{self.name}' is running")
            return None

        self.states.publish(name, lambda s: s.transition(ResourceState.STARTING))
        task = self._spawn(self._provision_bucket(bucket), name=f"bucket-{name}")
        self._bucket_tasks[name] = task
        task.add_done_callback(lambda t: self._forget_bucket_task(name, t))
        return task

    def _forget_bucket_task(self, name: str, task: asyncio.Task) -> None:
        if self._bucket_tasks.get(name) is task:
            del self._bucket_tasks[name]

    async def _provision_bucket(self, bucket: AnyBucket) -> None:
        watcher = asyncio.create_task(
            self.states.wait_for(bucket.name, BUCKET_STOP_STATES)
        )
        provision: asyncio.Task | None = None
        try:
            # Let the watcher subscribe before any provisioning step can publish.
            await asyncio.sleep(0)
            provision = asyncio.create_task(
                self.buckets.provision(self.topology.primary, bucket)
            )
            await asyncio.wait({provision, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()
            pending = {watcher}
            if provision is not None:
                provision.cancel()
                pending.add(provision)
            await asyncio.wait(pending)

        if provision.cancelled() or self._current(bucket.name).state in BUCKET_STOP_STATES:
            logger.info(f"Bucket '{bucket.name}' stopped before provisioning completed")
            return

        exc = provision.exception()
        if exc is not None:
            logger.error(f"Failed to initialize bucket '{bucket.bucket_name}': {exc}", exc_info=exc)
            self.states.publish(
                bucket.name,
                lambda s: s.transition(ResourceState.FAILED_TO_START, exit_code=1, error=str(exc)),
            )
            return

        self.states.publish(
            bucket.name, lambda s: s.transition(ResourceState.RUNNING, error=None)
        )

    async def stop_bucket(self, name: str) -> None:
        """Mark a bucket exited, cancelling its provisioning if still running."""
        self._find_bucket(name)
        current = self._current(name)
        if current.is_terminal or current.state is ResourceState.STOPPING:
            logger.warning(f"Bucket '{name}' is already in state {current.state.value}")
            return

        self.states.publish(name, lambda s: s.transition(ResourceState.EXITED, exit_code=0))
        task = self._bucket_tasks.get(name)
        if task is not None:
            await asyncio.wait({task})

    async def flush(self, name: str) -> None:
        """
        Flush a running bucket and wait for it to be healthy again.

        Raises:
            ValueError: If the bucket is unknown or not running
        """
        bucket = self._find_bucket(name)
        current = self._current(name)
        if current.state is not ResourceState.RUNNING:
            raise ValueError(f"Bucket '{name}' is not running (state {current.state.value})")
        await self.buckets.flush(self.topology.primary, bucket.bucket_name)

    # -------------------------------------------------------------------------
    # Cluster stop
    # -------------------------------------------------------------------------

    async def stop(self) -> None:
        """
        Stop the cluster: cancel in-flight work, stop every node, publish EXITED.

        Does nothing if the cluster is already stopping or stopped.
        """
        current = self._current(self.name)
        if current.is_terminal or current.state is ResourceState.STOPPING:
            logger.warning(f"Cluster '{self.name}' is already in state {current.state.value}")
            return

        self.publish_hierarchy(self.name, ResourceState.STOPPING, urls=(), environment={})

        pending = [t for t in (self._cluster_task, *self._bucket_tasks.values()) if t]
        if self._cluster_task is not None:
            self._cluster_task.cancel()
        if pending:
            await asyncio.wait(pending)

        try:
            await self._stop_nodes()
        except Exception as e:
            logger.error(f"Error stopping cluster '{self.name}': {e}", exc_info=e)
            self.publish_hierarchy(self.name, ResourceState.EXITED, exit_code=1, error=str(e))
            return

        self.publish_hierarchy(self.name, ResourceState.EXITED, exit_code=0)
        logger.info(f"Stopped cluster '{self.name}'")

    async def _stop_nodes(self) -> None:
        if self.nodes is None:
            return

        async def _stop(node: ServerNode) -> None:
            await self.nodes.stop_node(node)
            await self.states.wait_for(node.name, TERMINAL_STATES)

        await asyncio.gather(*(_stop(node) for node in self.topology.nodes))

    # -------------------------------------------------------------------------
    # Commands and events
    # -------------------------------------------------------------------------

    async def execute_command(self, resource: str, command: ResourceCommand) -> None:
        """
        Dispatch an explicit command to the cluster or one of its buckets.

        Raises:
            ValueError: For unknown resources or unsupported commands
        """
        kind = self._current(resource).kind
        if kind is ResourceKind.CLUSTER and command is ResourceCommand.START:
            task = self.start()
            if task is not None:
                await asyncio.wait({task})
        elif kind is ResourceKind.CLUSTER and command is ResourceCommand.STOP:
            await self.stop()
        elif kind is ResourceKind.BUCKET and command is ResourceCommand.START:
            task = self.start_bucket(resource)
            if task is not None:
                await asyncio.wait({task})
        elif kind is ResourceKind.BUCKET and command is ResourceCommand.STOP:
            await self.stop_bucket(resource)
        elif kind is ResourceKind.BUCKET and command is ResourceCommand.FLUSH:
            await self.flush(resource)
        else:
            raise ValueError(f"Command '{command.value}' is not supported for {kind.value} '{resource}'")

    async def run(self) -> None:
        """
        Follow node state transitions until cancelled.

        - the primary reaching RUNNING starts a cluster that was never started
          (a topology without a data node never auto-starts)
        - a node stopping clears its initialized flag
        """
        try:
            async with contextlib.aclosing(self.states.watch()) as stream:
                async for snapshot in stream:
                    if snapshot.kind is not ResourceKind.SERVER:
                        continue
                    if snapshot.is_terminal and snapshot.properties.get(INITIALIZED_PROPERTY):
                        self._set_initialized(snapshot.name, False)
                    elif (
                        snapshot.state is ResourceState.RUNNING
                        and self._is_primary(snapshot.name)
                        and self._current(self.name).state is ResourceState.NOT_STARTED
                    ):
                        self.start(start_nodes=False)
        finally:
            await self.shutdown()

    def _is_primary(self, name: str) -> bool:
        node = self.topology.find_node(name)
        return node is not None and node.is_initial

    async def wait_until_settled(self) -> ResourceSnapshot:
        """Wait for the cluster to be RUNNING or terminal and return that snapshot."""
        return await self.states.wait_for(
            self.name, TERMINAL_STATES | {ResourceState.RUNNING}
        )
