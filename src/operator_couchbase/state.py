"""
Resource state snapshots and the publish/watch channel between components.

Every resource in a cluster hierarchy (cluster, server group, server,
bucket) has exactly one current ResourceSnapshot. Snapshots are immutable;
a transition is published as a transform from the current snapshot to the
next one. Observers either watch() the stream of every transition or
wait_for() one resource to reach a set of states.

Coordination:
- asyncio.Queue per subscriber, no shared locks
- watch() replays current snapshots first so late subscribers miss nothing
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from operator_couchbase.exceptions import ResourceFailedError


class ResourceKind(str, Enum):
    CLUSTER = "cluster"
    SERVER_GROUP = "server-group"
    SERVER = "server"
    BUCKET = "bucket"


class ResourceState(str, Enum):
    """Lifecycle states shown to observers."""

    NOT_STARTED = "NotStarted"
    STARTING = "Starting"
    INITIALIZING = "Initializing"
    REBALANCING = "Rebalancing"
    LOADING = "Loading"
    RUNNING = "Running"
    FAILED_TO_START = "FailedToStart"
    STOPPING = "Stopping"
    EXITED = "Exited"


TERMINAL_STATES = frozenset({ResourceState.FAILED_TO_START, ResourceState.EXITED})

# States in which a start is already under way or done.
ACTIVE_STATES = frozenset(
    {
        ResourceState.STARTING,
        ResourceState.INITIALIZING,
        ResourceState.REBALANCING,
        ResourceState.LOADING,
        ResourceState.RUNNING,
    }
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResourceSnapshot:
    """
    Immutable view of one resource at one point in time.

    Attributes:
        name: Unique resource name
        kind: Cluster, server group, server or bucket
        state: Current lifecycle state
        parent: Name of the parent resource, None for the cluster
        exit_code: Set when the resource exited or failed
        error: Message of the failure that caused a failed state
        urls: Externally usable URLs (management console for the cluster)
        environment: Values exposed to dependents (credentials for the cluster)
        properties: Free-form flags, e.g. {"initialized": True} on servers
        updated_at: Time of the transition that produced this snapshot
    """

    name: str
    kind: ResourceKind
    state: ResourceState = ResourceState.NOT_STARTED
    parent: str | None = None
    exit_code: int | None = None
    error: str | None = None
    urls: tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    properties: Mapping[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, state: ResourceState, **changes: Any) -> ResourceSnapshot:
        """Return a copy in the new state with a fresh timestamp."""
        return replace(self, state=state, updated_at=_now(), **changes)

    def with_property(self, key: str, value: Any) -> ResourceSnapshot:
        properties = dict(self.properties)
        if value is None:
            properties.pop(key, None)
        else:
            properties[key] = value
        return replace(self, properties=properties, updated_at=_now())


Transform = Callable[[ResourceSnapshot], ResourceSnapshot]


class ResourceStateStore:
    """
    In-memory state channel for one orchestrator process.

    Example:
        store = ResourceStateStore()
        store.register(ResourceSnapshot("db", ResourceKind.CLUSTER))
        store.publish("db", lambda s: s.transition(ResourceState.STARTING))
        snapshot = await store.wait_for("db", [ResourceState.RUNNING])
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, ResourceSnapshot] = {}
        self._subscribers: set[asyncio.Queue[ResourceSnapshot]] = set()

    def register(self, snapshot: ResourceSnapshot) -> None:
        """Add a resource with its initial snapshot (replaces any previous one)."""
        self._snapshots[snapshot.name] = snapshot
        self._notify(snapshot)

    def current(self, name: str) -> ResourceSnapshot | None:
        return self._snapshots.get(name)

    def snapshots(self) -> list[ResourceSnapshot]:
        return list(self._snapshots.values())

    def children(self, name: str) -> list[ResourceSnapshot]:
        """Direct children of a resource, in registration order."""
        return [s for s in self._snapshots.values() if s.parent == name]

    def publish(self, name: str, transform: Transform) -> ResourceSnapshot:
        """
        Apply a transform to a resource's current snapshot and broadcast it.

        Args:
            name: Resource to update
            transform: Function from the current snapshot to the next one

        Returns:
            The new snapshot

        Raises:
            KeyError: If the resource was never registered
        """
        snapshot = transform(self._snapshots[name])
        self._snapshots[name] = snapshot
        self._notify(snapshot)
        return snapshot

    def _notify(self, snapshot: ResourceSnapshot) -> None:
        for queue in self._subscribers:
            queue.put_nowait(snapshot)

    async def watch(self) -> AsyncIterator[ResourceSnapshot]:
        """
        Yield current snapshots of every resource, then every later transition.

        The subscription is registered before the replay so no transition
        published meanwhile is lost.
        """
        queue: asyncio.Queue[ResourceSnapshot] = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            for snapshot in list(self._snapshots.values()):
                yield snapshot
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    async def wait_for(
        self,
        name: str,
        states: Iterable[ResourceState] | None = None,
        predicate: Callable[[ResourceSnapshot], bool] | None = None,
    ) -> ResourceSnapshot:
        """
        Wait until a resource matches the given states and predicate.

        Args:
            name: Resource to wait on
            states: Accepted states; any state when None
            predicate: Extra condition on the snapshot

        Returns:
            The first matching snapshot (possibly the current one)
        """
        wanted = frozenset(states) if states is not None else None
        async with contextlib.aclosing(self.watch()) as stream:
            async for snapshot in stream:
                if snapshot.name != name:
                    continue
                if wanted is not None and snapshot.state not in wanted:
                    continue
                if predicate is not None and not predicate(snapshot):
                    continue
                return snapshot

    async def wait_until_running(
        self,
        name: str,
        predicate: Callable[[ResourceSnapshot], bool] | None = None,
    ) -> ResourceSnapshot:
        """
        Wait for RUNNING (plus predicate), failing fast on a terminal state.

        Raises:
            ResourceFailedError: If the resource fails or exits first
        """

        def _ready_or_terminal(snapshot: ResourceSnapshot) -> bool:
            if snapshot.is_terminal:
                return True
            return snapshot.state is ResourceState.RUNNING and (
                predicate is None or predicate(snapshot)
            )

        snapshot = await self.wait_for(name, predicate=_ready_or_terminal)
        if snapshot.is_terminal:
            raise ResourceFailedError(name, snapshot.state.value)
        return snapshot
