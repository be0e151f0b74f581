"""Docker-backed node control for cluster containers.

Provides async wrappers around python-on-whales for starting, stopping and
inspecting the container behind each ServerNode, and publishes the resulting
server states into the resource state store. The container name is the
node name.

All blocking Docker calls run through asyncio.run_in_executor.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from python_on_whales import docker
from python_on_whales.exceptions import NoSuchContainer

from operator_couchbase.state import ResourceState, ResourceStateStore
from operator_couchbase.topology import ServerNode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContainerStatus:
    """Observed state of one node container."""

    name: str
    exists: bool
    running: bool
    status: str
    exit_code: int = 0


class DockerNodeController:
    """Node controller for containers managed by the local Docker engine.

    Implements NodeControllerProtocol. start_node and stop_node are idempotent
    and publish RUNNING / EXITED for the node once the container settles;
    watch() keeps publishing changes made outside the orchestrator.
    """

    def __init__(self, states: ResourceStateStore, poll_interval: float = 2.0):
        """Initialize controller with python-on-whales docker client."""
        self._docker = docker
        self.states = states
        self.poll_interval = poll_interval

    async def inspect_node(self, node: ServerNode) -> ContainerStatus:
        """Inspect a node's container without modifying it.

        Returns:
            ContainerStatus; a missing container is reported with exists=False
        """
        loop = asyncio.get_running_loop()

        def _blocking_inspect():
            try:
                container = self._docker.container.inspect(node.name)
            except NoSuchContainer:
                return ContainerStatus(node.name, exists=False, running=False, status="missing")
            return ContainerStatus(
                name=node.name,
                exists=True,
                running=bool(container.state.running),
                status=container.state.status,
                exit_code=container.state.exit_code or 0,
            )

        return await loop.run_in_executor(None, _blocking_inspect)

    async def start_node(self, node: ServerNode) -> None:
        """Start the node's container and publish it as RUNNING.

        Raises:
            NoSuchContainer: If the container doesn't exist
        """
        loop = asyncio.get_running_loop()

        def _blocking_start():
            container = self._docker.container.inspect(node.name)
            # Only start if not already running
            if not container.state.running:
                self._docker.container.start(node.name)
                container = self._docker.container.inspect(node.name)
            return bool(container.state.running)

        running = await loop.run_in_executor(None, _blocking_start)
        if running:
            self._publish(node.name, ResourceState.RUNNING)

    async def stop_node(self, node: ServerNode, timeout: int = 10) -> None:
        """Stop the node's container and publish it as EXITED.

        A missing container counts as stopped.

        Args:
            node: Node to stop
            timeout: Seconds to wait for graceful shutdown before SIGKILL
        """
        loop = asyncio.get_running_loop()

        def _blocking_stop():
            try:
                container = self._docker.container.inspect(node.name)
            except NoSuchContainer:
                return 0
            if container.state.running:
                self._docker.container.stop(node.name, time=timeout)
                container = self._docker.container.inspect(node.name)
            return container.state.exit_code or 0

        exit_code = await loop.run_in_executor(None, _blocking_stop)
        self._publish(node.name, ResourceState.EXITED, exit_code=exit_code)

    async def sync(self, nodes: Iterable[ServerNode]) -> None:
        """Publish state changes for containers that started or stopped on their own.

        - a running container whose node isn't RUNNING becomes RUNNING
        - a stopped container whose node was RUNNING or STOPPING becomes EXITED
        - NOT_STARTED and STARTING nodes are left alone while their container is down
        """
        for node in nodes:
            current = self.states.current(node.name)
            if current is None:
                continue
            status = await self.inspect_node(node)
            if status.running and current.state is not ResourceState.RUNNING:
                self._publish(node.name, ResourceState.RUNNING)
            elif not status.running and current.state in (
                ResourceState.RUNNING,
                ResourceState.STOPPING,
            ):
                self._publish(node.name, ResourceState.EXITED, exit_code=status.exit_code)

    async def watch(self, nodes: Iterable[ServerNode]) -> None:
        """Poll containers until cancelled."""
        targets = list(nodes)
        while True:
            await self.sync(targets)
            await asyncio.sleep(self.poll_interval)

    def _publish(self, name: str, state: ResourceState, exit_code: int | None = None) -> None:
        current = self.states.current(name)
        if current is None or current.state is state:
            return
        logger.info(f"Node {name} is {state.value}")
        self.states.publish(name, lambda s: s.transition(state, exit_code=exit_code))
