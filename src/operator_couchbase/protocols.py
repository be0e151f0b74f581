"""
Protocols for collaborators the orchestrator drives but does not implement.

The NodeControllerProtocol defines how cluster nodes (containers) are
started and stopped. The orchestrator only issues commands; node state
changes come back through the resource state store, published by whatever
watches the nodes.
"""

from enum import Enum
from typing import Protocol, runtime_checkable

from operator_couchbase.topology import ServerNode


class ResourceCommand(str, Enum):
    """Commands accepted by ClusterOrchestrator.execute_command()."""

    START = "start"
    STOP = "stop"
    FLUSH = "flush"


@runtime_checkable
class NodeControllerProtocol(Protocol):
    """
    Protocol for node lifecycle control.

    Both operations must be idempotent: starting a running node or stopping
    a stopped one succeeds without effect.
    """

    async def start_node(self, node: ServerNode) -> None:
        """Start the node's process or container."""
        ...

    async def stop_node(self, node: ServerNode) -> None:
        """Stop the node's process or container."""
        ...
