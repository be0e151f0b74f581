"""
Foreground daemon that drives one cluster until it settles or is interrupted.

OrchestratorDaemon:
- Starts the orchestrator's event loop and the node watcher
- Issues an explicit cluster start
- Reports every state transition through a callback
- Handles graceful shutdown on SIGINT/SIGTERM

Uses asyncio.Event for shutdown coordination with signal handlers
registered inside run() via get_running_loop().
"""

import asyncio
import contextlib
import functools
import logging
import signal
from collections.abc import Callable

from operator_couchbase.docker.nodes import DockerNodeController
from operator_couchbase.orchestrator import ClusterOrchestrator
from operator_couchbase.state import TERMINAL_STATES, ResourceSnapshot, ResourceState

logger = logging.getLogger(__name__)

SETTLED_STATES = TERMINAL_STATES | {ResourceState.RUNNING}


class OrchestratorDaemon:
    """
    Runs a cluster bootstrap in the foreground.

    Example:
        daemon = OrchestratorDaemon(orchestrator, watcher=controller, follow=False)
        snapshot = await daemon.run()
        if snapshot.state is not ResourceState.RUNNING:
            raise SystemExit(1)
    """

    def __init__(
        self,
        orchestrator: ClusterOrchestrator,
        watcher: DockerNodeController | None = None,
        follow: bool = True,
        stop_on_exit: bool = False,
        on_update: Callable[[ResourceSnapshot], None] | None = None,
    ) -> None:
        """
        Initialize the daemon.

        Args:
            orchestrator: Orchestrator for the cluster
            watcher: Node watcher publishing container state changes
            follow: Keep running after the cluster settles, until a signal
            stop_on_exit: Stop the cluster when a signal ends the daemon
            on_update: Called for every published snapshot
        """
        self.orchestrator = orchestrator
        self.watcher = watcher
        self.follow = follow
        self.stop_on_exit = stop_on_exit
        self.on_update = on_update
        self._shutdown = asyncio.Event()

    async def run(self) -> ResourceSnapshot:
        """
        Start the cluster and wait for it (and its buckets) to settle.

        Returns:
            The cluster's snapshot when the daemon ends
        """
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, functools.partial(self._handle_signal, sig))

        # Explicit start first, so it also starts stopped node containers.
        self.orchestrator.start()

        background = [asyncio.create_task(self.orchestrator.run(), name="orchestrator")]
        if self.watcher is not None:
            background.append(
                asyncio.create_task(
                    self.watcher.watch(self.orchestrator.topology.nodes), name="node-watcher"
                )
            )
        if self.on_update is not None:
            background.append(asyncio.create_task(self._report(), name="reporter"))

        try:
            settled = await self._until_shutdown(self._settle())
            if settled and self.follow:
                await self._shutdown.wait()

            if self._shutdown.is_set() and self.stop_on_exit:
                await self.orchestrator.stop()
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

        return self.orchestrator.states.current(self.orchestrator.name)

    async def _settle(self) -> None:
        states = self.orchestrator.states
        cluster = await states.wait_for(self.orchestrator.name, SETTLED_STATES)
        if cluster.state is not ResourceState.RUNNING:
            return
        for bucket in self.orchestrator.topology.buckets:
            await states.wait_for(bucket.name, SETTLED_STATES)

    async def _until_shutdown(self, coro) -> bool:
        """Run coro until it finishes or a shutdown signal arrives; True if it finished."""
        work = asyncio.create_task(coro)
        stop = asyncio.create_task(self._shutdown.wait())
        try:
            await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            work.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await work
        return not self._shutdown.is_set()

    async def _report(self) -> None:
        async with contextlib.aclosing(self.orchestrator.states.watch()) as stream:
            async for snapshot in stream:
                self.on_update(snapshot)

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signal by setting shutdown event."""
        logger.info(f"Received {sig.name}, shutting down")
        self._shutdown.set()
