"""Cluster lifecycle commands: up, down, status."""

import asyncio
from pathlib import Path

import typer
from rich.table import Table

from operator_couchbase.cli.common import (
    console,
    format_state,
    load,
    password_option,
    print_update,
    topology_option,
)
from operator_couchbase.docker.nodes import DockerNodeController
from operator_couchbase.exceptions import ManagementApiError
from operator_couchbase.factory import create_http_client, create_orchestrator
from operator_couchbase.runner import OrchestratorDaemon
from operator_couchbase.state import ResourceKind, ResourceSnapshot, ResourceState, ResourceStateStore
from operator_couchbase.topology import services_to_wire

cluster_app = typer.Typer(help="Cluster lifecycle commands")


@cluster_app.command()
def up(
    topology_file: Path = topology_option(),
    password: str = password_option(),
    follow: bool = typer.Option(
        False, "--follow/--no-follow", help="Keep running until Ctrl+C"
    ),
    stop_on_exit: bool = typer.Option(
        False, "--stop-on-exit", help="Stop the cluster when interrupted"
    ),
) -> None:
    """Start node containers and bootstrap the cluster and its buckets."""
    settings, topology = load(topology_file, password)
    console.print(f"[bold]Starting cluster '{topology.name}'...[/bold]")

    async def _run() -> ResourceSnapshot:
        async with create_http_client(topology, settings.request_timeout) as http:
            states = ResourceStateStore()
            nodes = DockerNodeController(states, poll_interval=settings.docker_poll_interval)
            orchestrator = create_orchestrator(
                topology, settings, http=http, states=states, nodes=nodes
            )
            daemon = OrchestratorDaemon(
                orchestrator,
                watcher=nodes,
                follow=follow,
                stop_on_exit=stop_on_exit,
                on_update=print_update,
            )
            return await daemon.run()

    snapshot = asyncio.run(_run())
    if snapshot.state is ResourceState.RUNNING:
        console.print(f"\n[green]Cluster '{topology.name}' is running[/green]")
        for url in snapshot.urls:
            console.print(f"  Console: {url}")
    elif snapshot.is_terminal:
        console.print(f"\n[red]Cluster '{topology.name}' failed:[/red] {snapshot.error or snapshot.state.value}")
        raise typer.Exit(1)


@cluster_app.command()
def down(
    topology_file: Path = topology_option(),
    password: str = password_option(),
) -> None:
    """Stop every node container of the cluster."""
    settings, topology = load(topology_file, password)
    console.print(f"[bold]Stopping cluster '{topology.name}'...[/bold]")

    async def _run() -> ResourceSnapshot:
        async with create_http_client(topology, settings.request_timeout) as http:
            orchestrator = create_orchestrator(topology, settings, http=http)
            await orchestrator.stop()
            return orchestrator.states.current(topology.name)

    snapshot = asyncio.run(_run())
    if snapshot.exit_code:
        console.print(f"[red]Error:[/red] {snapshot.error}")
        raise typer.Exit(1)
    console.print(f"[green]Cluster '{topology.name}' stopped[/green]")


@cluster_app.command()
def status(
    topology_file: Path = topology_option(),
    password: str = password_option(),
) -> None:
    """Show node containers and bucket health."""
    settings, topology = load(topology_file, password)
    # One attempt per call: status should report, not wait.
    settings = settings.model_copy(update={"retry_attempts": 1})

    async def _collect():
        async with create_http_client(topology, settings.request_timeout) as http:
            states = ResourceStateStore()
            nodes = DockerNodeController(states)
            orchestrator = create_orchestrator(
                topology, settings, http=http, states=states, nodes=nodes
            )
            await nodes.sync(topology.nodes)

            primary = topology.primary
            initialized = None
            bucket_health = {}
            if states.current(primary.name).state is ResourceState.RUNNING:
                try:
                    initialized = await orchestrator.bootstrapper.is_initialized(primary)
                    if initialized:
                        for bucket in topology.buckets:
                            bucket_health[bucket.name] = await orchestrator.buckets.check_health(
                                primary, bucket.bucket_name
                            )
                except ManagementApiError as e:
                    console.print(f"[yellow]Management API unavailable:[/yellow] {e}")
            servers = [s for s in states.snapshots() if s.kind is ResourceKind.SERVER]
            return servers, initialized, bucket_health

    servers, initialized, bucket_health = asyncio.run(_collect())

    table = Table(title=f"{topology.name} Nodes")
    table.add_column("Node", style="cyan")
    table.add_column("State")
    table.add_column("Services", style="yellow")
    table.add_column("Management", style="blue")
    for snapshot in servers:
        node = topology.find_node(snapshot.name)
        primary_mark = " (primary)" if node.is_initial else ""
        table.add_row(
            f"{node.name}{primary_mark}",
            format_state(snapshot.state),
            services_to_wire(node.services),
            topology.management_url(node),
        )
    console.print(table)

    if initialized is None:
        console.print("\n[yellow]Cluster state unknown (primary not reachable)[/yellow]")
        return
    if not initialized:
        console.print("\n[yellow]Cluster not initialized[/yellow]")
        return

    buckets = Table(title="Buckets")
    buckets.add_column("Bucket", style="cyan")
    buckets.add_column("Health")
    for name, result in bucket_health.items():
        health = "[green]healthy[/green]" if result.is_healthy else f"[red]{result.message}[/red]"
        buckets.add_row(name, health)
    console.print(buckets)
