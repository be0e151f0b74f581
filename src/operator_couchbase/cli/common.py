"""Helpers shared by CLI commands: console, settings and topology loading."""

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console

from operator_couchbase.config import OperatorSettings, load_topology
from operator_couchbase.exceptions import TopologyValidationError
from operator_couchbase.state import ResourceSnapshot, ResourceState
from operator_couchbase.topology import ClusterTopology

console = Console()

STATE_STYLES = {
    ResourceState.RUNNING: "green",
    ResourceState.FAILED_TO_START: "red",
    ResourceState.EXITED: "red",
    ResourceState.STOPPING: "yellow",
    ResourceState.NOT_STARTED: "dim",
}


def topology_option():
    return typer.Option(
        None,
        "--topology",
        "-t",
        envvar="COUCHBASE_TOPOLOGY_FILE",
        help="Path to the JSON topology file",
    )


def password_option():
    return typer.Option(
        None,
        "--password",
        envvar="COUCHBASE_PASSWORD",
        help="Administrator password (overrides the topology file)",
    )


def load(
    topology_file: Path | None, password: str | None
) -> tuple[OperatorSettings, ClusterTopology]:
    """Read settings and the topology file, exiting with an error message on failure."""
    settings = OperatorSettings()
    path = topology_file or settings.topology_file
    try:
        topology = load_topology(path, password=password or settings.password)
        topology.validate()
    except (OSError, ValidationError, ValueError, TopologyValidationError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    return settings, topology


def format_state(state: ResourceState) -> str:
    style = STATE_STYLES.get(state, "cyan")
    return f"[{style}]{state.value}[/{style}]"


def print_update(snapshot: ResourceSnapshot) -> None:
    """Print one state transition; the initial NotStarted replay is skipped."""
    if snapshot.state is ResourceState.NOT_STARTED:
        return
    line = f"{snapshot.kind.value:>12} [bold]{snapshot.name}[/bold] {format_state(snapshot.state)}"
    if snapshot.error:
        line += f" [red]{snapshot.error}[/red]"
    console.print(line)
