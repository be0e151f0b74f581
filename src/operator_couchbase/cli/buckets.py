"""Bucket commands."""

import asyncio
from pathlib import Path

import typer

from operator_couchbase.cli.common import console, load, password_option, topology_option
from operator_couchbase.exceptions import ManagementApiError
from operator_couchbase.factory import create_http_client, create_orchestrator

bucket_app = typer.Typer(help="Bucket commands")


@bucket_app.command()
def flush(
    name: str = typer.Argument(..., help="Bucket resource name from the topology"),
    topology_file: Path = topology_option(),
    password: str = password_option(),
) -> None:
    """Remove every document from a bucket and wait for it to be healthy."""
    settings, topology = load(topology_file, password)
    bucket = topology.find_bucket(name)
    if bucket is None:
        console.print(f"[red]Error:[/red] Unknown bucket '{name}'")
        raise typer.Exit(1)

    async def _flush() -> bool:
        async with create_http_client(topology, settings.request_timeout) as http:
            orchestrator = create_orchestrator(topology, settings, http=http)
            primary = topology.primary
            if await orchestrator.client.get_bucket(primary, bucket.bucket_name) is None:
                return False
            await orchestrator.buckets.flush(primary, bucket.bucket_name)
            return True

    try:
        flushed = asyncio.run(_flush())
    except ManagementApiError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if not flushed:
        console.print(f"[red]Error:[/red] Bucket '{bucket.bucket_name}' does not exist")
        raise typer.Exit(1)
    console.print(f"[green]Flushed bucket '{bucket.bucket_name}'[/green]")
