"""Couchbase operator CLI - bootstrap and manage a local cluster."""

import logging

import typer
from rich.logging import RichHandler

from operator_couchbase.cli.buckets import bucket_app
from operator_couchbase.cli.cluster import cluster_app
from operator_couchbase.cli.common import console

app = typer.Typer(
    name="couchbase-operator",
    help="Bootstrap multi-node Couchbase clusters from node containers",
    no_args_is_help=True,
)

# Add command groups
app.add_typer(cluster_app, name="cluster")
app.add_typer(bucket_app, name="bucket")


@app.callback()
def configure(
    log_level: str = typer.Option(
        "INFO", "--log-level", envvar="COUCHBASE_LOG_LEVEL", help="Logging level"
    ),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    # Request lines from httpx are noise next to orchestrator progress.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
