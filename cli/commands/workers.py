"""Workers Commands - inspect worker liveness"""

import typer
from rich.console import Console

from ..client.endpoints import WayliJobsClient, WayliJobsError
from ..utils.formatting import create_workers_table, print_error, print_info

console = Console()
app = typer.Typer(name="workers", help="Worker registry commands")


@app.command("list")
def list_workers(
    window: int | None = typer.Option(
        None, "--window", "-w", help="Liveness window in seconds"
    ),
):
    """👷 List workers with a recent heartbeat"""
    try:
        with WayliJobsClient() as client:
            workers = client.list_workers(window_s=window)

        if not workers:
            print_info("No active workers")
            return

        console.print(create_workers_table(workers))

    except WayliJobsError as e:
        print_error(f"Failed to list workers: {e}")
        raise typer.Exit(1) from None
