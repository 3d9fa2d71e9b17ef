"""Wayli Jobs CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from .client.endpoints import WayliJobsClient, WayliJobsError
from .commands import config, db, jobs, reaper, worker, workers
from .utils.config_manager import config as config_manager
from .utils.formatting import print_info

console = Console()

app = typer.Typer(
    name="wayli-jobs",
    help="🧭 Wayli Jobs - background job queue CLI",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(workers.app, name="workers")
app.add_typer(worker.app, name="worker")
app.add_typer(reaper.app, name="reaper")
app.add_typer(db.app, name="db")
app.add_typer(config.app, name="config")


@app.command()
def status():
    """📊 Check API, database and worker status"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with WayliJobsClient(base_url) as client:
            health = client.health_check()
    except WayliJobsError as e:
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n{e}\n\n"
                f"Make sure the Wayli Jobs API is running at:\n"
                f"[blue]{base_url}[/blue]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    database = health.get("database") or {}
    worker_health = health.get("worker") or {}
    console.print(
        Panel(
            f"🚀 [green]Connected Successfully![/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Database: {'[green]up[/green]' if database.get('connected') else '[red]down[/red]'}\n"
            f"• Active workers: [cyan]{worker_health.get('active_workers', 0)}[/cyan]\n"
            f"• Queue depth: [cyan]{worker_health.get('queue_depth', 0)}[/cyan]\n"
            f"• Stale jobs: [red]{worker_health.get('stale_jobs_count', 0)}[/red]",
            title="System Status",
            border_style="green",
        )
    )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"🧭 [bold cyan]Wayli Jobs CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
