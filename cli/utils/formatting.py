"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "queued": "yellow",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]], title: str = "Jobs") -> Table:
    """Create a formatted table for a jobs list"""
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Status", justify="center")
    table.add_column("Priority", justify="center", style="yellow")
    table.add_column("Progress", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Worker", justify="left", style="blue")
    table.add_column("Created", justify="left", style="dim")

    for job in jobs:
        table.add_row(
            str(job.get("id", ""))[:8],
            job.get("type", ""),
            format_status(job.get("status", "")),
            job.get("priority", ""),
            f"{job.get('progress', 0)}%",
            str(job.get("retry_count", 0)),
            job.get("worker_id") or "—",
            str(job.get("created_at", ""))[:19],
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create a detail panel for a single job"""
    lines = [
        f"• ID: [cyan]{job.get('id')}[/cyan]",
        f"• Type: [magenta]{job.get('type')}[/magenta]",
        f"• Status: {format_status(job.get('status', ''))}",
        f"• Priority: [yellow]{job.get('priority')}[/yellow]",
        f"• Progress: {job.get('progress', 0)}%",
        f"• Retries: {job.get('retry_count', 0)}",
    ]
    if job.get("worker_id"):
        lines.append(f"• Worker: [blue]{job['worker_id']}[/blue]")
    if job.get("last_error"):
        lines.append(f"• Last error: [yellow]{job['last_error']}[/yellow]")
    if job.get("error"):
        lines.append(f"• Error: [red]{job['error']}[/red]")
    if job.get("result") is not None:
        lines.append(f"• Result: [dim]{job['result']}[/dim]")

    return Panel("\n".join(lines), title="Job", border_style="cyan")


def create_workers_table(workers: list[dict[str, Any]]) -> Table:
    """Create a formatted table for active workers"""
    table = Table(title="Active Workers", box=box.ROUNDED)

    table.add_column("Worker", justify="left", style="cyan", no_wrap=True)
    table.add_column("Status", justify="center")
    table.add_column("Current Job", justify="left", style="magenta")
    table.add_column("Last Heartbeat", justify="left", style="dim")

    for worker in workers:
        status = worker.get("status", "")
        table.add_row(
            worker.get("id", ""),
            f"[green]{status}[/green]" if status == "idle" else f"[yellow]{status}[/yellow]",
            str(worker.get("current_job") or "—")[:8],
            str(worker.get("last_heartbeat", ""))[:19],
        )

    return table


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for job statistics"""
    by_status = stats.get("by_status", {})
    status_lines = "\n".join(
        f"  {format_status(status)}: {count}" for status, count in sorted(by_status.items())
    )
    by_type = stats.get("by_type", {})
    type_lines = "\n".join(
        f"  [magenta]{job_type}[/magenta]: {count}"
        for job_type, count in sorted(by_type.items())
    )

    content = (
        f"• Total jobs: [blue]{stats.get('total_jobs', 0)}[/blue]\n"
        f"• Queue depth: [cyan]{stats.get('queue_depth', 0)}[/cyan]\n"
        f"• Failed (last hour): [red]{stats.get('failed_last_hour', 0)}[/red]\n\n"
        f"[bold]By status[/bold]\n{status_lines or '  —'}\n\n"
        f"[bold]By type[/bold]\n{type_lines or '  —'}"
    )

    return Panel(content, title="Job Statistics", border_style="green")
