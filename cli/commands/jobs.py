"""Jobs Commands - enqueue, inspect and cancel background jobs"""

import json

import typer
from rich.console import Console

from ..client.endpoints import WayliJobsClient, WayliJobsError
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job commands")

PRIORITIES = ("low", "normal", "high")


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum jobs to show"),
    offset: int = typer.Option(0, "--offset", help="Results offset"),
):
    """📋 List jobs, newest first"""
    try:
        with WayliJobsClient() as client:
            data = client.list_jobs(status=status, type=type, limit=limit, offset=offset)

        jobs = data.get("jobs", [])
        if not jobs:
            print_info("No jobs found")
            return

        console.print(create_jobs_table(jobs))
        console.print(f"[dim]Showing {len(jobs)} of {data.get('total', len(jobs))}[/dim]")

    except WayliJobsError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None


@app.command("show")
def show_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🔍 Show a single job"""
    try:
        with WayliJobsClient() as client:
            job = client.get_job(job_id)
        console.print(create_job_panel(job))

    except WayliJobsError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None


@app.command("enqueue")
def enqueue_job(
    type: str = typer.Argument(..., help="Job type, e.g. reverse_geocoding_missing"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    priority: str = typer.Option("normal", "--priority", help="low, normal or high"),
):
    """➕ Enqueue a new job"""
    if priority not in PRIORITIES:
        print_error(f"Priority must be one of: {', '.join(PRIORITIES)}")
        raise typer.Exit(1)

    try:
        payload_data = json.loads(payload)
    except ValueError:
        print_error("Payload must be valid JSON")
        raise typer.Exit(1) from None
    if not isinstance(payload_data, dict):
        print_error("Payload must be a JSON object")
        raise typer.Exit(1)

    try:
        with WayliJobsClient() as client:
            result = client.enqueue_job(type, payload_data, priority)
        print_success(f"Job enqueued: {result.get('job_id')} ({result.get('status')})")

    except WayliJobsError as e:
        print_error(f"Failed to enqueue job: {e}")
        raise typer.Exit(1) from None


@app.command("cancel")
def cancel_job(job_id: str = typer.Argument(..., help="Job ID")):
    """🛑 Cancel a queued or running job"""
    try:
        with WayliJobsClient() as client:
            job = client.cancel_job(job_id)
        print_success(f"Job cancelled: {job.get('id', job_id)}")

    except WayliJobsError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None


@app.command("stats")
def job_stats():
    """📊 Show job statistics"""
    try:
        with WayliJobsClient() as client:
            stats = client.get_job_stats()
        console.print(create_stats_panel(stats))

    except WayliJobsError as e:
        print_error(f"Failed to get job statistics: {e}")
        raise typer.Exit(1) from None
