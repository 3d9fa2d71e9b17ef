"""Reaper Commands - reclaim jobs abandoned by dead workers"""

import asyncio
import signal

import typer
from sqlalchemy.exc import SQLAlchemyError

from wayli_jobs.config.logging import setup_logging
from wayli_jobs.config.settings import Settings, get_settings
from wayli_jobs.infra.database import Database
from wayli_jobs.v1.infra.jobs.models import Job
from wayli_jobs.v1.infra.jobs.queue import JobQueue
from wayli_jobs.v1.infra.jobs.reaper import StaleJobReaper
from wayli_jobs.v1.infra.jobs.store import JobStore

from ..utils.formatting import create_jobs_table, console, print_error, print_info, print_success

app = typer.Typer(name="reaper", help="Stale job reaper commands")


def _build_reaper(settings: Settings, database: Database) -> StaleJobReaper:
    return StaleJobReaper(JobQueue(JobStore(database.SessionLocal), settings), settings)


async def sweep_once(settings: Settings) -> list[Job]:
    database = Database(settings)
    try:
        return await _build_reaper(settings, database).sweep()
    finally:
        await database.close()


async def run_forever(settings: Settings) -> None:
    database = Database(settings)
    reaper = _build_reaper(settings, database)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, reaper.stop)

    try:
        await reaper.run()
    finally:
        await database.close()


@app.command("sweep")
def sweep():
    """🧹 Reclaim stale running jobs once"""
    settings = get_settings()
    setup_logging(settings)

    try:
        reclaimed = asyncio.run(sweep_once(settings))
    except (SQLAlchemyError, OSError) as e:
        print_error(f"Sweep failed: {e}")
        raise typer.Exit(1) from None

    if not reclaimed:
        print_info("No stale jobs found")
        return

    print_success(f"Reclaimed {len(reclaimed)} stale job(s)")
    console.print(
        create_jobs_table(
            [
                {
                    "id": str(job.id),
                    "type": job.type,
                    "status": job.status,
                    "priority": job.priority,
                    "progress": job.progress,
                    "retry_count": job.retry_count,
                    "created_at": job.created_at.isoformat(),
                }
                for job in reclaimed
            ],
            title="Reclaimed Jobs",
        )
    )


@app.command("run")
def run():
    """🔁 Sweep for stale jobs every JOB_REAPER_INTERVAL_S until interrupted"""
    settings = get_settings()
    setup_logging(settings)
    print_info(
        f"Reaping jobs running longer than {settings.job_timeout_s}s "
        f"every {settings.job_reaper_interval_s}s"
    )
    asyncio.run(run_forever(settings))
