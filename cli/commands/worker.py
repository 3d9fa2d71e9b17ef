"""Worker Commands - run job workers in this process"""

import asyncio
import importlib
import signal

import typer

from wayli_jobs.config.logging import setup_logging
from wayli_jobs.config.settings import Settings, get_settings
from wayli_jobs.infra.database import Database
from wayli_jobs.v1.core.registries import job_registry
from wayli_jobs.v1.infra.jobs.store import JobStore
from wayli_jobs.v1.infra.jobs.worker import WorkerPool
from wayli_jobs.v1.infra.jobs.workers import WorkerRegistry

from ..utils.formatting import print_error, print_info, print_warning

app = typer.Typer(name="worker", help="Run background job workers")


def load_processors(modules: list[str]) -> list[str]:
    """Import modules that register processors with the job registry."""
    for module in modules:
        importlib.import_module(module)
    return job_registry.list()


@app.command("run")
def run_worker(
    count: int | None = typer.Option(
        None, "--count", "-c", help="Number of workers (default: WORKER_COUNT)"
    ),
    with_reaper: bool = typer.Option(
        False, "--with-reaper", help="Also run the stale job reaper in this process"
    ),
    imports: list[str] = typer.Option(
        [], "--import", "-i", help="Module that registers processors (repeatable)"
    ),
):
    """⚙️ Poll for jobs and execute them until interrupted"""
    settings = get_settings()
    setup_logging(settings)

    try:
        handlers = load_processors(imports)
    except ImportError as e:
        print_error(f"Failed to import processor module: {e}")
        raise typer.Exit(1) from None

    if handlers:
        print_info(f"Processors: {', '.join(handlers)}")
    else:
        print_warning("No processors registered; claimed jobs will fail as unknown types")

    if settings.environment != "development":
        job_registry.freeze()

    workers = count or settings.worker_count
    print_info(f"Starting {workers} worker(s){' with reaper' if with_reaper else ''}")
    asyncio.run(run_pool(settings, workers, with_reaper))


async def run_pool(settings: Settings, count: int, with_reaper: bool) -> None:
    """Run a worker pool until SIGINT/SIGTERM, then shut it down gracefully."""
    database = Database(settings)
    pool = WorkerPool(
        settings,
        JobStore(database.SessionLocal),
        WorkerRegistry(database.SessionLocal, settings),
        count=count,
        with_reaper=with_reaper,
    )

    loop = asyncio.get_running_loop()
    stopping: list[asyncio.Task] = []

    def request_stop() -> None:
        if not stopping:
            stopping.append(asyncio.create_task(pool.stop(graceful=True)))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop)

    try:
        await pool.run()
        if stopping:
            await stopping[0]
    finally:
        await database.close()
