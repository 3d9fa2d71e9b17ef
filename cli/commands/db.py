"""Database Commands - schema setup for local and fresh deployments"""

import asyncio

import typer
from sqlalchemy.exc import SQLAlchemyError

from wayli_jobs.config.settings import Settings, get_settings
from wayli_jobs.infra.database import Database
from wayli_jobs.v1.infra.jobs import models  # noqa: F401
from wayli_jobs.v1.infra.jobs.realtime import install_job_change_trigger

from ..utils.formatting import print_error, print_info, print_success

app = typer.Typer(name="db", help="Database setup commands")


async def init_database(settings: Settings) -> bool:
    """Create tables; on Postgres also install the change trigger."""
    database = Database(settings)
    try:
        await database.create_all()
        if database.engine.dialect.name == "postgresql":
            await install_job_change_trigger(database.engine, settings.realtime_channel)
            return True
        return False
    finally:
        await database.close()


@app.command("init")
def init():
    """🗄️ Create the jobs and workers tables"""
    settings = get_settings()

    try:
        trigger_installed = asyncio.run(init_database(settings))
    except (SQLAlchemyError, OSError) as e:
        print_error(f"Database initialization failed: {e}")
        raise typer.Exit(1) from None

    print_success("Tables created")
    if trigger_installed:
        print_success(f"Change trigger publishing on '{settings.realtime_channel}'")
    else:
        print_info("Not Postgres: live job updates are unavailable")
