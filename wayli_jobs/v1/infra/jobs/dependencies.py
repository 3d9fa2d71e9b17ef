"""
FastAPI dependencies wiring the job components to the shared database.
"""

from fastapi import Depends

from wayli_jobs.config.settings import Settings, SettingsDep
from wayli_jobs.infra.database import Database, get_database
from wayli_jobs.v1.infra.jobs.realtime import ChangeFeed, PostgresChangeFeed
from wayli_jobs.v1.infra.jobs.service import JobService
from wayli_jobs.v1.infra.jobs.store import JobStore
from wayli_jobs.v1.infra.jobs.workers import WorkerRegistry


def get_job_store(database: Database = Depends(get_database)) -> JobStore:
    return JobStore(database.SessionLocal)


def get_job_service(
    settings: Settings = SettingsDep, store: JobStore = Depends(get_job_store)
) -> JobService:
    return JobService(settings, store)


def get_worker_registry(
    settings: Settings = SettingsDep, database: Database = Depends(get_database)
) -> WorkerRegistry:
    return WorkerRegistry(database.SessionLocal, settings)


def get_change_feed(
    settings: Settings = SettingsDep, database: Database = Depends(get_database)
) -> ChangeFeed:
    return PostgresChangeFeed(database.engine, settings.realtime_channel)


# Convenience type aliases for dependency injection
JobServiceDep = Depends(get_job_service)
WorkerRegistryDep = Depends(get_worker_registry)
ChangeFeedDep = Depends(get_change_feed)
