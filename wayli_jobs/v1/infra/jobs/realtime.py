"""
Change notification fan-out.

Row changes on ``jobs`` are published by a Postgres trigger over
LISTEN/NOTIFY. A ``JobSubscription`` turns that feed into per-owner
``JobUpdate`` events, reconnects with linear back-off when the channel
drops, and reconciles from the store after every (re)connect because
notifications sent while disconnected are lost.
"""

import asyncio
import json
import re
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal, Protocol
from uuid import UUID

import asyncpg
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from wayli_jobs.config.logging import get_logger
from wayli_jobs.config.settings import Settings
from wayli_jobs.v1.infra.jobs.models import TERMINAL_STATUSES, Job, JobStatus
from wayli_jobs.v1.infra.jobs.schemas import JobUpdate
from wayli_jobs.v1.infra.jobs.store import JobStore

logger = get_logger(__name__)

_TERMINAL = {status.value for status in TERMINAL_STATUSES}
_CHANNEL_NAME = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")
_CONNECT_ERRORS = (OSError, SQLAlchemyError, asyncpg.PostgresError, asyncpg.InterfaceError)


class ChangeFeedError(Exception):
    """The change channel failed or delivered something unusable."""


class SubscriptionClosedError(Exception):
    """Reconnect attempts are exhausted; the caller has to subscribe again."""


@dataclass(frozen=True)
class RowChange:
    """One committed INSERT or UPDATE on the jobs table."""

    event: Literal["INSERT", "UPDATE"]
    new: dict[str, Any]
    old_status: str | None = None

    @classmethod
    def from_payload(cls, payload: str) -> "RowChange":
        try:
            data = json.loads(payload)
            event = data["event"]
            new = data["new"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ChangeFeedError(f"Malformed change payload: {payload[:200]!r}") from exc
        if event not in ("INSERT", "UPDATE") or not isinstance(new, dict):
            raise ChangeFeedError(f"Unsupported change event: {event!r}")
        return cls(event=event, new=new, old_status=data.get("old_status"))


class ChangeChannel(Protocol):
    """An open stream of row changes, delivered in commit order."""

    def __aiter__(self) -> AsyncIterator[RowChange]: ...

    async def close(self) -> None: ...


class ChangeFeed(Protocol):
    """Source of change channels; each ``open`` is one connection."""

    async def open(self) -> ChangeChannel: ...


def notify_trigger_statements(channel: str) -> list[str]:
    """DDL for the trigger that publishes slim job rows on ``channel``."""
    if not _CHANNEL_NAME.match(channel):
        raise ValueError(f"Invalid notification channel name: {channel!r}")

    return [
        """
        CREATE OR REPLACE FUNCTION notify_job_change() RETURNS trigger AS $$
        BEGIN
            PERFORM pg_notify(
                TG_ARGV[0],
                json_build_object(
                    'event', TG_OP,
                    'old_status', CASE WHEN TG_OP = 'UPDATE' THEN OLD.status ELSE NULL END,
                    'new', json_build_object(
                        'id', NEW.id,
                        'type', NEW.type,
                        'status', NEW.status,
                        'progress', NEW.progress,
                        'error', NEW.error,
                        'created_by', NEW.created_by,
                        'updated_at', NEW.updated_at
                    )
                )::text
            );
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
        """,
        "DROP TRIGGER IF EXISTS jobs_notify_change ON jobs",
        f"""
        CREATE TRIGGER jobs_notify_change
            AFTER INSERT OR UPDATE ON jobs
            FOR EACH ROW EXECUTE FUNCTION notify_job_change('{channel}')
        """,
    ]


async def install_job_change_trigger(engine: AsyncEngine, channel: str) -> None:
    """Create or replace the jobs change trigger (Postgres only)."""
    async with engine.begin() as conn:
        for statement in notify_trigger_statements(channel):
            await conn.execute(text(statement))
    logger.info("Installed job change trigger", channel=channel)


class PostgresChangeChannel:
    """LISTEN on one dedicated asyncpg connection."""

    def __init__(self, connection: AsyncConnection, channel: str):
        self._connection = connection
        self._channel = channel
        self._driver: Any = None
        self._queue: asyncio.Queue[RowChange | ChangeFeedError] = asyncio.Queue()
        self._closed = False

    async def start(self) -> None:
        raw = await self._connection.get_raw_connection()
        driver = raw.driver_connection
        if not hasattr(driver, "add_listener"):
            raise ChangeFeedError("Change notifications require the asyncpg driver")
        await driver.add_listener(self._channel, self._on_notify)
        driver.add_termination_listener(self._on_terminate)
        self._driver = driver

    def _on_notify(self, connection: Any, pid: int, channel: str, payload: str) -> None:
        try:
            self._queue.put_nowait(RowChange.from_payload(payload))
        except ChangeFeedError as exc:
            self._queue.put_nowait(exc)

    def _on_terminate(self, connection: Any) -> None:
        self._queue.put_nowait(ChangeFeedError("Listener connection terminated"))

    def __aiter__(self) -> "PostgresChangeChannel":
        return self

    async def __anext__(self) -> RowChange:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, ChangeFeedError):
            raise item
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if self._driver is not None and not self._driver.is_closed():
                await self._driver.remove_listener(self._channel, self._on_notify)
        finally:
            await self._connection.close()


class PostgresChangeFeed:
    """Opens LISTEN channels through the SQLAlchemy engine's asyncpg driver."""

    def __init__(self, engine: AsyncEngine, channel: str):
        self.engine = engine
        self.channel = channel

    async def open(self) -> PostgresChangeChannel:
        try:
            connection = await self.engine.connect()
        except _CONNECT_ERRORS as exc:
            raise ChangeFeedError(f"Cannot connect change feed: {exc}") from exc

        channel = PostgresChangeChannel(connection, self.channel)
        try:
            await connection.execution_options(isolation_level="AUTOCOMMIT")
            await channel.start()
        except _CONNECT_ERRORS as exc:
            await connection.close()
            raise ChangeFeedError(f"Cannot listen on {self.channel!r}: {exc}") from exc
        except BaseException:
            await connection.close()
            raise
        return channel


class JobSubscription:
    """
    Live job updates for one owner.

    Emits an ``update`` event for every change to one of the owner's jobs
    and, additionally, a single ``completed`` event for the change that
    moves a job from queued/running into a terminal status. Events from one
    subscription are yielded in delivery order.
    """

    def __init__(
        self,
        owner: UUID,
        feed: ChangeFeed,
        store: JobStore,
        settings: Settings,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.owner = owner
        self.feed = feed
        self.store = store
        self.settings = settings
        self._sleep = sleep
        # Jobs last seen queued or running.
        self._last_status: dict[UUID, str] = {}
        self._watermark: datetime | None = None
        self._at_watermark: set[UUID] = set()
        self._closed = False
        self.reconnects = 0

    def __aiter__(self) -> AsyncIterator[JobUpdate]:
        return self.events()

    def close(self) -> None:
        self._closed = True

    async def events(self) -> AsyncIterator[JobUpdate]:
        """
        Yield updates until closed.

        Raises:
            SubscriptionClosedError: ``realtime_max_reconnect_attempts``
                consecutive failures without a successful open
        """
        failures = 0
        while not self._closed:
            try:
                channel = await self.feed.open()
            except (ChangeFeedError, OSError) as exc:
                failures += 1
                await self._backoff(failures, exc)
                continue

            failures = 0
            try:
                for update in await self._reconcile():
                    yield update
                async for change in channel:
                    for update in self._apply(change):
                        yield update
                    if self._closed:
                        return
                if self._closed:
                    return
                raise ChangeFeedError("Change channel ended")
            except ChangeFeedError as exc:
                failures += 1
                self.reconnects += 1
                await self._backoff(failures, exc)
            finally:
                await channel.close()

    async def _backoff(self, attempt: int, exc: Exception) -> None:
        max_attempts = self.settings.realtime_max_reconnect_attempts
        if attempt > max_attempts:
            logger.error(
                "Max reconnection attempts reached",
                owner=str(self.owner),
                attempts=max_attempts,
                error=str(exc),
            )
            raise SubscriptionClosedError(
                f"Max reconnection attempts reached ({max_attempts})"
            ) from exc

        delay_s = attempt * self.settings.realtime_reconnect_base_delay_ms / 1000
        logger.warning(
            "Job change channel failed, reconnecting",
            owner=str(self.owner),
            attempt=attempt,
            delay_s=delay_s,
            error=str(exc),
        )
        await self._sleep(delay_s)

    async def _reconcile(self) -> list[JobUpdate]:
        """
        Snapshot what may have changed while no channel was listening.

        That is the owner's active jobs, every job last seen active, and,
        once anything has been delivered, every owner job touched at or
        after the newest ``updated_at`` delivered so far. The last set
        catches jobs created and finished entirely inside the gap.
        """
        jobs = {job.id: job for job in await self.store.list_active(self.owner)}
        tracked = [job_id for job_id in self._last_status if job_id not in jobs]
        for job in await self.store.get_many(tracked):
            if job.created_by == self.owner:
                jobs[job.id] = job
        if self._watermark is not None:
            for job in await self.store.list_changed_since(self._watermark, self.owner):
                jobs.setdefault(job.id, job)

        updates: list[JobUpdate] = []
        for job in sorted(jobs.values(), key=lambda j: j.created_at):
            previous = self._last_status.get(job.id)
            updates.extend(
                self._observe(
                    self._from_job(job), previous=previous, inserted=previous is None
                )
            )
        return updates

    def _apply(self, change: RowChange) -> list[JobUpdate]:
        row = change.new
        try:
            if UUID(str(row["created_by"])) != self.owner:
                return []
            update = JobUpdate(
                event="update",
                job_id=UUID(str(row["id"])),
                type=row["type"],
                status=row["status"],
                progress=row.get("progress") or 0,
                error=row.get("error"),
                updated_at=row.get("updated_at"),
            )
        except (KeyError, ValueError) as exc:
            raise ChangeFeedError(f"Malformed job row in change: {exc}") from exc

        previous = change.old_status
        if previous is None and change.event == "UPDATE":
            previous = self._last_status.get(update.job_id)
        return self._observe(update, previous=previous, inserted=change.event == "INSERT")

    def _observe(
        self, update: JobUpdate, previous: str | None, inserted: bool
    ) -> list[JobUpdate]:
        updates = [update]
        if update.status in _TERMINAL:
            if not self._already_delivered(update) and (
                inserted or (previous is not None and previous not in _TERMINAL)
            ):
                updates.append(update.model_copy(update={"event": "completed"}))
            self._last_status.pop(update.job_id, None)
        else:
            self._last_status[update.job_id] = update.status
        self._advance_watermark(update)
        return updates

    def _already_delivered(self, update: JobUpdate) -> bool:
        """True when this exact job version went out at the current watermark."""
        if update.updated_at is None or self._watermark is None:
            return False
        return (
            _as_utc(update.updated_at) == self._watermark
            and update.job_id in self._at_watermark
        )

    def _advance_watermark(self, update: JobUpdate) -> None:
        if update.updated_at is None:
            return
        stamp = _as_utc(update.updated_at)
        if self._watermark is None or stamp > self._watermark:
            self._watermark = stamp
            self._at_watermark = {update.job_id}
        elif stamp == self._watermark:
            self._at_watermark.add(update.job_id)

    @staticmethod
    def _from_job(job: Job) -> JobUpdate:
        return JobUpdate(
            event="update",
            job_id=job.id,
            type=job.type,
            status=JobStatus(job.status).value,
            progress=job.progress,
            error=job.error,
            result=job.result,
            updated_at=job.updated_at,
            reconciled=True,
        )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
