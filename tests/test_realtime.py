"""Tests for change notification fan-out and subscription reconnects."""

import asyncio
import json
from uuid import uuid4

import asyncpg
import pytest
from sqlalchemy.exc import SQLAlchemyError

from wayli_jobs.infra.database import utcnow
from wayli_jobs.v1.infra.jobs.models import JobStatus, JobType
from wayli_jobs.v1.infra.jobs.realtime import (
    ChangeFeedError,
    JobSubscription,
    PostgresChangeFeed,
    RowChange,
    SubscriptionClosedError,
    notify_trigger_statements,
)
from wayli_jobs.v1.infra.jobs.routes import job_event_stream


class FakeChannel:
    """Replays a scripted list of changes, then waits for more."""

    def __init__(self, script):
        self._queue: asyncio.Queue = asyncio.Queue()
        for item in script:
            self._queue.put_nowait(item)
        self.closed = False

    def push(self, item) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        self.closed = True


class FakeFeed:
    """Hands out one scripted channel per open; fails while ``open_failures`` lasts."""

    def __init__(self, *scripts, open_failures: int = 0):
        self.scripts = list(scripts)
        self.open_failures = open_failures
        self.channels: list[FakeChannel] = []
        self.opens = 0

    async def open(self) -> FakeChannel:
        self.opens += 1
        if self.open_failures:
            self.open_failures -= 1
            raise ChangeFeedError("connection refused")
        channel = FakeChannel(self.scripts.pop(0) if self.scripts else [])
        self.channels.append(channel)
        return channel


class RecordingSleep:
    def __init__(self, on_sleep=None):
        self.delays: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.on_sleep is not None:
            await self.on_sleep()


def _change(event, job_id, owner, status, old_status=None, progress=0):
    return RowChange(
        event=event,
        new={
            "id": str(job_id),
            "type": JobType.DATA_IMPORT.value,
            "status": status,
            "progress": progress,
            "error": None,
            "created_by": str(owner),
            "updated_at": utcnow().isoformat(),
        },
        old_status=old_status,
    )


async def _take(events, count):
    return [await anext(events) for _ in range(count)]


class TestRowChange:
    def test_from_payload(self):
        job_id = uuid4()
        payload = json.dumps(
            {
                "event": "UPDATE",
                "old_status": "queued",
                "new": {"id": str(job_id), "status": "running"},
            }
        )

        change = RowChange.from_payload(payload)

        assert change.event == "UPDATE"
        assert change.old_status == "queued"
        assert change.new["id"] == str(job_id)

    @pytest.mark.parametrize(
        "payload",
        ["not json", "{}", '{"event": "DELETE", "new": {}}', '{"event": "INSERT", "new": 5}'],
    )
    def test_malformed_payload(self, payload):
        with pytest.raises(ChangeFeedError):
            RowChange.from_payload(payload)

    def test_trigger_statements_use_channel(self):
        statements = notify_trigger_statements("job_changes")

        assert len(statements) == 3
        assert "pg_notify" in statements[0]
        assert "notify_job_change('job_changes')" in statements[2]

    def test_trigger_rejects_unsafe_channel(self):
        with pytest.raises(ValueError, match="Invalid notification channel"):
            notify_trigger_statements("jobs'; DROP TABLE jobs; --")


class TestSubscription:
    async def test_live_updates_and_single_completed_event(self, store, settings, owner):
        job_id = uuid4()
        feed = FakeFeed(
            [
                _change("INSERT", job_id, owner, "queued"),
                _change("UPDATE", job_id, owner, "running", old_status="queued"),
                _change("UPDATE", job_id, owner, "running", old_status="running", progress=50),
                _change("UPDATE", job_id, owner, "completed", old_status="running", progress=100),
            ]
        )
        subscription = JobSubscription(owner, feed, store, settings)
        events = subscription.events()

        received = await _take(events, 5)
        await events.aclose()

        assert [(e.event, e.status) for e in received] == [
            ("update", "queued"),
            ("update", "running"),
            ("update", "running"),
            ("update", "completed"),
            ("completed", "completed"),
        ]
        assert received[2].progress == 50
        assert all(not e.reconciled for e in received)
        assert feed.channels[0].closed is True

    async def test_other_owners_are_filtered(self, store, settings, owner):
        mine = uuid4()
        feed = FakeFeed(
            [
                _change("INSERT", uuid4(), uuid4(), "queued"),
                _change("INSERT", mine, owner, "queued"),
            ]
        )
        events = JobSubscription(owner, feed, store, settings).events()

        received = await _take(events, 1)
        await events.aclose()

        assert received[0].job_id == mine

    async def test_terminal_to_terminal_is_not_completed_again(self, store, settings, owner):
        job_id = uuid4()
        feed = FakeFeed(
            [
                _change("UPDATE", job_id, owner, "running", old_status="queued"),
                _change("UPDATE", job_id, owner, "failed", old_status="running"),
                _change("UPDATE", job_id, owner, "failed", old_status="failed"),
                _change("INSERT", uuid4(), owner, "queued"),
            ]
        )
        events = JobSubscription(owner, feed, store, settings).events()

        received = await _take(events, 5)
        await events.aclose()

        assert [e.event for e in received] == [
            "update",
            "update",
            "completed",
            "update",
            "update",
        ]

    async def test_update_without_old_status_uses_last_seen(self, store, settings, owner):
        job_id = uuid4()
        feed = FakeFeed(
            [
                _change("UPDATE", job_id, owner, "running"),
                _change("UPDATE", job_id, owner, "cancelled"),
            ]
        )
        events = JobSubscription(owner, feed, store, settings).events()

        received = await _take(events, 3)
        await events.aclose()

        assert [e.event for e in received] == ["update", "update", "completed"]

    async def test_reconnect_reconciles_missed_changes(self, queue, store, settings, owner):
        job = await store.enqueue(JobType.TRIP_GENERATION, {}, owner)

        async def finish_job_while_disconnected():
            claimed = await queue.claim_next("worker-1")
            await queue.report_success(claimed.id, {"trips": 2}, worker_id="worker-1")

        sleep = RecordingSleep(finish_job_while_disconnected)
        feed = FakeFeed([ChangeFeedError("connection reset")], [])
        subscription = JobSubscription(owner, feed, store, settings, sleep=sleep)
        events = subscription.events()

        snapshot = await _take(events, 1)
        after_reconnect = await _take(events, 2)
        await events.aclose()

        assert snapshot[0].job_id == job.id
        assert snapshot[0].status == JobStatus.QUEUED.value
        assert snapshot[0].reconciled is True

        assert [(e.event, e.status) for e in after_reconnect] == [
            ("update", "completed"),
            ("completed", "completed"),
        ]
        assert after_reconnect[1].result == {"trips": 2}
        assert subscription.reconnects == 1
        assert sleep.delays == [0.0]
        assert all(channel.closed for channel in feed.channels)

    async def test_reconnect_catches_job_created_and_finished_while_disconnected(
        self, queue, store, settings, owner
    ):
        waiting = await store.enqueue(JobType.DATA_IMPORT, {}, owner)
        created = {}

        async def run_new_job_while_disconnected():
            job = await store.enqueue(JobType.TRIP_GENERATION, {}, owner, priority="high")
            claimed = await queue.claim_next("worker-1")
            await queue.report_success(claimed.id, {"trips": 1}, worker_id="worker-1")
            created["job"] = job

        sleep = RecordingSleep(run_new_job_while_disconnected)
        feed = FakeFeed([ChangeFeedError("connection reset")], [])
        events = JobSubscription(owner, feed, store, settings, sleep=sleep).events()

        snapshot = await _take(events, 1)
        after_reconnect = await _take(events, 3)
        await events.aclose()

        finished = created["job"]
        assert snapshot[0].job_id == waiting.id
        assert [(e.event, e.job_id, e.status) for e in after_reconnect] == [
            ("update", waiting.id, "queued"),
            ("update", finished.id, "completed"),
            ("completed", finished.id, "completed"),
        ]
        assert after_reconnect[2].result == {"trips": 1}

    async def test_finished_jobs_are_not_tracked(self, store, settings, owner):
        done, pending = uuid4(), uuid4()
        feed = FakeFeed(
            [
                _change("INSERT", done, owner, "queued"),
                _change("UPDATE", done, owner, "completed", old_status="queued"),
                _change("INSERT", pending, owner, "queued"),
            ]
        )
        subscription = JobSubscription(owner, feed, store, settings)
        events = subscription.events()

        received = await _take(events, 4)
        await events.aclose()

        assert [e.event for e in received] == ["update", "update", "completed", "update"]
        assert subscription._last_status == {pending: "queued"}

    async def test_completed_is_not_repeated_after_reconnect(self, queue, store, settings, owner):
        job = await store.enqueue(JobType.TRIP_GENERATION, {}, owner)
        await queue.claim_next("worker-1")
        await queue.report_success(job.id, {}, worker_id="worker-1")
        done = _change("UPDATE", job.id, owner, "completed", old_status="running")

        feed = FakeFeed([done, ChangeFeedError("dropped")], [done])
        events = JobSubscription(owner, feed, store, settings, sleep=RecordingSleep()).events()

        received = await _take(events, 3)
        await events.aclose()

        assert [e.event for e in received] == ["update", "completed", "update"]

    async def test_malformed_row_triggers_reconnect(self, store, settings, owner):
        job_id = uuid4()
        broken = RowChange(event="INSERT", new={"created_by": str(owner)})
        feed = FakeFeed([broken], [_change("INSERT", job_id, owner, "queued")])
        sleep = RecordingSleep()
        subscription = JobSubscription(owner, feed, store, settings, sleep=sleep)
        events = subscription.events()

        received = await _take(events, 1)
        await events.aclose()

        assert received[0].job_id == job_id
        assert subscription.reconnects == 1

    async def test_gives_up_after_max_attempts(self, store, settings, owner):
        settings = settings.model_copy(
            update={
                "realtime_max_reconnect_attempts": 5,
                "realtime_reconnect_base_delay_ms": 1000,
            }
        )
        feed = FakeFeed(open_failures=100)
        sleep = RecordingSleep()
        events = JobSubscription(owner, feed, store, settings, sleep=sleep).events()

        with pytest.raises(SubscriptionClosedError, match="Max reconnection attempts"):
            await anext(events)

        assert sleep.delays == [1.0, 2.0, 3.0, 4.0, 5.0]
        assert feed.opens == 6

    async def test_successful_open_resets_failures(self, store, settings, owner):
        settings = settings.model_copy(update={"realtime_max_reconnect_attempts": 2})
        job_id = uuid4()
        feed = FakeFeed(
            [ChangeFeedError("drop 1")],
            [ChangeFeedError("drop 2")],
            [ChangeFeedError("drop 3")],
            [_change("INSERT", job_id, owner, "queued")],
        )
        subscription = JobSubscription(owner, feed, store, settings, sleep=RecordingSleep())
        events = subscription.events()

        received = await _take(events, 1)
        await events.aclose()

        assert received[0].job_id == job_id
        assert subscription.reconnects == 3


class FakeConnection:
    def __init__(self, start_error=None):
        self.start_error = start_error
        self.closed = False

    async def execution_options(self, **options):
        return self

    async def get_raw_connection(self):
        raise self.start_error

    async def close(self) -> None:
        self.closed = True


class FakeEngine:
    def __init__(self, connect_error=None, connection=None):
        self.connect_error = connect_error
        self.connection = connection
        self.connects = 0

    async def connect(self):
        self.connects += 1
        if self.connect_error is not None:
            raise self.connect_error
        return self.connection


class TestPostgresChangeFeed:
    @pytest.mark.parametrize(
        "error",
        [
            asyncpg.exceptions.TooManyConnectionsError("sorry, too many clients already"),
            asyncpg.exceptions.CannotConnectNowError("the database system is starting up"),
            asyncpg.InterfaceError("connection is closed"),
            SQLAlchemyError("pool exhausted"),
            ConnectionRefusedError("connection refused"),
        ],
    )
    async def test_connect_failures_become_feed_errors(self, error):
        feed = PostgresChangeFeed(FakeEngine(connect_error=error), "job_changes")

        with pytest.raises(ChangeFeedError, match="Cannot connect change feed"):
            await feed.open()

    async def test_listen_failure_closes_connection(self):
        connection = FakeConnection(start_error=SQLAlchemyError("connection invalidated"))
        feed = PostgresChangeFeed(FakeEngine(connection=connection), "job_changes")

        with pytest.raises(ChangeFeedError, match="Cannot listen on 'job_changes'"):
            await feed.open()

        assert connection.closed is True

    async def test_subscription_backs_off_on_driver_errors(self, store, settings, owner):
        settings = settings.model_copy(
            update={
                "realtime_max_reconnect_attempts": 3,
                "realtime_reconnect_base_delay_ms": 1000,
            }
        )
        engine = FakeEngine(
            connect_error=asyncpg.exceptions.TooManyConnectionsError("too many clients")
        )
        sleep = RecordingSleep()
        feed = PostgresChangeFeed(engine, "job_changes")
        events = JobSubscription(owner, feed, store, settings, sleep=sleep).events()

        with pytest.raises(SubscriptionClosedError, match="Max reconnection attempts"):
            await anext(events)

        assert sleep.delays == [1.0, 2.0, 3.0]
        assert engine.connects == 4


class TestEventStream:
    async def test_stream_frames(self, store, settings, owner):
        job_id = uuid4()
        feed = FakeFeed(
            [
                _change("UPDATE", job_id, owner, "running", old_status="queued"),
                _change("UPDATE", job_id, owner, "completed", old_status="running"),
            ]
        )
        subscription = JobSubscription(owner, feed, store, settings)
        stream = job_event_stream(subscription, heartbeat_s=30)

        frames = [await anext(stream) for _ in range(4)]
        await stream.aclose()

        assert frames[0].startswith("event: connected\n")
        assert frames[1].startswith("event: update\n")
        assert frames[2].startswith("event: update\n")
        assert frames[3].startswith("event: completed\n")
        data = json.loads(frames[3].split("data: ", 1)[1])
        assert data["job_id"] == str(job_id)
        assert data["status"] == "completed"

    async def test_stream_heartbeat(self, store, settings, owner):
        subscription = JobSubscription(owner, FakeFeed([]), store, settings)
        stream = job_event_stream(subscription, heartbeat_s=0.05)

        frames = [await anext(stream) for _ in range(2)]
        await stream.aclose()

        assert frames[1].startswith("event: heartbeat\n")

    async def test_stream_reports_closed_subscription(self, store, settings, owner):
        settings = settings.model_copy(update={"realtime_max_reconnect_attempts": 1})
        subscription = JobSubscription(
            owner, FakeFeed(open_failures=10), store, settings, sleep=RecordingSleep()
        )

        frames = [frame async for frame in job_event_stream(subscription, heartbeat_s=30)]

        assert len(frames) == 2
        assert frames[1].startswith("event: error\n")
        assert "Max reconnection attempts reached" in frames[1]
