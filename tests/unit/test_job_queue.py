"""Unit tests for the in-process job queue."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from lendwatch.errors import TransientError, UnrecoverableJobError
from lendwatch.jobs import (
    Backoff,
    HealthCheckPayload,
    JobDefinition,
    JobEvent,
    JobEventKind,
    JobQueue,
    JobState,
    LiquidationPayload,
    NotificationPayload,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def queue(clock: FakeClock) -> JobQueue:
    q = JobQueue(clock=clock)
    q.register(
        JobDefinition(
            name="liquidation",
            handler=AsyncMock(),
            payload_type=LiquidationPayload,
            concurrency=1,
            attempts=3,
            backoff=Backoff("exponential", 5.0),
            lease_seconds=300.0,
            priority=1,
        )
    )
    q.register(
        JobDefinition(
            name="health-check",
            handler=AsyncMock(),
            payload_type=HealthCheckPayload,
            concurrency=2,
            attempts=2,
            backoff=Backoff("fixed", 1.0),
            lease_seconds=60.0,
        )
    )
    q.register(
        JobDefinition(
            name="notification",
            handler=AsyncMock(),
            payload_type=NotificationPayload,
            concurrency=4,
        )
    )
    return q


def _liquidation(position_id: str = "p1") -> LiquidationPayload:
    return LiquidationPayload(position_id=position_id, triggered_health_factor=0.9)


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_unknown_type(self, queue: JobQueue) -> None:
        with pytest.raises(ValueError, match="Unknown job type"):
            await queue.enqueue("nope", HealthCheckPayload())

    @pytest.mark.asyncio
    async def test_payload_must_match_type(self, queue: JobQueue) -> None:
        with pytest.raises(TypeError):
            await queue.enqueue("liquidation", HealthCheckPayload())

    @pytest.mark.asyncio
    async def test_defaults_from_definition(self, queue: JobQueue) -> None:
        job = await queue.enqueue("liquidation", _liquidation())
        assert job.priority == 1
        assert job.max_attempts == 3
        assert job.state is JobState.WAITING

    @pytest.mark.asyncio
    async def test_duplicate_job_id_is_noop(self, queue: JobQueue) -> None:
        first = await queue.enqueue("liquidation", _liquidation(), job_id="liquidate:p1")
        second = await queue.enqueue("liquidation", _liquidation(), job_id="liquidate:p1")
        assert first is second
        assert queue.counts()["waiting"] == 1

    @pytest.mark.asyncio
    async def test_job_id_reusable_after_finish(self, queue: JobQueue) -> None:
        first = await queue.enqueue("liquidation", _liquidation(), job_id="liquidate:p1")
        leased = await queue.next_job(timeout=0)
        await queue.complete(leased, leased.lease_token)
        second = await queue.enqueue("liquidation", _liquidation(), job_id="liquidate:p1")
        assert second is not first
        assert second.state is JobState.WAITING

    @pytest.mark.asyncio
    async def test_pruning_keeps_live_job_with_reused_id(
        self, queue: JobQueue, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr("lendwatch.jobs.queue.MAX_FINISHED_JOBS", 2)
        await queue.enqueue("health-check", HealthCheckPayload(), job_id="repeat:k")
        leased = await queue.next_job(timeout=0)
        await queue.complete(leased, leased.lease_token)
        live = await queue.enqueue("health-check", HealthCheckPayload(), job_id="repeat:k")

        # Two more finished jobs push the first repeat:k out of the history.
        for position_id in ("a", "b"):
            await queue.enqueue("liquidation", _liquidation(position_id))
            other = await queue.next_job(timeout=0)
            assert other.name == "liquidation"
            await queue.complete(other, other.lease_token)

        assert queue.get_job("repeat:k") is live
        again = await queue.enqueue("health-check", HealthCheckPayload(), job_id="repeat:k")
        assert again is live
        assert queue.counts()["waiting"] == 1

    @pytest.mark.asyncio
    async def test_closed_queue_rejects(self, queue: JobQueue) -> None:
        await queue.close()
        assert queue.closed
        with pytest.raises(RuntimeError):
            await queue.enqueue("liquidation", _liquidation())
        assert await queue.next_job(timeout=0) is None


class TestDispatch:
    @pytest.mark.asyncio
    async def test_lower_priority_value_first(self, queue: JobQueue) -> None:
        await queue.enqueue("health-check", HealthCheckPayload())
        await queue.enqueue("liquidation", _liquidation())
        job = await queue.next_job(timeout=0)
        assert job.name == "liquidation"
        assert job.state is JobState.ACTIVE
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self, queue: JobQueue) -> None:
        a = await queue.enqueue("health-check", HealthCheckPayload(("a",)))
        b = await queue.enqueue("health-check", HealthCheckPayload(("b",)))
        assert (await queue.next_job(timeout=0)) is a
        assert (await queue.next_job(timeout=0)) is b

    @pytest.mark.asyncio
    async def test_concurrency_limit_per_type(self, queue: JobQueue) -> None:
        await queue.enqueue("liquidation", _liquidation("p1"))
        await queue.enqueue("liquidation", _liquidation("p2"))
        first = await queue.next_job(timeout=0)
        assert first is not None
        assert await queue.next_job(timeout=0) is None

        await queue.complete(first, first.lease_token, "ok")
        second = await queue.next_job(timeout=0)
        assert second.payload.position_id == "p2"

    @pytest.mark.asyncio
    async def test_delayed_job_waits(self, queue: JobQueue, clock: FakeClock) -> None:
        await queue.enqueue("health-check", HealthCheckPayload(), delay=10)
        assert await queue.next_job(timeout=0) is None
        clock.now += 10
        assert await queue.next_job(timeout=0) is not None


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_complete_emits_event(self, queue: JobQueue) -> None:
        events: list[JobEvent] = []
        queue.subscribe(events.append)
        job = await queue.enqueue("liquidation", _liquidation())
        leased = await queue.next_job(timeout=0)

        assert await queue.complete(leased, leased.lease_token, {"state": "settled"})
        assert job.state is JobState.COMPLETED
        assert job.done.is_set()
        assert [e.kind for e in events] == [JobEventKind.COMPLETED]
        assert events[0].result == {"state": "settled"}

    @pytest.mark.asyncio
    async def test_retry_with_exponential_backoff(
        self, queue: JobQueue, clock: FakeClock
    ) -> None:
        job = await queue.enqueue("liquidation", _liquidation())

        leased = await queue.next_job(timeout=0)
        await queue.fail(leased, leased.lease_token, TransientError("rpc down"))
        assert job.state is JobState.WAITING
        assert job.available_at == pytest.approx(clock.now + 5.0)

        clock.now += 5.0
        leased = await queue.next_job(timeout=0)
        await queue.fail(leased, leased.lease_token, TransientError("rpc down"))
        assert job.available_at == pytest.approx(clock.now + 10.0)

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, queue: JobQueue, clock: FakeClock) -> None:
        events: list[JobEvent] = []
        queue.subscribe(events.append)
        job = await queue.enqueue("health-check", HealthCheckPayload())

        for _ in range(2):
            leased = await queue.next_job(timeout=0)
            await queue.fail(leased, leased.lease_token, TransientError("store timeout"))
            clock.now += 1.0

        assert job.state is JobState.FAILED
        assert job.failed_reason == "store timeout"
        assert [e.kind for e in events] == [JobEventKind.FAILED]
        assert events[0].attempts_made == 2

    @pytest.mark.asyncio
    async def test_unrecoverable_fails_immediately(self, queue: JobQueue) -> None:
        job = await queue.enqueue("liquidation", _liquidation())
        leased = await queue.next_job(timeout=0)
        await queue.fail(leased, leased.lease_token, UnrecoverableJobError("reverted"))
        assert job.state is JobState.FAILED
        assert job.attempts_made == 1

    @pytest.mark.asyncio
    async def test_per_job_attempts_override(self, queue: JobQueue) -> None:
        job = await queue.enqueue("liquidation", _liquidation(), attempts=1)
        leased = await queue.next_job(timeout=0)
        await queue.fail(leased, leased.lease_token, TransientError("x"))
        assert job.state is JobState.FAILED

    @pytest.mark.asyncio
    async def test_stale_token_ignored(self, queue: JobQueue) -> None:
        await queue.enqueue("liquidation", _liquidation())
        leased = await queue.next_job(timeout=0)
        assert not await queue.complete(leased, leased.lease_token - 1)
        assert leased.state is JobState.ACTIVE

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_propagate(self, queue: JobQueue) -> None:
        def broken(event: JobEvent) -> None:
            raise RuntimeError("listener bug")

        received = AsyncMock()
        queue.subscribe(broken)
        unsubscribe = queue.subscribe(received)
        await queue.enqueue("liquidation", _liquidation())
        leased = await queue.next_job(timeout=0)
        await queue.complete(leased, leased.lease_token)
        received.assert_awaited_once()

        unsubscribe()
        await queue.enqueue("liquidation", _liquidation("p2"))
        leased = await queue.next_job(timeout=0)
        await queue.complete(leased, leased.lease_token)
        received.assert_awaited_once()


class TestStalls:
    @pytest.mark.asyncio
    async def test_expired_lease_requeued(self, queue: JobQueue, clock: FakeClock) -> None:
        events: list[JobEvent] = []
        queue.subscribe(events.append)
        job = await queue.enqueue("liquidation", _liquidation())
        leased = await queue.next_job(timeout=0)
        stale_token = leased.lease_token

        clock.now += 299
        assert await queue.reap_stalled() == []

        clock.now += 2
        assert await queue.reap_stalled() == [job]
        assert job.state is JobState.WAITING
        assert [e.kind for e in events] == [JobEventKind.STALLED]

        # The presumed-dead attempt reports late; its result is dropped.
        assert not await queue.complete(job, stale_token, "late")

        again = await queue.next_job(timeout=0)
        assert again is job
        assert job.attempts_made == 2

    @pytest.mark.asyncio
    async def test_stalled_too_often_fails(self, queue: JobQueue, clock: FakeClock) -> None:
        job = await queue.enqueue("health-check", HealthCheckPayload())
        for _ in range(2):
            await queue.next_job(timeout=0)
            clock.now += 61
            await queue.reap_stalled()
        assert job.state is JobState.FAILED
        assert "stalled" in job.failed_reason


class TestRepeatables:
    def test_register_replaces_same_key(self, queue: JobQueue) -> None:
        queue.register_repeatable("health", "health-check", 30, HealthCheckPayload())
        queue.register_repeatable("health", "health-check", 15, HealthCheckPayload())
        assert queue.repeatable_keys() == ["health"]

    def test_unknown_job_type_rejected(self, queue: JobQueue) -> None:
        with pytest.raises(ValueError):
            queue.register_repeatable("x", "nope", 30, HealthCheckPayload())

    def test_non_positive_period_rejected(self, queue: JobQueue) -> None:
        with pytest.raises(ValueError):
            queue.register_repeatable("x", "health-check", 0, HealthCheckPayload())

    def test_clear(self, queue: JobQueue) -> None:
        queue.register_repeatable("a", "health-check", 30, HealthCheckPayload())
        queue.register_repeatable("b", "health-check", 60, HealthCheckPayload())
        assert queue.clear_repeatables() == 2
        assert queue.repeatable_keys() == []
        assert queue.remove_repeatable("a") is False

    @pytest.mark.asyncio
    async def test_fire_skips_while_previous_run_pending(self, queue: JobQueue) -> None:
        await queue._fire_repeatable("health", "health-check", HealthCheckPayload())
        await queue._fire_repeatable("health", "health-check", HealthCheckPayload())
        assert queue.counts()["waiting"] == 1
        assert queue.get_job("repeat:health") is not None
