from __future__ import annotations

import asyncio
import random
import threading
import time

from sqlalchemy import update

from tickq.db.models import JobRun, JobRunStatus
from tickq.jobs.backoff import compute_backoff_seconds
from tickq.jobs.errors import JobFailedError
from tickq.jobs.registry import HandlerRegistry, JobContext
from tickq.jobs.runner import JobRunner
from tickq.jobs.service import JobService
from tickq.jobs.types import JobOutcome


def build(state, clock, **overrides):
    settings, session_factory = state(**overrides)
    registry = HandlerRegistry()
    service = JobService(settings, session_factory, clock=clock)
    runner = JobRunner(settings, session_factory, registry=registry, clock=clock)
    return service, runner, registry, session_factory


def test_run_once_executes_handler_and_marks_success(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)
    registry.register("echo", lambda ctx: {"echo": ctx.payload, "attempt": ctx.attempt})
    enqueued = service.enqueue("echo", {"value": 7, "api_token": "abc"})

    result = runner.run_once(limit=1, runner_id="runner-a")

    assert result.claimed == 1
    assert result.succeeded == 1
    job = service.get_job(enqueued.id)
    assert job.status == JobRunStatus.SUCCEEDED
    assert job.attempts == 1
    assert job.result == {"echo": {"value": 7, "api_token": "[redacted]"}, "attempt": 1}
    assert job.finished_at == clock.now
    assert job.locked_at is None
    assert job.lock_owner is None
    messages = [log.message for log in service.list_job_logs(enqueued.id)]
    assert messages == ["Job enqueued", "Claimed (attempt 1/3)", "Job succeeded"]


def test_run_once_orders_by_priority_then_age_and_respects_limit(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)
    seen: list[str] = []
    registry.register("order", lambda ctx: seen.append(ctx.payload["name"]))
    service.enqueue("order", {"name": "old-low"}, priority=10)
    clock.advance(seconds=1)
    service.enqueue("order", {"name": "new-high"}, priority=90)
    clock.advance(seconds=1)
    service.enqueue("order", {"name": "newer-high"}, priority=90)
    service.enqueue("order", {"name": "future"}, priority=100, run_after=clock.now.replace(hour=23))

    result = runner.run_once(limit=2)

    assert result.claimed == 2
    assert seen == ["new-high", "newer-high"]
    assert runner.run_once(limit=10).claimed == 1
    assert seen[-1] == "old-low"


def test_concurrent_runners_never_share_a_row(state, clock) -> None:
    settings, session_factory = state()
    registry = HandlerRegistry()
    service = JobService(settings, session_factory, clock=clock)
    executed: list[str] = []
    lock = threading.Lock()

    def record(ctx: JobContext) -> None:
        with lock:
            executed.append(ctx.job_id)

    registry.register("work", record)
    job_ids = {service.enqueue("work", {"index": index}).id for index in range(12)}

    barrier = threading.Barrier(3)
    results = []

    def run(runner_id: str) -> None:
        runner = JobRunner(settings, session_factory, registry=registry, clock=clock)
        barrier.wait(timeout=5)
        outcome = runner.run_once(limit=12, runner_id=runner_id)
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=run, args=(f"runner-{index}",)) for index in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(executed) == sorted(job_ids)
    assert len(executed) == len(set(executed))
    assert sum(result.claimed for result in results) == 12
    assert all(service.get_job(job_id).attempts == 1 for job_id in job_ids)


def test_retry_exhaustion_dead_letters_after_max_attempts(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)

    def always_fail(_ctx: JobContext) -> None:
        raise JobFailedError("downstream unavailable")

    registry.register("flaky", always_fail)
    job_id = service.enqueue("flaky", max_attempts=3).id

    statuses = []
    delays = []
    for _ in range(3):
        result = runner.run_once(limit=1)
        assert result.claimed == 1
        job = service.get_job(job_id)
        statuses.append(job.status)
        if job.status == JobRunStatus.QUEUED:
            delays.append((job.run_after - clock.now).total_seconds())
            assert runner.run_once(limit=1).claimed == 0
            clock.now = job.run_after

    assert statuses == [JobRunStatus.QUEUED, JobRunStatus.QUEUED, JobRunStatus.DEAD_LETTER]
    assert delays == sorted(delays)
    job = service.get_job(job_id)
    assert job.attempts == 3
    assert job.dead_lettered_at == clock.now
    assert job.error_code == "JOB_FAILED"
    assert job.error_message == "downstream unavailable"
    assert job.last_error_at == clock.now
    assert runner.run_once(limit=1).claimed == 0


def test_backoff_is_non_decreasing_even_with_adverse_jitter() -> None:
    class Fixed:
        def __init__(self, value: float):
            self.value = value

        def random(self) -> float:
            return self.value

    high = [compute_backoff_seconds(n, base_seconds=30, max_seconds=3600, rng=Fixed(0.999)) for n in range(1, 12)]
    low = [compute_backoff_seconds(n, base_seconds=30, max_seconds=3600, rng=Fixed(0.0)) for n in range(1, 12)]
    for attempt in range(len(high) - 1):
        assert low[attempt + 1] >= high[attempt]
    assert high[-1] == 3600

    rng = random.Random(7)
    seeded = [compute_backoff_seconds(n, base_seconds=30, max_seconds=3600, rng=rng) for n in range(1, 20)]
    assert seeded == sorted(seeded)
    assert compute_backoff_seconds(1, base_seconds=0.1, max_seconds=3600, rng=Fixed(0.0)) == 1.0


def test_async_handler_timeout_is_recorded_as_failure(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)

    async def slow(_ctx: JobContext) -> None:
        await asyncio.sleep(5)

    registry.register("slow.async", slow)
    job_id = service.enqueue("slow.async", timeout_seconds=1, max_attempts=1).id

    result = runner.run_once(limit=1)

    assert result.dead_lettered == 1
    job = service.get_job(job_id)
    assert job.status == JobRunStatus.DEAD_LETTER
    assert job.error_code == "JOB_TIMEOUT"


def test_sync_handler_timeout_releases_the_row(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)
    registry.register("slow.sync", lambda _ctx: time.sleep(2))
    job_id = service.enqueue("slow.sync", timeout_seconds=1).id

    started = time.monotonic()
    result = runner.run_once(limit=1)

    assert time.monotonic() - started < 2
    assert result.retried == 1
    job = service.get_job(job_id)
    assert job.status == JobRunStatus.QUEUED
    assert job.error_code == "JOB_TIMEOUT"
    assert job.lock_owner is None


def test_async_handler_success(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)

    async def fetch(ctx: JobContext) -> dict[str, int]:
        await asyncio.sleep(0)
        return {"doubled": ctx.payload["n"] * 2}

    registry.register("fetch", fetch)
    job_id = service.enqueue("fetch", {"n": 21}).id

    assert runner.run_once().succeeded == 1
    assert service.get_job(job_id).result == {"doubled": 42}


def test_unknown_job_type_fails_through_retry_budget(state, clock) -> None:
    service, runner, _, _ = build(state, clock)
    job_id = service.enqueue("not.registered", max_attempts=1).id

    result = runner.run_once(limit=1)

    assert result.dead_lettered == 1
    job = service.get_job(job_id)
    assert job.status == JobRunStatus.DEAD_LETTER
    assert job.error_code == "UNKNOWN_JOB_TYPE"


def test_queued_cancel_is_never_claimed(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)
    calls: list[str] = []
    registry.register("noop", lambda ctx: calls.append(ctx.job_id))
    job_id = service.enqueue("noop").id

    canceled = service.request_cancel(job_id)
    result = runner.run_once()

    assert canceled.status == JobRunStatus.CANCELED
    assert canceled.canceled_at == clock.now
    assert result.claimed == 0
    assert calls == []


def test_running_cancel_is_observed_by_handler(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)

    def cooperative(ctx: JobContext) -> None:
        assert ctx.is_cancel_requested() is False
        service.request_cancel(ctx.job_id)
        ctx.raise_if_cancel_requested()

    registry.register("long", cooperative)
    job_id = service.enqueue("long").id

    result = runner.run_once()

    assert result.canceled == 1
    job = service.get_job(job_id)
    assert job.status == JobRunStatus.CANCELED
    assert job.cancel_requested_at is not None
    assert job.canceled_at == clock.now
    assert job.lock_owner is None


def test_heartbeat_reports_lease_ownership(state, clock) -> None:
    service, runner, registry, session_factory = build(state, clock)
    beats: list[bool] = []

    def beating(ctx: JobContext) -> None:
        beats.append(ctx.heartbeat())
        with session_factory() as session:
            session.execute(update(JobRun).where(JobRun.id == ctx.job_id).values(lock_owner="someone-else"))
            session.commit()
        beats.append(ctx.heartbeat())

    registry.register("beat", beating)
    job_id = service.enqueue("beat").id

    result = runner.run_once(runner_id="runner-a")

    assert beats == [True, False]
    # The lease moved to another owner, so this runner's success is discarded.
    assert result.failed == 1
    assert result.succeeded == 0
    job = service.get_job(job_id)
    assert job.status == JobRunStatus.RUNNING
    assert job.lock_owner == "someone-else"


def test_execute_after_lost_lease_does_not_overwrite_row(state, clock) -> None:
    service, runner, registry, session_factory = build(state, clock)
    registry.register("noop", lambda _ctx: None)
    job_id = service.enqueue("noop").id

    claimed = runner.claim(1, "runner-a")
    with session_factory() as session:
        session.execute(
            update(JobRun)
            .where(JobRun.id == job_id)
            .values(status=JobRunStatus.QUEUED, lock_owner=None, locked_at=None)
        )
        session.commit()

    assert runner.execute(claimed[0], "runner-a") == JobOutcome.LOST
    assert service.get_job(job_id).status == JobRunStatus.QUEUED


def test_dead_letter_requeue_then_success(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)

    def broken(_ctx: JobContext) -> None:
        raise RuntimeError("malformed payload")

    registry.register("x", broken)
    job_id = service.enqueue("x", max_attempts=1).id

    first = runner.run_once(limit=1)
    dead = service.get_job(job_id)
    assert first.dead_lettered == 1
    assert dead.status == JobRunStatus.DEAD_LETTER
    assert dead.attempts == 1
    assert dead.error_code == "RuntimeError"

    requeued = service.requeue(job_id)
    assert requeued.status == JobRunStatus.QUEUED
    assert requeued.attempts == 1
    assert requeued.error_message is None
    assert requeued.error_code is None
    assert requeued.dead_lettered_at is None

    registry.register("x", lambda _ctx: {"ok": True})
    second = runner.run_once(limit=1)

    assert second.succeeded == 1
    done = service.get_job(job_id)
    assert done.status == JobRunStatus.SUCCEEDED
    assert done.result == {"ok": True}


def test_limit_is_capped_and_zero_claims_nothing(state, clock) -> None:
    service, runner, registry, _ = build(state, clock, run_max_limit="2", run_default_limit="1")
    registry.register("noop", lambda _ctx: None)
    for _ in range(4):
        service.enqueue("noop")

    assert runner.run_once(limit=0).claimed == 0
    assert runner.run_once().claimed == 1
    assert runner.run_once(limit=50).claimed == 2


def test_cancelled_error_from_async_handler_is_a_failure_not_an_abort(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)

    async def interrupted(_ctx: JobContext) -> None:
        raise asyncio.CancelledError()

    registry.register("interrupted", interrupted)
    registry.register("ok", lambda _ctx: {"ok": True})
    bad_id = service.enqueue("interrupted", priority=90).id
    ok_id = service.enqueue("ok", priority=10).id

    result = runner.run_once(limit=5)

    assert (result.claimed, result.retried, result.succeeded) == (2, 1, 1)
    bad = service.get_job(bad_id)
    assert bad.status == JobRunStatus.QUEUED
    assert bad.error_code == "CancelledError"
    assert bad.lock_owner is None
    assert service.get_job(ok_id).status == JobRunStatus.SUCCEEDED


def test_resolution_error_on_one_row_does_not_strand_the_batch(state, clock, monkeypatch) -> None:
    service, runner, registry, _ = build(state, clock)
    registry.register("echo", lambda ctx: {"n": ctx.payload["n"]})
    first_id = service.enqueue("echo", {"n": 1}, priority=90).id
    second_id = service.enqueue("echo", {"n": 2}, priority=10).id

    resolve_success = runner._resolve_success

    def flaky_resolve(job, runner_id, value):
        if job.id == first_id:
            raise RuntimeError("database is locked")
        return resolve_success(job, runner_id, value)

    monkeypatch.setattr(runner, "_resolve_success", flaky_resolve)
    result = runner.run_once(limit=5)

    assert (result.claimed, result.succeeded, result.failed) == (2, 1, 1)
    assert service.get_job(first_id).status == JobRunStatus.RUNNING
    assert service.get_job(second_id).status == JobRunStatus.SUCCEEDED


def test_timed_out_sync_handler_thread_does_not_block_exit(state, clock) -> None:
    service, runner, registry, _ = build(state, clock)
    release = threading.Event()
    registry.register("hung", lambda _ctx: release.wait(5))
    job_id = service.enqueue("hung", timeout_seconds=1).id

    try:
        runner.run_once(limit=1)
        workers = [thread for thread in threading.enumerate() if thread.name.startswith("tickq-job-")]
        assert workers
        assert all(thread.daemon for thread in workers)
        assert service.get_job(job_id).error_code == "JOB_TIMEOUT"
    finally:
        release.set()
