"""Tests for the job state machine and the in-memory job store."""

from datetime import datetime, timedelta, timezone

import pytest

from factor_jobs.jobs.errors import InvalidTransitionError, JobNotFoundError
from factor_jobs.jobs.models import JobRecord, JobStatus, TaskType, can_transition
from factor_jobs.jobs.store import InMemoryJobStore


def _job(resource_key="slicing:m1:p1", **kwargs):
    return JobRecord(resource_key=resource_key, task_type=TaskType.SLICING, **kwargs)


def test_transition_table_is_forward_only():
    assert can_transition(JobStatus.PENDING, JobStatus.PROCESSING)
    assert can_transition(JobStatus.PROCESSING, JobStatus.PROCESSING)
    assert can_transition(JobStatus.PROCESSING, JobStatus.COMPLETED)
    assert can_transition(JobStatus.PROCESSING, JobStatus.FAILED)

    assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)
    assert not can_transition(JobStatus.PENDING, JobStatus.FAILED)
    assert not can_transition(JobStatus.PROCESSING, JobStatus.PENDING)
    for terminal in (JobStatus.COMPLETED, JobStatus.FAILED):
        for target in JobStatus:
            assert not can_transition(terminal, target)


def test_row_round_trip_fills_nulls():
    job = _job(input_params={"cura_settings": {"layer_height": 0.2}})
    row = job.to_row()
    row["progress_percent"] = None
    row["progress_message"] = None
    restored = JobRecord.from_row(row)
    assert restored.id == job.id
    assert restored.progress_percent == 0.0
    assert restored.progress_message == ""
    assert restored.input_params == {"cura_settings": {"layer_height": 0.2}}


@pytest.mark.asyncio
async def test_create_if_absent_deduplicates_active_jobs():
    store = InMemoryJobStore()
    first, created = await store.create_if_absent(_job())
    second, created_again = await store.create_if_absent(_job())

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert first.status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_new_job_allowed_after_previous_finished():
    store = InMemoryJobStore()
    first, _ = await store.create_if_absent(_job())
    await store.transition(first.id, JobStatus.PROCESSING)
    await store.transition(first.id, JobStatus.FAILED, error_message="boom")

    second, created = await store.create_if_absent(_job())
    assert created is True
    assert second.id != first.id


@pytest.mark.asyncio
async def test_illegal_edge_raises():
    store = InMemoryJobStore()
    job, _ = await store.create_if_absent(_job())
    with pytest.raises(InvalidTransitionError):
        await store.transition(job.id, JobStatus.COMPLETED, output_url="memory://x")


@pytest.mark.asyncio
async def test_terminal_states_require_their_field():
    store = InMemoryJobStore()
    job, _ = await store.create_if_absent(_job())
    await store.transition(job.id, JobStatus.PROCESSING)

    with pytest.raises(InvalidTransitionError):
        await store.transition(job.id, JobStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        await store.transition(job.id, JobStatus.FAILED)
    assert (await store.get(job.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_completion_sets_output_and_clears_error():
    store = InMemoryJobStore()
    job, _ = await store.create_if_absent(_job())
    processing = await store.transition(job.id, JobStatus.PROCESSING)
    assert processing.started_at is not None

    done = await store.transition(
        job.id, JobStatus.COMPLETED, output_url="memory://a.gcode", output_metadata={"k": 1}
    )
    assert done.status == JobStatus.COMPLETED
    assert done.output_url == "memory://a.gcode"
    assert done.error_message is None
    assert done.completed_at is not None
    assert done.progress_percent == 100.0


@pytest.mark.asyncio
async def test_writes_to_terminal_job_are_noops():
    store = InMemoryJobStore()
    job, _ = await store.create_if_absent(_job())
    await store.transition(job.id, JobStatus.PROCESSING)
    done = await store.transition(job.id, JobStatus.COMPLETED, output_url="memory://a.gcode")

    after_fail = await store.transition(job.id, JobStatus.FAILED, error_message="late failure")
    after_retry = await store.record_retry(job.id)
    after_progress = await store.update_progress(job.id, 10.0, "late")

    for row in (after_fail, after_retry, after_progress):
        assert row.status == JobStatus.COMPLETED
        assert row.output_url == "memory://a.gcode"
        assert row.updated_at == done.updated_at


@pytest.mark.asyncio
async def test_updated_at_strictly_increases():
    store = InMemoryJobStore()
    job, _ = await store.create_if_absent(_job(max_retries=2))
    stamps = [job.updated_at]
    stamps.append((await store.transition(job.id, JobStatus.PROCESSING)).updated_at)
    stamps.append((await store.update_progress(job.id, 5, "Queued")).updated_at)
    stamps.append((await store.record_retry(job.id)).updated_at)
    stamps.append((await store.update_progress(job.id, 50, "Halfway")).updated_at)
    stamps.append(
        (await store.transition(job.id, JobStatus.FAILED, error_message="x")).updated_at
    )
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


@pytest.mark.asyncio
async def test_retry_budget_is_enforced():
    store = InMemoryJobStore()
    job, _ = await store.create_if_absent(_job(max_retries=1))
    with pytest.raises(InvalidTransitionError):
        await store.record_retry(job.id)

    await store.transition(job.id, JobStatus.PROCESSING)
    retried = await store.record_retry(job.id)
    assert retried.retry_count == 1
    assert retried.status == JobStatus.PROCESSING
    with pytest.raises(InvalidTransitionError):
        await store.record_retry(job.id)


@pytest.mark.asyncio
async def test_update_progress_clamps_and_records_provider_id():
    store = InMemoryJobStore()
    job, _ = await store.create_if_absent(_job())
    await store.transition(job.id, JobStatus.PROCESSING)
    row = await store.update_progress(job.id, 140, "Almost", provider_job_id="task-9")
    assert row.progress_percent == 100.0
    assert row.progress_message == "Almost"
    assert row.provider_job_id == "task-9"


@pytest.mark.asyncio
async def test_unknown_job_raises_not_found():
    store = InMemoryJobStore()
    assert await store.get("missing") is None
    with pytest.raises(JobNotFoundError):
        await store.transition("missing", JobStatus.PROCESSING)


@pytest.mark.asyncio
async def test_listeners_see_every_mutation_and_can_be_removed():
    store = InMemoryJobStore()
    seen = []
    remove = store.add_listener(lambda job: seen.append(job.status))

    job, _ = await store.create_if_absent(_job())
    await store.transition(job.id, JobStatus.PROCESSING)
    remove()
    await store.transition(job.id, JobStatus.FAILED, error_message="x")

    assert seen == [JobStatus.PENDING, JobStatus.PROCESSING]


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_writes():
    store = InMemoryJobStore()

    def broken(job):
        raise RuntimeError("listener bug")

    store.add_listener(broken)
    job, created = await store.create_if_absent(_job())
    assert created is True
    assert (await store.transition(job.id, JobStatus.PROCESSING)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_list_queries():
    store = InMemoryJobStore()
    t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
    a, _ = await store.create_if_absent(_job("slicing:a:p", user_id="u1", created_at=t0))
    b, _ = await store.create_if_absent(
        _job("slicing:b:p", user_id="u1", created_at=t0 + timedelta(minutes=1))
    )
    await store.create_if_absent(_job("slicing:c:p", user_id="u2"))
    await store.transition(a.id, JobStatus.PROCESSING)

    mine = await store.list_for_user("u1")
    assert [j.id for j in mine] == [b.id, a.id]

    pending = await store.list_pending()
    assert a.id not in [j.id for j in pending]
    assert len(pending) == 2

    active = await store.find_active("slicing:a:p")
    assert active.id == a.id


@pytest.mark.asyncio
async def test_list_pending_includes_stale_processing_jobs():
    store = InMemoryJobStore()
    t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
    waiting, _ = await store.create_if_absent(_job("slicing:a:p", created_at=t0))
    running, _ = await store.create_if_absent(_job("slicing:b:p", created_at=t0 + timedelta(minutes=1)))
    running = await store.transition(running.id, JobStatus.PROCESSING)

    assert [j.id for j in await store.list_pending()] == [waiting.id]
    assert [j.id for j in await store.list_pending(stale_before=running.updated_at - timedelta(seconds=1))] == [waiting.id]
    assert [j.id for j in await store.list_pending(stale_before=running.updated_at)] == [waiting.id, running.id]


@pytest.mark.asyncio
async def test_find_latest_prefers_active_then_newest():
    store = InMemoryJobStore()
    t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
    old, _ = await store.create_if_absent(_job("slicing:a:p", created_at=t0))
    await store.transition(old.id, JobStatus.PROCESSING)
    await store.transition(old.id, JobStatus.FAILED, error_message="x")
    newer, _ = await store.create_if_absent(_job("slicing:a:p", created_at=t0 + timedelta(minutes=1)))

    assert (await store.find_latest("slicing:a:p")).id == newer.id
    await store.transition(newer.id, JobStatus.PROCESSING)
    await store.transition(newer.id, JobStatus.COMPLETED, output_url="memory://a.gcode")
    assert (await store.find_latest("slicing:a:p")).id == newer.id
    assert await store.find_latest("slicing:zzz") is None
