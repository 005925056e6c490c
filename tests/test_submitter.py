"""Tests for the job submitter."""

import asyncio

import pytest

from factor_jobs.jobs.cache import content_key
from factor_jobs.jobs.errors import InvalidInputError, PreconditionFailedError
from factor_jobs.jobs.models import ArtifactRef, JobStatus, TaskType
from factor_jobs.jobs.submitter import (
    gcode_analysis_resource_key,
    generation_resource_key,
    slicing_resource_key,
)

from fakes import ScriptedSlicer, gcode_output, settle

SLICE_PARAMS = {"cura_settings": {"layer_height": 0.2}, "model_name": "benchy"}


@pytest.mark.asyncio
async def test_cache_hit_creates_no_job(store, cache, make_executor, make_submitter):
    slicer = ScriptedSlicer([gcode_output()])
    submitter = make_submitter(make_executor(slicer))
    await cache.record("slicing:m1:p1", ArtifactRef(url="memory://cached.gcode"))

    result = await submitter.submit("slicing:m1:p1", SLICE_PARAMS, task_type=TaskType.SLICING)

    assert result.is_cached
    assert result.cached.url == "memory://cached.gcode"
    assert result.job_id is None
    assert await store.list_pending() == []
    assert slicer.calls == 0


@pytest.mark.asyncio
async def test_submit_runs_job_and_second_submit_hits_cache(store, make_executor, make_submitter):
    executor = make_executor(ScriptedSlicer([gcode_output()]))
    submitter = make_submitter(executor)

    first = await submitter.submit(
        "slicing:m1:p1", SLICE_PARAMS, task_type=TaskType.SLICING, user_id="u1"
    )
    assert first.job_id and not first.is_cached
    await executor.wait(first.job_id)

    job = await store.get(first.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.user_id == "u1"
    assert job.max_retries == 3

    second = await submitter.submit("slicing:m1:p1", SLICE_PARAMS, task_type=TaskType.SLICING)
    assert second.is_cached
    assert second.cached.url == job.output_url


@pytest.mark.asyncio
async def test_concurrent_submits_share_one_job(store, make_executor, make_submitter):
    gate = asyncio.Event()
    slicer = ScriptedSlicer([gcode_output()], gate=gate)
    executor = make_executor(slicer)
    submitter = make_submitter(executor)

    results = await asyncio.gather(*[
        submitter.submit("slicing:m1:p1", SLICE_PARAMS, task_type=TaskType.SLICING)
        for _ in range(5)
    ])

    job_ids = {r.job_id for r in results}
    assert len(job_ids) == 1
    assert sum(1 for r in results if not r.deduplicated) == 1

    gate.set()
    await executor.wait(job_ids.pop())
    assert slicer.calls == 1


@pytest.mark.asyncio
async def test_narrow_cache_key_is_used_for_lookup_and_record(cache, make_executor, make_submitter):
    executor = make_executor(ScriptedSlicer([gcode_output()]))
    submitter = make_submitter(executor)
    key = content_key("slicing:m1:p1", SLICE_PARAMS, ["cura_settings"])

    result = await submitter.submit(
        "slicing:m1:p1", SLICE_PARAMS, task_type=TaskType.SLICING, cache_key=key
    )
    await executor.wait(result.job_id)

    assert await cache.lookup(key) is not None
    assert await cache.lookup("slicing:m1:p1") is None

    other_settings = dict(SLICE_PARAMS, cura_settings={"layer_height": 0.1})
    other_key = content_key("slicing:m1:p1", other_settings, ["cura_settings"])
    miss = await submitter.submit(
        "slicing:m1:p1", other_settings, task_type=TaskType.SLICING, cache_key=other_key
    )
    assert not miss.is_cached


@pytest.mark.asyncio
async def test_precondition_refusal_is_synchronous(store, make_executor, make_submitter):
    submitter = make_submitter(make_executor(ScriptedSlicer([gcode_output()])), precondition=lambda t, u, p: False)
    with pytest.raises(PreconditionFailedError):
        await submitter.submit("slicing:m1:p1", SLICE_PARAMS, task_type=TaskType.SLICING, user_id="u1")
    assert await store.list_for_user("u1") == []


@pytest.mark.asyncio
async def test_async_precondition_receives_request(make_executor, make_submitter):
    seen = []

    async def allow(task_type, user_id, params):
        seen.append((task_type, user_id))
        return True

    executor = make_executor(ScriptedSlicer([gcode_output()]))
    submitter = make_submitter(executor, precondition=allow)
    result = await submitter.submit("slicing:m1:p1", SLICE_PARAMS, task_type=TaskType.SLICING, user_id="u1")
    await executor.wait(result.job_id)
    assert seen == [(TaskType.SLICING, "u1")]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "resource_key, params, max_retries",
    [
        ("", {}, None),
        ("slicing:m1:p1", ["not", "a", "dict"], None),
        ("slicing:m1:p1", {"blob": object()}, None),
        ("slicing:m1:p1", {}, -1),
    ],
)
async def test_malformed_submissions_are_rejected(store, make_executor, make_submitter, resource_key, params, max_retries):
    submitter = make_submitter(make_executor(ScriptedSlicer([gcode_output()])))
    with pytest.raises(InvalidInputError):
        await submitter.submit(resource_key, params, task_type=TaskType.SLICING, max_retries=max_retries)
    assert await store.list_pending() == []


@pytest.mark.asyncio
async def test_job_survives_observer_detach_and_late_subscriber_sees_result(
    store, notifier, push, make_executor, make_submitter
):
    gate = asyncio.Event()
    executor = make_executor(ScriptedSlicer([gcode_output()], gate=gate))
    submitter = make_submitter(executor)

    result = await submitter.submit("slicing:m1:p1", SLICE_PARAMS, task_type=TaskType.SLICING, user_id="u1")
    seen = []
    unsubscribe = await notifier.subscribe(result.job_id, seen.append)
    await settle()
    unsubscribe()

    gate.set()
    await executor.wait(result.job_id)
    assert (await store.get(result.job_id)).status == JobStatus.COMPLETED
    # Nobody was watching at completion, so the user is notified out of band
    assert [n.job_id for n in push.sent] == [result.job_id]

    late = []
    await notifier.subscribe(result.job_id, late.append)
    await settle()
    assert [j.status for j in late] == [JobStatus.COMPLETED]
    assert late[0].output_url


def test_resource_key_helpers():
    assert slicing_resource_key("m1", "p1") == "slicing:m1:p1"
    with pytest.raises(InvalidInputError):
        slicing_resource_key("m1", "")

    a = generation_resource_key("text_to_3d", prompt=" a vase ", user_id="u1")
    b = generation_resource_key("text_to_3d", prompt="a vase", user_id="u1")
    assert a == b
    assert a.startswith("model_generation:u1:")
    assert a != generation_resource_key("text_to_3d", prompt="a cup", user_id="u1")
    with pytest.raises(InvalidInputError):
        generation_resource_key("image_to_3d")

    assert gcode_analysis_resource_key("https://cdn/x.gcode").startswith("gcode_analysis:")
