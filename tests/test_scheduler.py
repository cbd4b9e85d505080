import asyncio

import pytest

from ciengine.cache import CacheManager
from ciengine.model import Step
from ciengine.orchestrator import Orchestrator
from ciengine.queue import JobQueue
from ciengine.scheduler import Scheduler
from ciengine.snapshots import StateManager
from ciengine.storage.memory import InMemoryBlobStore

from conftest import FakeSandbox, FlakyStore


@pytest.fixture
def sandboxes():
    return {}


@pytest.fixture
def scheduler(queue, cache_manager, state_manager, settings, sandboxes):
    def factory(job):
        sandboxes[job.id] = FakeSandbox(sandbox_id=f"sb-{job.id}")
        return sandboxes[job.id]

    return Scheduler(queue, cache_manager, state_manager, factory, settings=settings)


async def test_tick_runs_next_job(scheduler, queue, make_job, sandboxes):
    await queue.submit(make_job("low", priority=1))
    await queue.submit(make_job("high", priority=9))

    job = await scheduler.tick()

    assert job.id == "high"
    status = await queue.get_job_status("high")
    assert status.status == "success"
    assert status.sandbox_id == "sb-high"
    assert (await queue.get_job_status("low")).status == "queued"


async def test_tick_with_empty_queue(scheduler):
    assert await scheduler.tick() is None


async def test_sandbox_factory_failure_marks_job_failed(queue, cache_manager, settings, make_job):
    def broken(job):
        raise RuntimeError("no capacity")

    scheduler = Scheduler(queue, cache_manager, None, broken, settings=settings)
    await queue.submit(make_job("a"))

    await scheduler.tick()

    status = await queue.get_job_status("a")
    assert status.status == "failure"
    assert status.error == "no capacity"
    assert await queue.get_running_job_count() == 0


async def test_run_respects_max_concurrent_and_stops(queue, cache_manager, settings, make_job):
    settings = settings.with_overrides(max_concurrent=2)
    running = []
    peak = []

    class Slow(FakeSandbox):
        async def exec(self, command, options=None):
            if command == "work":
                running.append(command)
                peak.append(len(running))
                await asyncio.sleep(0.03)
                running.remove(command)
            return await super().exec(command, options)

    scheduler = Scheduler(queue, cache_manager, None, lambda job: Slow(), settings=settings)
    for i in range(5):
        await queue.submit(make_job(f"j{i}", steps=[Step("w", "work")]))

    stop = asyncio.Event()
    loop_task = asyncio.ensure_future(scheduler.run(stop))

    async def all_done():
        while len(await queue.list_jobs("success")) < 5:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(all_done(), timeout=5)
    stop.set()
    await asyncio.wait_for(loop_task, timeout=5)

    assert max(peak) <= 2
    assert scheduler.in_flight == 0


async def test_run_maintenance_counts(store, blobs, settings, clock, sandbox, make_job):
    settings = settings.with_overrides(job_max_age=3600, cache_max_age=3600, snapshot_max_age=3600)
    queue = JobQueue(store, settings, clock=clock)
    cache_manager = CacheManager(blobs, store, settings, clock=clock)
    state_manager = StateManager(InMemoryBlobStore(), settings, clock=clock)
    scheduler = Scheduler(queue, cache_manager, state_manager, lambda job: FakeSandbox(), settings=settings)

    await queue.submit(make_job("old"))
    status = await queue.get_job_status("old")
    status.status = "success"
    status.finish(clock.now)
    await queue.update_job_status("old", status)
    await state_manager.create_snapshot(sandbox, "old", "abc")
    sandbox.dirs.add(".venv")
    await cache_manager.save_cache("k", [".venv"], sandbox)

    clock.advance(2 * 3600)
    counts = await scheduler.run_maintenance()

    assert counts == {"snapshots": 1, "caches": 1, "jobs": 1}


async def test_unstored_final_status_is_recorded_as_failure(settings, cache_manager, clock, make_job, monkeypatch):
    monkeypatch.setattr(Orchestrator, "finalize_retry_delay", 0)
    store = FlakyStore(clock, failures=Orchestrator.finalize_attempts)
    queue = JobQueue(store, settings.with_overrides(max_concurrent=1), clock=clock)
    scheduler = Scheduler(queue, cache_manager, None, lambda job: FakeSandbox(), settings=queue.settings)
    await queue.submit(make_job("a"))
    await queue.submit(make_job("b"))

    await scheduler.tick()

    status = await queue.get_job_status("a")
    assert status.status == "failure"
    assert "unavailable" in status.error
    assert await queue.get_running_job_count() == 0
    # the slot is free again
    assert (await scheduler.tick()).id == "b"


async def test_job_cancelled_after_dequeue_is_skipped(scheduler, queue, make_job, sandboxes):
    await queue.submit(make_job("a"))
    job = await queue.dequeue()
    await queue.cancel_job("a")

    status = await scheduler.process_job(job)

    assert status.status == "cancelled"
    assert sandboxes == {}
