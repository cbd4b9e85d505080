import asyncio

import pytest

from ciengine.cache import cache_blob_path, compute_cache_key
from ciengine.errors import JobNotFound, StorageError
from ciengine.model import Step
from ciengine.orchestrator import TIMEOUT_EXIT_CODE, Orchestrator, stream_job_logs
from ciengine.storage.memory import InMemoryMetadataStore
from ciengine.queue import JobQueue

from conftest import FlakyStore


@pytest.fixture
def orchestrator(sandbox, queue, cache_manager, state_manager, settings, clock):
    return Orchestrator(sandbox, queue, cache_manager, state_manager, settings=settings, clock=clock)


async def _admit(queue, job):
    await queue.submit(job)
    admitted = await queue.dequeue()
    assert admitted.id == job.id
    return admitted


async def test_successful_job(orchestrator, queue, sandbox, make_job):
    job = make_job(steps=[Step("lint", "make lint"), Step("test", "make test")])
    sandbox.on("make test", stdout="4 passed")
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    assert status.status == "success"
    assert [s.status for s in status.steps] == ["success", "success"]
    assert status.steps[1].output == "4 passed"
    assert status.steps[1].exit_code == 0
    assert status.error is None
    assert status.duration == status.finished_at - status.started_at
    assert (await queue.get_job_status(job.id)).status == "success"


async def test_workspace_setup_commands(orchestrator, queue, sandbox, make_job):
    job = make_job(commit="deadbeef", steps=[Step("build", "make", working_dir="sub")])
    await _admit(queue, job)
    await orchestrator.execute_job(job)

    clone = sandbox.commands[1]
    assert clone == "git clone https://github.com/acme/app /workspace/repo"
    assert sandbox.commands[2] == "git checkout deadbeef"
    assert sandbox.options_for("git checkout").working_dir == "/workspace/repo"
    assert sandbox.options_for("make").working_dir == "/workspace/repo/sub"


async def test_failing_step_stops_job(orchestrator, queue, sandbox, make_job):
    job = make_job(steps=[Step("a", "step-a"), Step("b", "step-b"), Step("c", "step-c")])
    sandbox.on("step-b", stderr="boom", exit_code=2)
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    assert status.status == "failure"
    assert [s.status for s in status.steps] == ["success", "failure", "pending"]
    assert status.steps[1].output == "boom"
    assert status.steps[1].exit_code == 2
    assert "b" in status.error
    assert "step-c" not in sandbox.commands


async def test_continue_on_error_runs_remaining_steps(orchestrator, queue, sandbox, make_job):
    job = make_job(
        steps=[
            Step("a", "step-a"),
            Step("b", "step-b", continue_on_error=True),
            Step("c", "step-c"),
        ]
    )
    sandbox.on("step-b", exit_code=1)
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    assert [s.status for s in status.steps] == ["success", "failure", "success"]
    assert status.status == "failure"
    assert '"b"' in status.error


async def test_env_is_merged_job_then_step(orchestrator, queue, sandbox, make_job):
    job = make_job(
        env={"A": "job", "B": "job"},
        steps=[Step("s", "run-it", env={"B": "step"})],
    )
    await _admit(queue, job)
    await orchestrator.execute_job(job)

    assert sandbox.options_for("run-it").env == {"A": "job", "B": "step"}


async def test_setup_failure_fails_job(orchestrator, queue, sandbox, make_job):
    job = make_job()
    sandbox.on("git clone", stderr="repository not found", exit_code=128)
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    assert status.status == "failure"
    assert "repository not found" in status.error
    assert all(s.status == "pending" for s in status.steps)
    assert "make build" not in sandbox.commands


async def test_sandbox_error_in_step_is_step_failure(orchestrator, queue, sandbox, make_job):
    job = make_job()
    sandbox.on("make build", raises=RuntimeError("sandbox gone"))
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    assert status.status == "failure"
    assert status.steps[0].status == "failure"
    assert status.steps[0].output == "sandbox gone"


async def test_missing_status_raises(orchestrator, make_job):
    with pytest.raises(JobNotFound):
        await orchestrator.execute_job(make_job("ghost"))


async def test_step_timeout(orchestrator, queue, sandbox, make_job):
    job = make_job(steps=[Step("hang", "sleep-forever", timeout=1)])
    sandbox.on("sleep-forever", hang=True)
    await _admit(queue, job)

    result = await orchestrator.execute_step(job.steps[0], job, timeout=0.05)

    assert result.status == "failure"
    assert "timed out" in result.output
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert sandbox.killed == ["sleep-forever"]


async def test_job_timeout_scenario(sandbox, store, settings, cache_manager, make_job):
    # real clock: duration is measured
    queue = JobQueue(store, settings)
    orchestrator = Orchestrator(sandbox, queue, cache_manager, settings=settings)
    job = make_job(timeout=1, steps=[Step("hang", "sleep-forever")])
    sandbox.on("sleep-forever", hang=True)
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    step = status.steps[0]
    assert step.status == "failure"
    assert "timed out" in step.output
    assert step.exit_code != 0
    assert 900 <= step.duration <= 3000
    assert status.status == "timeout"
    assert status.error == "Job exceeded timeout of 1s"
    assert sandbox.killed == ["sleep-forever"]


async def test_external_cancel_stops_before_next_step(orchestrator, queue, sandbox, make_job):
    job = make_job(steps=[Step("a", "step-a"), Step("b", "step-b")])
    sandbox.on("step-a", delay=0.05)
    await _admit(queue, job)

    run = asyncio.ensure_future(orchestrator.execute_job(job))
    await asyncio.sleep(0.01)
    assert await queue.cancel_job(job.id) is True
    status = await run

    assert status.status == "cancelled"
    stored = await queue.get_job_status(job.id)
    assert stored.status == "cancelled"
    # the step that finished still has its result recorded
    assert [s.status for s in stored.steps] == ["success", "pending"]
    assert "step-b" not in sandbox.commands


async def test_cache_restore_miss_then_save(orchestrator, queue, sandbox, blobs, make_job):
    job = make_job(cache_keys=["package-lock.json"])
    sandbox.files["/workspace/repo/package-lock.json"] = b'{"lockfileVersion": 3}'
    sandbox.dirs.add("node_modules")
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    assert status.status == "success"
    assert status.cache_hit is False
    key = compute_cache_key(job.repo, job.commit, [b'{"lockfileVersion": 3}'])
    assert await blobs.head(cache_blob_path(key)) is not None


async def test_cache_restore_hit(orchestrator, queue, sandbox, blobs, make_job):
    job = make_job(cache_keys=["package-lock.json"])
    key = compute_cache_key(job.repo, job.commit, [])
    await blobs.put(cache_blob_path(key), b"archive", {"cache_key": key, "timestamp": "1"})
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    assert status.cache_hit is True
    assert any(c.startswith("tar -xzf") for c in sandbox.commands)


async def test_no_cache_keys_means_no_cache_activity(orchestrator, queue, sandbox, make_job):
    job = make_job()
    await _admit(queue, job)
    status = await orchestrator.execute_job(job)

    assert status.cache_hit is None
    assert not any(c.startswith("test -d") for c in sandbox.commands)


async def test_cache_save_failure_does_not_fail_job(orchestrator, queue, sandbox, make_job):
    job = make_job(cache_keys=["requirements.txt"])
    sandbox.dirs.add(".venv")
    sandbox.on("tar -czf", exit_code=2, stderr="disk full")
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)
    assert status.status == "success"


async def test_snapshot_created_on_success(orchestrator, queue, state_manager, make_job):
    job = make_job()
    await _admit(queue, job)
    await orchestrator.execute_job(job)

    snapshots = await state_manager.list_snapshots(job.id, job.commit)
    assert len(snapshots) == 1
    assert snapshots[0].sandbox_id == "fake-sandbox"


async def test_stream_job_logs_emits_each_step_once(orchestrator, queue, sandbox, make_job):
    job = make_job(steps=[Step("one", "echo-1"), Step("quiet", "true-cmd"), Step("two", "echo-2")])
    sandbox.on("echo-1", stdout="hello", delay=0.03)
    sandbox.on("echo-2", stdout="world", delay=0.03)
    await _admit(queue, job)

    async def collect():
        return [chunk async for chunk in stream_job_logs(queue, job.id, poll_interval=0.005)]

    collector = asyncio.ensure_future(collect())
    await orchestrator.execute_job(job)
    chunks = await asyncio.wait_for(collector, timeout=2)

    assert chunks == ["[one]\nhello\n\n", "[two]\nworld\n\n"]


async def test_stream_job_logs_unknown_job_ends():
    queue = JobQueue(InMemoryMetadataStore())
    assert [c async for c in stream_job_logs(queue, "nope", poll_interval=0.001)] == []


async def test_cancelled_before_start_does_not_touch_sandbox(orchestrator, queue, sandbox, make_job):
    job = make_job()
    await _admit(queue, job)
    await queue.cancel_job(job.id)

    status = await orchestrator.execute_job(job)

    assert status.status == "cancelled"
    assert sandbox.commands == []
    assert (await queue.get_job_status(job.id)).status == "cancelled"


async def test_failed_step_result_kept_when_cancelled_meanwhile(orchestrator, queue, sandbox, make_job):
    job = make_job(steps=[Step("a", "step-a"), Step("b", "step-b")])
    sandbox.on("step-a", exit_code=3, delay=0.05)
    await _admit(queue, job)

    run = asyncio.ensure_future(orchestrator.execute_job(job))
    await asyncio.sleep(0.01)
    await queue.cancel_job(job.id)
    status = await run

    assert status.status == "cancelled"
    assert status.steps[0].status == "failure"
    assert status.steps[0].exit_code == 3


async def test_hung_clone_counts_against_job_timeout(orchestrator, queue, sandbox, make_job):
    job = make_job(timeout=1)
    sandbox.on("git clone", hang=True)
    await _admit(queue, job)

    status = await asyncio.wait_for(orchestrator.execute_job(job), timeout=3)

    assert status.status == "timeout"
    assert status.error == "Job exceeded timeout of 1s"
    assert sandbox.killed[0].startswith("git clone")
    assert "make build" not in sandbox.commands
    assert await queue.get_running_job_count() == 0


async def test_setup_command_timeout_without_job_timeout(queue, sandbox, cache_manager, settings, make_job):
    orchestrator = Orchestrator(sandbox, queue, cache_manager, settings=settings.with_overrides(setup_timeout=1))
    job = make_job()
    sandbox.on("git checkout", hang=True)
    await _admit(queue, job)

    status = await asyncio.wait_for(orchestrator.execute_job(job), timeout=3)

    assert status.status == "failure"
    assert "timed out after 1s" in status.error
    assert sandbox.killed[0].startswith("git checkout")


@pytest.fixture
def flaky_orchestrator(sandbox, settings, cache_manager, clock, monkeypatch):
    monkeypatch.setattr(Orchestrator, "finalize_retry_delay", 0)

    def build(failures):
        queue = JobQueue(FlakyStore(clock, failures), settings, clock=clock)
        return queue, Orchestrator(sandbox, queue, cache_manager, settings=settings, clock=clock)

    return build


async def test_final_status_write_is_retried(flaky_orchestrator, make_job):
    queue, orchestrator = flaky_orchestrator(failures=1)
    job = make_job()
    await _admit(queue, job)

    status = await orchestrator.execute_job(job)

    assert status.status == "success"
    assert (await queue.get_job_status(job.id)).status == "success"
    assert await queue.get_running_job_count() == 0


async def test_final_status_write_failure_is_raised(flaky_orchestrator, make_job):
    queue, orchestrator = flaky_orchestrator(failures=Orchestrator.finalize_attempts)
    job = make_job()
    await _admit(queue, job)

    with pytest.raises(StorageError):
        await orchestrator.execute_job(job)
