import pytest

from ciengine.errors import SnapshotNotFound
from ciengine.snapshots import snapshot_path


async def test_create_snapshot_uploads_archive(state_manager, sandbox, clock):
    snap = await state_manager.create_snapshot(sandbox, "job-1", "abc")

    assert snap.archive_path == snapshot_path("job-1", "abc", clock.now)
    assert snap.archive_path == f"snapshots/job-1/abc/{clock.now}.tar.gz"
    assert snap.sandbox_id == "fake-sandbox"
    assert snap.size > 0
    tar = next(c for c in sandbox.commands if c.startswith("tar -czf"))
    assert tar.endswith(" /workspace")


async def test_latest_snapshot_and_listing(state_manager, sandbox, clock):
    first = await state_manager.create_snapshot(sandbox, "job-1", "abc")
    clock.advance(5)
    second = await state_manager.create_snapshot(sandbox, "job-1", "abc", ["/workspace/repo"])
    await state_manager.create_snapshot(sandbox, "job-1", "other")

    listed = await state_manager.list_snapshots("job-1", "abc")
    assert [s.timestamp for s in listed] == [first.timestamp, second.timestamp]
    assert (await state_manager.get_latest_snapshot("job-1", "abc")).archive_path == second.archive_path
    assert await state_manager.get_latest_snapshot("job-2", "abc") is None


async def test_restore_snapshot(state_manager, sandbox):
    snap = await state_manager.create_snapshot(sandbox, "job-1", "abc")
    await state_manager.restore_snapshot(sandbox, snap.archive_path)

    assert sandbox.options_for("tar -xzf").working_dir == "/"


async def test_restore_missing_snapshot_raises(state_manager, sandbox):
    with pytest.raises(SnapshotNotFound):
        await state_manager.restore_snapshot(sandbox, "snapshots/x/y/1.tar.gz")


async def test_prune_snapshots(state_manager, sandbox, clock):
    await state_manager.create_snapshot(sandbox, "job-1", "abc")
    clock.advance(7200)
    await state_manager.create_snapshot(sandbox, "job-2", "abc")

    assert await state_manager.prune_snapshots(max_age=3600) == 1
    assert await state_manager.list_snapshots("job-1", "abc") == []
    assert len(await state_manager.list_snapshots("job-2", "abc")) == 1
