# snapshots.py
from __future__ import annotations

import posixpath
import shlex
import uuid
from typing import Callable, List, Optional, Sequence

from .errors import CIError, SnapshotNotFound
from .model import WorkspaceSnapshot, now_ms
from .sandbox.base import ExecOptions, Sandbox
from .settings import Settings, get_settings
from .storage.base import BlobStore

SNAPSHOT_PREFIX = "snapshots/"


def snapshot_path(job_id: str, commit: str, timestamp: int) -> str:
    return f"{SNAPSHOT_PREFIX}{job_id}/{commit}/{timestamp}.tar.gz"


def _int(value: Optional[str]) -> int:
    try:
        return int(value or 0)
    except ValueError:
        return 0


class StateManager:
    """Workspace snapshots: archive a job's workspace to the blob store and back."""

    def __init__(
        self,
        blobs: BlobStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.blobs = blobs
        self.settings = settings or get_settings()
        self._clock = clock

    def _scratch(self) -> str:
        return posixpath.join(self.settings.scratch_dir, f"ciengine-snapshot-{uuid.uuid4().hex}.tar.gz")

    async def create_snapshot(
        self,
        sandbox: Sandbox,
        job_id: str,
        commit: str,
        paths: Optional[Sequence[str]] = None,
    ) -> WorkspaceSnapshot:
        paths = list(paths or [self.settings.workspace_dir])
        timestamp = self._clock()
        archive_path = snapshot_path(job_id, commit, timestamp)

        scratch = self._scratch()
        try:
            args = " ".join(shlex.quote(p) for p in paths)
            result = await sandbox.exec(f"tar -czf {shlex.quote(scratch)} {args}")
            if not result.ok:
                raise CIError(
                    f"snapshot archive failed with exit code {result.exit_code}",
                    details={"job": job_id, "stderr": result.stderr[-2000:]},
                )
            data = await sandbox.read_file(scratch)
        finally:
            await sandbox.exec(f"rm -f {shlex.quote(scratch)}")

        sandbox_id = getattr(sandbox, "sandbox_id", "unknown")
        await self.blobs.put(
            archive_path,
            data,
            {
                "job_id": job_id,
                "sandbox_id": sandbox_id,
                "commit": commit,
                "timestamp": str(timestamp),
                "paths": ",".join(paths),
            },
        )

        return WorkspaceSnapshot(
            job_id=job_id,
            sandbox_id=sandbox_id,
            commit=commit,
            timestamp=timestamp,
            archive_path=archive_path,
            size=len(data),
        )

    async def restore_snapshot(self, sandbox: Sandbox, archive_path: str) -> None:
        blob = await self.blobs.get(archive_path)
        if blob is None:
            raise SnapshotNotFound(f"Snapshot not found: {archive_path}", details={"path": archive_path})

        scratch = self._scratch()
        await sandbox.write_file(scratch, blob.data)
        try:
            result = await sandbox.exec(f"tar -xzf {shlex.quote(scratch)}", ExecOptions(working_dir="/"))
            if not result.ok:
                raise CIError(
                    f"snapshot extract failed with exit code {result.exit_code}",
                    details={"path": archive_path, "stderr": result.stderr[-2000:]},
                )
        finally:
            await sandbox.exec(f"rm -f {shlex.quote(scratch)}")

    async def list_snapshots(self, job_id: str, commit: str) -> List[WorkspaceSnapshot]:
        out: List[WorkspaceSnapshot] = []
        for info in await self.blobs.list(f"{SNAPSHOT_PREFIX}{job_id}/{commit}/"):
            md = info.metadata or {}
            out.append(
                WorkspaceSnapshot(
                    job_id=md.get("job_id", job_id),
                    sandbox_id=md.get("sandbox_id", "unknown"),
                    commit=md.get("commit", commit),
                    timestamp=_int(md.get("timestamp")),
                    archive_path=info.path,
                    size=info.size,
                )
            )
        out.sort(key=lambda s: s.timestamp)
        return out

    async def get_latest_snapshot(self, job_id: str, commit: str) -> Optional[WorkspaceSnapshot]:
        snapshots = await self.list_snapshots(job_id, commit)
        return snapshots[-1] if snapshots else None

    async def prune_snapshots(self, max_age: Optional[int] = None) -> int:
        if max_age is None:
            max_age = self.settings.snapshot_max_age
        cutoff = self._clock() - max_age * 1000
        deleted = 0

        for info in await self.blobs.list(SNAPSHOT_PREFIX):
            timestamp = _int((info.metadata or {}).get("timestamp"))
            if 0 < timestamp < cutoff:
                await self.blobs.delete(info.path)
                deleted += 1

        return deleted
