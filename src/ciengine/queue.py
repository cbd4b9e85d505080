# queue.py
from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Tuple

from .errors import ValidationError
from .model import Job, JobStatus, now_ms
from .settings import Settings, get_settings
from .storage.base import MetadataStore
from .ui.console import get_console

# ---------------------------------------------------------------------
# Persisted key shapes (external tooling reads these; keep them stable)
#   queue:{priority}:{timestamp}:{job_id}  -> job definition
#   status:{job_id}                        -> JobStatus
#   job:{job_id}                           -> retained job definition
# ---------------------------------------------------------------------

QUEUE_PREFIX = "queue:"
STATUS_PREFIX = "status:"
JOB_PREFIX = "job:"


def queue_key(priority: int, timestamp: int, job_id: str) -> str:
    return f"{QUEUE_PREFIX}{priority}:{timestamp}:{job_id}"


def status_key(job_id: str) -> str:
    return f"{STATUS_PREFIX}{job_id}"


def job_key(job_id: str) -> str:
    return f"{JOB_PREFIX}{job_id}"


def parse_queue_key(key: str) -> Tuple[int, int, str]:
    """queue:{priority}:{timestamp}:{job_id} -> (priority, timestamp, job_id). Job ids may contain ':'."""
    prefix, priority, timestamp, job_id = key.split(":", 3)
    if prefix + ":" != QUEUE_PREFIX:
        raise ValueError(f"not a queue key: {key!r}")
    return int(priority), int(timestamp), job_id


def dequeue_order(key: str) -> Tuple[int, int]:
    # priority descending, then enqueue time ascending (FIFO within a band)
    priority, timestamp, _ = parse_queue_key(key)
    return -priority, timestamp


class JobQueue:
    """
    Pending-job ordering, admission control, and the authoritative store of
    JobStatus records.

    Dequeue claims entries with the store's atomic `pop`, so two schedulers
    never run the same entry. Within one process dequeue calls are serialized.
    The running-count admission check is not atomic across processes.
    """

    def __init__(
        self,
        store: MetadataStore,
        settings: Optional[Settings] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._clock = clock
        self._last_timestamp = 0
        self._dequeue_lock = asyncio.Lock()

    def _next_timestamp(self) -> int:
        # strictly increasing, so two submissions in the same millisecond keep FIFO order
        ts = max(self._clock(), self._last_timestamp + 1)
        self._last_timestamp = ts
        return ts

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job, *, attempt: int = 1) -> str:
        """Add a job to the queue and reset its status to queued. Returns the queue key."""
        job.validate()
        priority = job.priority if job.priority is not None else self.settings.default_priority

        # status first: a concurrent dequeue must never see an entry without one
        await self.update_job_status(job.id, JobStatus.initial(job, attempt=attempt))

        key = queue_key(priority, self._next_timestamp(), job.id)
        await self.store.put(key, job.to_dict(), ttl=self.settings.queue_entry_ttl)
        get_console().print_debug(f"enqueued {job.id} as {key}")
        return key

    async def store_job_config(self, job: Job) -> None:
        """Retain the job definition for retries."""
        await self.store.put(job_key(job.id), job.to_dict(), ttl=self.settings.job_config_ttl)

    async def submit(self, job: Job) -> str:
        """Accept a new job. Ids are single-use; only retry_job re-enqueues an existing one."""
        job.validate()
        existing = await self.get_job_status(job.id)
        if existing is not None:
            raise ValidationError(
                f"job {job.id!r} already exists ({existing.status})",
                details={"job": job.id, "status": existing.status},
            )
        await self.store_job_config(job)
        return await self.enqueue(job)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def dequeue(self) -> Optional[Job]:
        """
        Claim the next job (highest priority, oldest first) and mark it running.

        Returns None when the running ceiling is reached (backpressure) or
        nothing is claimable.
        """
        async with self._dequeue_lock:
            if await self.get_running_job_count() >= self.settings.max_concurrent:
                return None

            candidates: List[str] = []
            for key in await self.store.list(QUEUE_PREFIX):
                try:
                    dequeue_order(key)
                except ValueError:
                    get_console().print_warning(f"ignoring malformed queue key: {key}")
                    continue
                candidates.append(key)
            candidates.sort(key=dequeue_order)

            for key in candidates:
                data = await self.store.pop(key)
                if data is None:
                    # claimed by another scheduler, or expired
                    continue
                try:
                    job = Job.from_dict(data)
                except ValidationError as e:
                    get_console().print_warning(f"dropping unreadable queue entry {key}: {e}")
                    continue

                status = await self.get_job_status(job.id)
                if status is None or status.status != "queued":
                    # stale entry, e.g. cancelled between list and claim
                    continue

                status.status = "running"
                status.started_at = self._clock()
                await self.update_job_status(job.id, status)
                return job

            return None

    async def get_running_job_count(self) -> int:
        return len(await self.list_jobs("running"))

    # ------------------------------------------------------------------
    # Status records
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: str) -> Optional[JobStatus]:
        data = await self.store.get(status_key(job_id))
        return JobStatus.from_dict(data) if data else None

    async def update_job_status(self, job_id: str, status: JobStatus) -> None:
        """Replace the stored status (last write wins)."""
        await self.store.put(status_key(job_id), status.to_dict(), ttl=self.settings.status_ttl)

    async def get_job_config(self, job_id: str) -> Optional[Job]:
        data = await self.store.get(job_key(job_id))
        return Job.from_dict(data) if data else None

    async def list_jobs(self, status: Optional[str] = None) -> List[JobStatus]:
        out: List[JobStatus] = []
        for key in await self.store.list(STATUS_PREFIX):
            data = await self.store.get(key)
            if not data:
                continue
            record = JobStatus.from_dict(data)
            if status is None or record.status == status:
                out.append(record)
        return out

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a job. Queued jobs are removed from the queue; running jobs
        are only marked (the orchestrator notices between steps).
        """
        status = await self.get_job_status(job_id)
        if status is None or status.is_terminal:
            return False

        if status.status == "queued":
            for key in await self.store.list(QUEUE_PREFIX):
                try:
                    _, _, entry_job_id = parse_queue_key(key)
                except ValueError:
                    continue
                if entry_job_id == job_id:
                    await self.store.delete(key)
                    break

        status.status = "cancelled"
        status.finish(self._clock())
        await self.update_job_status(job_id, status)
        return True

    async def retry_job(self, job_id: str) -> bool:
        """Re-enqueue a failed job from its retained definition."""
        status = await self.get_job_status(job_id)
        if status is None or status.status != "failure":
            return False
        if status.attempt > self.settings.max_retries:
            return False

        job = await self.get_job_config(job_id)
        if job is None:
            return False

        await self.enqueue(job, attempt=status.attempt + 1)
        return True

    async def prune_completed_jobs(self, max_age: Optional[int] = None) -> int:
        """Delete finished records older than max_age seconds. Returns count deleted."""
        if max_age is None:
            max_age = self.settings.job_max_age
        cutoff = self._clock() - max_age * 1000
        deleted = 0

        for status in await self.list_jobs():
            if (
                status.finished_at is not None
                and status.finished_at < cutoff
                and status.status in self.settings.prune_statuses
            ):
                await self.store.delete(status_key(status.id))
                await self.store.delete(job_key(status.id))
                deleted += 1

        return deleted
