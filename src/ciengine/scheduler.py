# scheduler.py
from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Callable, Dict, Optional, Set

from .cache import CacheManager
from .errors import StorageError
from .model import Job, JobStatus, now_ms
from .orchestrator import Orchestrator
from .queue import JobQueue
from .sandbox.base import Sandbox
from .settings import Settings, get_settings
from .snapshots import StateManager
from .ui.console import get_console

SandboxFactory = Callable[[Job], Sandbox]


class Scheduler:
    """Worker loop: dequeues admitted jobs and runs each in its own sandbox."""

    def __init__(
        self,
        queue: JobQueue,
        cache_manager: CacheManager,
        state_manager: Optional[StateManager],
        sandbox_factory: SandboxFactory,
        settings: Optional[Settings] = None,
        workspace_dir: Optional[str] = None,
    ):
        """
        Initialize scheduler.

        Args:
            queue: Job queue (also the status store)
            cache_manager: Dependency cache used by every job
            state_manager: Workspace snapshots, or None to skip them
            sandbox_factory: Returns a fresh sandbox bound to one job
            settings: Limits and intervals (process settings by default)
            workspace_dir: Workspace root inside each sandbox
        """
        self.queue = queue
        self.cache_manager = cache_manager
        self.state_manager = state_manager
        self.sandbox_factory = sandbox_factory
        self.settings = settings or get_settings()
        self.workspace_dir = workspace_dir
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _orchestrator(self, sandbox: Sandbox) -> Orchestrator:
        return Orchestrator(
            sandbox,
            self.queue,
            self.cache_manager,
            self.state_manager,
            settings=self.settings,
            workspace_dir=self.workspace_dir,
        )

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------

    async def process_job(self, job: Job) -> Optional[JobStatus]:
        """Bind a sandbox to `job` and run it. Errors are logged, never raised."""
        console = get_console()
        try:
            status = await self.queue.get_job_status(job.id)
            if status is not None and status.is_terminal:
                # cancelled between dequeue and dispatch
                console.print_info(f"[{job.id}] skipped: job is {status.status}")
                return status
            sandbox = self.sandbox_factory(job)
            final = await self._orchestrator(sandbox).execute_job(job)
            console.print_execution_complete(
                status=final.status,
                duration=final.duration / 1000 if final.duration is not None else None,
            )
            return final
        except Exception as e:
            console.print_error("Job processing failed", f"[{job.id}] {e}")
            console.print_exception(e)
            await self._fail(job.id, e)
            return None

    async def _fail(self, job_id: str, error: Exception) -> None:
        # a job that never reached the orchestrator must not hold a running slot
        try:
            status = await self.queue.get_job_status(job_id)
            if status is None or status.is_terminal:
                return
            status.status = "failure"
            status.error = str(error) or type(error).__name__
            status.finish(now_ms())
            await self.queue.update_job_status(job_id, status)
        except Exception as e:
            get_console().print_error(
                "Failed to record job failure",
                f"[{job_id}] {e}",
            )

    async def tick(self) -> Optional[Job]:
        """Dequeue once and run the job to completion, if one was admitted."""
        job = await self.queue.dequeue()
        if job is None:
            return None
        get_console().print_job_dequeued(job.id, job.priority)
        await self.process_job(job)
        return job

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def run_maintenance(self) -> Dict[str, int]:
        """Prune old snapshots, caches and finished jobs. Returns counts per kind."""
        console = get_console()
        counts = {"snapshots": 0, "caches": 0, "jobs": 0}

        tasks = {
            "caches": self.cache_manager.prune_caches,
            "jobs": self.queue.prune_completed_jobs,
        }
        if self.state_manager is not None:
            tasks["snapshots"] = self.state_manager.prune_snapshots

        for kind, prune in tasks.items():
            try:
                counts[kind] = await prune()
            except Exception as e:
                console.print_warning(f"maintenance: pruning {kind} failed: {e}")

        console.print_info(
            f"Maintenance: pruned {counts['snapshots']} snapshot(s), "
            f"{counts['caches']} cache(s), {counts['jobs']} job(s)"
        )
        return counts

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _fill_slots(self) -> int:
        started = 0
        while len(self._in_flight) < self.settings.max_concurrent:
            job = await self.queue.dequeue()
            if job is None:
                break
            get_console().print_job_dequeued(job.id, job.priority)
            task = asyncio.ensure_future(self.process_job(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            started += 1
        return started

    async def run(self, stop_event: Optional[asyncio.Event] = None, handle_signals: bool = False) -> None:
        """
        Poll until `stop_event` is set, then wait for in-flight jobs.

        With handle_signals, SIGINT/SIGTERM set the stop event.
        """
        console = get_console()
        stop = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()

        if handle_signals:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._signal_handler, sig, stop)

        console.print_worker_started(self.settings.max_concurrent, self.settings.poll_interval)
        next_maintenance = loop.time() + self.settings.maintenance_interval

        try:
            while not stop.is_set():
                try:
                    await self._fill_slots()
                    if loop.time() >= next_maintenance:
                        await self.run_maintenance()
                        next_maintenance = loop.time() + self.settings.maintenance_interval
                except StorageError as e:
                    console.print_error(
                        "Storage error",
                        str(e),
                        suggestion="Check the metadata store connection; retrying.",
                    )
                except Exception as e:
                    console.print_exception(e)

                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(stop.wait(), timeout=self.settings.poll_interval)
        finally:
            if self._in_flight:
                console.print_info(f"Waiting for {len(self._in_flight)} running job(s)...")
                await asyncio.gather(*self._in_flight, return_exceptions=True)
            if handle_signals:
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)

        console.print_info("Worker stopped.")

    @staticmethod
    def _signal_handler(signum: int, stop: asyncio.Event) -> None:
        get_console().print_info(f"\nReceived signal {signum}, shutting down gracefully...")
        stop.set()
