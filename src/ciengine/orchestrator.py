# orchestrator.py
from __future__ import annotations

import asyncio
import posixpath
import shlex
from dataclasses import replace
from typing import AsyncIterator, Callable, List, Optional, Tuple

from .cache import CacheManager, detect_cache_paths
from .errors import JobNotFound, JobTimeout, NoCacheableDirectories, StepTimeout, WorkspaceSetupError
from .model import ExecResult, Job, JobStatus, Step, StepResult, now_ms
from .queue import JobQueue
from .sandbox.base import ExecOptions, Sandbox
from .settings import Settings, get_settings
from .snapshots import StateManager
from .ui.console import get_console

# exit code recorded for a step killed by its timeout (same as coreutils `timeout`)
TIMEOUT_EXIT_CODE = 124


async def stream_job_logs(
    queue: JobQueue,
    job_id: str,
    poll_interval: float = 1.0,
) -> AsyncIterator[str]:
    """
    Poll a job's status and yield each completed step's output once, in order.

    The stream starts from the job's stored record and ends when the job
    reaches a terminal status (or is unknown).
    """
    emitted = -1
    while True:
        status = await queue.get_job_status(job_id)
        if status is None:
            return

        reached = status.current_step if status.current_step is not None else -1
        if status.is_terminal:
            reached = len(status.steps) - 1

        i = emitted + 1
        while i <= reached and i < len(status.steps):
            step = status.steps[i]
            if not step.is_complete:
                break
            if step.output:
                yield f"[{step.name}]\n{step.output}\n\n"
            emitted = i
            i += 1

        if status.is_terminal:
            return
        await asyncio.sleep(poll_interval)


class Orchestrator:
    """
    Runs one job's pipeline against its bound sandbox:

        setup -> cache restore -> steps (in order) -> cache save -> snapshot -> finalize

    Every failure converges on a terminal JobStatus. execute_job raises only
    when the job has no status record, or when the final status cannot be
    stored (the caller must then record the failure itself).
    """

    # final status write: attempts, and base delay between them (seconds)
    finalize_attempts = 3
    finalize_retry_delay = 0.5

    def __init__(
        self,
        sandbox: Sandbox,
        queue: JobQueue,
        cache_manager: CacheManager,
        state_manager: Optional[StateManager] = None,
        settings: Optional[Settings] = None,
        workspace_dir: Optional[str] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.sandbox = sandbox
        self.queue = queue
        self.cache_manager = cache_manager
        self.state_manager = state_manager
        self.settings = settings or get_settings()
        self.workspace_dir = workspace_dir or self.settings.workspace_dir
        self.repo_dir = posixpath.join(self.workspace_dir, "repo")
        self._clock = clock

    # ------------------------------------------------------------------
    # Job pipeline
    # ------------------------------------------------------------------

    async def execute_job(self, job: Job) -> JobStatus:
        console = get_console()
        # the whole-job budget covers workspace setup too
        deadline = asyncio.get_running_loop().time() + job.timeout if job.timeout else None

        status = await self.queue.get_job_status(job.id)
        if status is None:
            raise JobNotFound(f"Job status not found: {job.id}", details={"job": job.id})
        if status.is_terminal:
            console.print_info(f"[{job.id}] not started: job is {status.status}")
            return status

        if status.status == "queued":
            status.status = "running"
        if status.started_at is None:
            status.started_at = self._clock()
        if status.sandbox_id is None:
            status.sandbox_id = getattr(self.sandbox, "sandbox_id", None)

        if not await self._persist(job, status):
            return await self._finalize(job, status)
        console.print_job_start(job.id, job.repo, job.commit)

        try:
            await self._setup_workspace(job, deadline)
            status.cache_hit = await self._restore_cache(job)

            interrupted = await self._run_steps(job, status, deadline)
            if not interrupted:
                if all(s.status in ("success", "skipped") for s in status.steps):
                    status.status = "success"
                elif not status.is_terminal:
                    # only continue_on_error failures happened
                    failed = ", ".join(f'"{s.name}"' for s in status.steps if s.status == "failure")
                    status.status = "failure"
                    status.error = f"Steps failed: {failed}"

                if status.status == "success" and job.cache_keys:
                    await self._save_cache(job)
                if status.status == "success":
                    await self._create_snapshot(job)

        except asyncio.CancelledError:
            status.status = "failure"
            status.error = "Job execution was interrupted"
            try:
                await self._finalize(job, status)
            except Exception as e:
                console.print_error("Failed to record interrupted job", f"[{job.id}] {e}")
            raise
        except JobTimeout as e:
            status.status = "timeout"
            status.error = str(e)
        except Exception as e:
            status.status = "failure"
            status.error = str(e) or type(e).__name__

        return await self._finalize(job, status)

    async def _finalize(self, job: Job, status: JobStatus) -> JobStatus:
        """Store the terminal status, retrying transient store errors. Re-raises the last one."""
        console = get_console()
        status.finish(self._clock())
        for attempt in range(1, self.finalize_attempts + 1):
            try:
                stored = await self.queue.get_job_status(job.id)
                if stored is not None and stored.is_terminal:
                    # finished by someone else while running (cancel); that status stands
                    await self._record_steps(job, stored, status)
                    console.print_job_finished(stored)
                    return stored
                await self.queue.update_job_status(job.id, status)
                break
            except Exception as e:
                if attempt == self.finalize_attempts:
                    console.print_error("Failed to persist job status", f"[{job.id}] {e}")
                    raise
                console.print_warning(f"[{job.id}] storing final status failed, retrying: {e}")
                await asyncio.sleep(self.finalize_retry_delay * attempt)
        console.print_job_finished(status)
        return status

    async def _persist(self, job: Job, status: JobStatus) -> bool:
        """Write progress unless the stored record already went terminal. Returns False if it did."""
        stored = await self.queue.get_job_status(job.id)
        if stored is not None and stored.is_terminal:
            get_console().print_info(f"[{job.id}] stopping: job is {stored.status}")
            await self._record_steps(job, stored, status)
            return False
        await self.queue.update_job_status(job.id, status)
        return True

    async def _record_steps(self, job: Job, stored: JobStatus, status: JobStatus) -> None:
        # steps that ran still get their results on an externally finished record
        changed = False
        for i, step in enumerate(status.steps[: len(stored.steps)]):
            if step.is_complete and not stored.steps[i].is_complete:
                stored.steps[i] = step
                changed = True
        if changed:
            await self.queue.update_job_status(job.id, stored)

    @staticmethod
    def _job_timeout(job: Job) -> JobTimeout:
        return JobTimeout(f"Job exceeded timeout of {job.timeout}s", details={"job": job.id})

    @staticmethod
    def _budget(timeout: float, deadline: Optional[float]) -> Tuple[float, bool]:
        """Cap `timeout` at what is left before `deadline`. Returns (timeout, capped)."""
        if deadline is None:
            return timeout, False
        remaining = deadline - asyncio.get_running_loop().time()
        if remaining < timeout:
            return remaining, True
        return timeout, False

    async def _setup_workspace(self, job: Job, deadline: Optional[float] = None) -> None:
        q = shlex.quote
        commands: List[Tuple[str, Optional[str]]] = [
            (f"rm -rf {q(self.repo_dir)} && mkdir -p {q(self.workspace_dir)}", None),
            (f"git clone {q(job.repo)} {q(self.repo_dir)}", self.workspace_dir),
            (f"git checkout {q(job.commit)}", self.repo_dir),
        ]
        for cmd, cwd in commands:
            timeout, capped = self._budget(float(self.settings.setup_timeout), deadline)
            if timeout <= 0:
                raise self._job_timeout(job)
            try:
                result = await self._exec(cmd, ExecOptions(working_dir=cwd, env=dict(job.env)), timeout)
            except Exception as e:
                raise WorkspaceSetupError(
                    f"Workspace setup failed: {e}",
                    details={"job": job.id, "command": cmd},
                ) from e
            if result is None:
                if capped:
                    raise self._job_timeout(job)
                raise WorkspaceSetupError(
                    f"Workspace setup failed: `{cmd}` timed out after {round(timeout, 1):g}s",
                    details={"job": job.id, "command": cmd},
                )
            if not result.ok:
                reason = (result.stderr or result.stdout).strip()[-500:]
                raise WorkspaceSetupError(
                    f"Workspace setup failed: `{cmd}` exited with {result.exit_code}: {reason}",
                    details={"job": job.id, "command": cmd, "exit_code": result.exit_code},
                )

    async def _run_steps(self, job: Job, status: JobStatus, deadline: Optional[float] = None) -> bool:
        """Run steps in order. Returns True if the job was finished externally mid-run."""
        console = get_console()

        for i, step in enumerate(job.steps):
            timeout, capped = self._budget(float(step.timeout or self.settings.default_step_timeout), deadline)
            if timeout <= 0:
                raise self._job_timeout(job)

            status.current_step = i
            if not await self._persist(job, status):
                return True

            console.print_step(job.id, step.name)
            result, timed_out = await self._run_step(step, job, timeout)
            status.steps[i] = result
            console.print_step_result(job.id, step.name, result.status, result.exit_code, result.duration)

            if timed_out and capped:
                raise self._job_timeout(job)
            if result.status == "failure" and not step.continue_on_error:
                status.status = "failure"
                status.error = f'Step "{step.name}" failed'
                break

            if not await self._persist(job, status):
                return True

        return False

    # ------------------------------------------------------------------
    # Step state machine: running -> success | failure
    # ------------------------------------------------------------------

    def _step_dir(self, step: Step) -> str:
        if not step.working_dir:
            return self.repo_dir
        return posixpath.join(self.repo_dir, step.working_dir)

    async def execute_step(self, step: Step, job: Job, timeout: Optional[float] = None) -> StepResult:
        if timeout is None:
            timeout = float(step.timeout or self.settings.default_step_timeout)
        result, _ = await self._run_step(step, job, timeout)
        return result

    async def _run_step(
        self,
        step: Step,
        job: Job,
        timeout: float,
    ) -> Tuple[StepResult, bool]:
        result = StepResult(name=step.name, status="running", started_at=self._clock())
        options = ExecOptions(working_dir=self._step_dir(step), env={**job.env, **step.env})
        timed_out = False

        try:
            executed = await self._exec(step.run, options, timeout)
            if executed is None:
                timed_out = True
                result.status = "failure"
                result.exit_code = TIMEOUT_EXIT_CODE
                result.output = str(StepTimeout(f"Step timed out after {round(timeout, 1):g}s"))
            else:
                result.output = executed.stdout or executed.stderr
                result.exit_code = executed.exit_code
                result.status = "success" if executed.exit_code == 0 else "failure"
        except Exception as e:
            result.status = "failure"
            result.output = str(e) or type(e).__name__
            result.exit_code = 1
        finally:
            result.finished_at = self._clock()
            result.duration = result.finished_at - result.started_at

        return result, timed_out

    async def _exec(self, command: str, options: ExecOptions, timeout: float) -> Optional[ExecResult]:
        """Run `command` in the sandbox, killing it after `timeout` seconds. None means it timed out."""
        cancel = asyncio.Event()
        task = asyncio.ensure_future(self.sandbox.exec(command, replace(options, cancel=cancel)))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            await self._cancel_exec(task, cancel)
            raise
        if task in done:
            return task.result()
        await self._cancel_exec(task, cancel)
        return None

    @staticmethod
    async def _cancel_exec(task: asyncio.Future, cancel: asyncio.Event) -> None:
        # signal the sandbox to kill the command, then stop waiting on it
        cancel.set()
        task.cancel()
        await asyncio.wait({task}, timeout=5)
        if task.done() and not task.cancelled():
            task.exception()  # retrieved so it isn't reported as unhandled

    # ------------------------------------------------------------------
    # Cache + snapshot (best effort, never fail the job)
    # ------------------------------------------------------------------

    def _manifest_paths(self, job: Job) -> List[str]:
        return [posixpath.join(self.repo_dir, p) for p in job.cache_keys]

    async def _restore_cache(self, job: Job) -> Optional[bool]:
        if not job.cache_keys:
            return None

        console = get_console()
        try:
            key = await self.cache_manager.generate_cache_key(
                job.repo, job.commit, self._manifest_paths(job), self.sandbox
            )
            hit = await self.cache_manager.restore_cache(key, self.sandbox, working_dir=self.repo_dir)
        except Exception as e:
            console.print_warning(f"[{job.id}] cache restore failed: {e}")
            return False

        if hit:
            console.print_cache_hit(job.id, key)
        else:
            console.print_cache_miss(job.id)
        return hit

    async def _save_cache(self, job: Job) -> None:
        console = get_console()
        try:
            key = await self.cache_manager.generate_cache_key(
                job.repo, job.commit, self._manifest_paths(job), self.sandbox
            )
            paths = detect_cache_paths(job.cache_keys)
            await self.cache_manager.save_cache(key, paths, self.sandbox, working_dir=self.repo_dir)
        except NoCacheableDirectories as e:
            console.print_warning(f"[{job.id}] cache not saved: {e}")
            return
        except Exception as e:
            console.print_warning(f"[{job.id}] cache save failed: {e}")
            return
        console.print_cache_saved(job.id, key)

    async def _create_snapshot(self, job: Job) -> None:
        if self.state_manager is None:
            return
        try:
            await self.state_manager.create_snapshot(self.sandbox, job.id, job.commit, [self.workspace_dir])
        except Exception as e:
            get_console().print_warning(f"[{job.id}] snapshot failed: {e}")

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def stream_job_logs(self, job_id: str, poll_interval: Optional[float] = None) -> AsyncIterator[str]:
        interval = poll_interval if poll_interval is not None else self.settings.log_poll_interval
        return stream_job_logs(self.queue, job_id, interval)
