# sandbox/local.py
from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import uuid
from pathlib import Path
from typing import Optional

from ..model import ExecResult
from .base import ExecOptions

# Output kept per stream so a chatty build can't blow up the status record
MAX_OUTPUT_CHARS = 64_000


def _tail(data: bytes) -> str:
    text = data.decode("utf-8", errors="replace")
    return text[-MAX_OUTPUT_CHARS:]


class LocalSandbox:
    """
    Runs commands on the host with /bin/sh, one process group per command.

    Relative paths (working dirs, files) resolve against `cwd`. This is the
    development backend; it gives no isolation beyond a dedicated directory.
    """

    def __init__(self, cwd: str | Path = ".", sandbox_id: Optional[str] = None):
        self.cwd = Path(cwd).resolve()
        self.cwd.mkdir(parents=True, exist_ok=True)
        self.sandbox_id = sandbox_id or f"local-{uuid.uuid4().hex[:12]}"

    def _resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        return p if p.is_absolute() else (self.cwd / p)

    async def exec(self, command: str, options: Optional[ExecOptions] = None) -> ExecResult:
        opts = options or ExecOptions()
        cwd = self._resolve(opts.working_dir) if opts.working_dir else self.cwd
        if not cwd.exists():
            raise FileNotFoundError(f"working directory not found: {cwd}")

        env = os.environ.copy()
        env.update(opts.env or {})

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,  # own process group, so kill reaches children
        )

        communicate = asyncio.ensure_future(proc.communicate())
        waiters = {communicate}
        cancel_wait = None
        if opts.cancel is not None:
            cancel_wait = asyncio.ensure_future(opts.cancel.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if communicate not in done:
                self._kill(proc)
            stdout, stderr = await communicate
        except asyncio.CancelledError:
            self._kill(proc)
            communicate.cancel()
            with contextlib.suppress(Exception, asyncio.CancelledError):
                await asyncio.wait_for(proc.wait(), timeout=5)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        return ExecResult(stdout=_tail(stdout), stderr=_tail(stderr), exit_code=proc.returncode)

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    async def read_file(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    async def write_file(self, path: str, content: bytes | str) -> None:
        p = self._resolve(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            p.write_text(content, encoding="utf-8")
        else:
            p.write_bytes(content)
