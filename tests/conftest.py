from __future__ import annotations

import asyncio
import shlex
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from ciengine.cache import CacheManager
from ciengine.errors import StorageError
from ciengine.model import ExecResult, Job, Step
from ciengine.queue import JobQueue
from ciengine.sandbox.base import ExecOptions
from ciengine.settings import Settings
from ciengine.snapshots import StateManager
from ciengine.storage.memory import InMemoryBlobStore, InMemoryMetadataStore
from ciengine.ui.console import Console, set_console


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class FakeSandbox:
    """
    Scripted sandbox. Commands succeed with empty output unless a rule
    registered with `on()` matches (substring; later rules win).
    """

    def __init__(self, sandbox_id: str = "fake-sandbox"):
        self.sandbox_id = sandbox_id
        self.files: Dict[str, bytes] = {}
        self.dirs: Set[str] = set()
        self.calls: List[Tuple[str, ExecOptions]] = []
        self.killed: List[str] = []
        self._rules: List[Tuple[str, Dict[str, Any]]] = []

    def on(
        self,
        fragment: str,
        *,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        hang: bool = False,
        delay: float = 0,
        raises: Optional[Exception] = None,
    ) -> "FakeSandbox":
        self._rules.append(
            (fragment, dict(stdout=stdout, stderr=stderr, exit_code=exit_code, hang=hang, delay=delay, raises=raises))
        )
        return self

    @property
    def commands(self) -> List[str]:
        return [c for c, _ in self.calls]

    def options_for(self, fragment: str) -> ExecOptions:
        for command, opts in self.calls:
            if fragment in command:
                return opts
        raise AssertionError(f"no command containing {fragment!r} was run")

    async def exec(self, command: str, options: Optional[ExecOptions] = None) -> ExecResult:
        opts = options or ExecOptions()
        self.calls.append((command, opts))

        for fragment, rule in reversed(self._rules):
            if fragment in command:
                return await self._apply(command, opts, rule)

        if command.startswith("test -d "):
            path = shlex.split(command)[2]
            return ExecResult(stdout="exists\n" if path in self.dirs else "missing\n")
        if command.startswith("tar -czf "):
            scratch = shlex.split(command)[2]
            self.files[scratch] = ("ARCHIVE " + command).encode()
        return ExecResult()

    async def _apply(self, command: str, opts: ExecOptions, rule: Dict[str, Any]) -> ExecResult:
        if rule["raises"] is not None:
            raise rule["raises"]
        if rule["hang"]:
            try:
                await (opts.cancel.wait() if opts.cancel is not None else asyncio.Event().wait())
            finally:
                self.killed.append(command)
            return ExecResult(exit_code=137)
        if rule["delay"]:
            await asyncio.sleep(rule["delay"])
        return ExecResult(stdout=rule["stdout"], stderr=rule["stderr"], exit_code=rule["exit_code"])

    async def read_file(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def write_file(self, path: str, content) -> None:
        self.files[path] = content.encode() if isinstance(content, str) else bytes(content)


class FlakyStore(InMemoryMetadataStore):
    """Fails the next `failures` writes of a finished (non queued/running) job status."""

    def __init__(self, clock, failures: int = 1):
        super().__init__(clock=clock)
        self.failures = failures

    async def put(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        finished = key.startswith("status:") and value.get("status") not in ("queued", "running")
        if finished and self.failures > 0:
            self.failures -= 1
            raise StorageError("metadata store unavailable")
        await super().put(key, value, ttl=ttl)


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(debug=False))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        metadata_backend="memory",
        blob_backend="memory",
        max_concurrent=10,
        poll_interval=0.01,
        log_poll_interval=0.01,
        workspace_dir="/workspace",
        scratch_dir="/tmp",
    )


@pytest.fixture
def store(clock) -> InMemoryMetadataStore:
    return InMemoryMetadataStore(clock=clock)


@pytest.fixture
def queue(store, settings, clock) -> JobQueue:
    return JobQueue(store, settings, clock=clock)


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def cache_manager(blobs, store, settings, clock) -> CacheManager:
    return CacheManager(blobs, store, settings, clock=clock)


@pytest.fixture
def state_manager(settings, clock) -> StateManager:
    return StateManager(InMemoryBlobStore(), settings, clock=clock)


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture
def make_job():
    def _make(
        job_id: str = "job-1",
        *,
        priority: Optional[int] = None,
        steps: Optional[List[Step]] = None,
        **kwargs,
    ) -> Job:
        return Job(
            id=job_id,
            repo=kwargs.pop("repo", "https://github.com/acme/app"),
            commit=kwargs.pop("commit", "abc123"),
            steps=steps or [Step(name="build", run="make build")],
            priority=priority,
            **kwargs,
        )

    return _make
