# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .errors import ValidationError

JOB_STATUSES = ("queued", "running", "success", "failure", "timeout", "cancelled")
TERMINAL_STATUSES = ("success", "failure", "timeout", "cancelled")

MIN_PRIORITY = 0
MAX_PRIORITY = 10


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def int_field(value: Any, name: str, owner: Optional[str] = None) -> Optional[int]:
    """Optional integer from JSON input; digit strings are accepted ("5" -> 5)."""
    if value is None:
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise ValidationError(
        f"{name} must be an integer, got {value!r}",
        details={"job": owner or "<unnamed>", name: value},
    )


# ---------------------------------------------------------------------
# Job definition (immutable after submission)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    working_dir: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    timeout: int | None = None  # seconds

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"name": self.name, "run": self.run}
        if self.working_dir is not None:
            d["working_dir"] = self.working_dir
        if self.env:
            d["env"] = dict(self.env)
        if self.continue_on_error:
            d["continue_on_error"] = True
        if self.timeout is not None:
            d["timeout"] = self.timeout
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Step:
        if not isinstance(data, dict):
            raise ValidationError("step must be an object", details={"step": data})
        if not data.get("name") or not data.get("run"):
            raise ValidationError("step requires 'name' and 'run'", details={"step": data})
        return cls(
            name=str(data["name"]),
            run=str(data["run"]),
            working_dir=data.get("working_dir"),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            continue_on_error=bool(data.get("continue_on_error", False)),
            timeout=int_field(data.get("timeout"), "timeout", str(data["name"])),
        )


@dataclass(frozen=True)
class Job:
    """
    A CI job: checkout of repo@commit followed by ordered steps.

    `cache_keys` are manifest paths (lockfiles) whose contents feed the
    dependency cache key. Order matters.
    """
    id: str
    repo: str
    commit: str
    steps: List[Step]
    branch: str = ""
    env: Dict[str, str] = field(default_factory=dict)
    cache_keys: List[str] = field(default_factory=list)
    timeout: int | None = None  # whole-job, seconds
    priority: int | None = None  # 0-10, higher = sooner

    def validate(self) -> None:
        missing = [name for name in ("id", "repo", "commit") if not getattr(self, name)]
        if not self.steps:
            missing.append("steps")
        if missing:
            raise ValidationError(
                f"job is missing required fields: {', '.join(missing)}",
                details={"job": self.id or "<unnamed>", "missing": missing},
            )
        for name in ("priority", "timeout"):
            value = getattr(self, name)
            if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(
                    f"{name} must be an integer, got {value!r}",
                    details={"job": self.id, name: value},
                )
        if self.timeout is not None and self.timeout <= 0:
            raise ValidationError("timeout must be positive", details={"job": self.id, "timeout": self.timeout})
        if self.priority is not None and not (MIN_PRIORITY <= self.priority <= MAX_PRIORITY):
            raise ValidationError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}",
                details={"job": self.id, "priority": self.priority},
            )

    def with_priority(self, priority: int) -> Job:
        return replace(self, priority=priority)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "repo": self.repo,
            "commit": self.commit,
            "branch": self.branch,
            "steps": [s.to_dict() for s in self.steps],
            "env": dict(self.env),
            "cache_keys": list(self.cache_keys),
        }
        if self.timeout is not None:
            d["timeout"] = self.timeout
        if self.priority is not None:
            d["priority"] = self.priority
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Job:
        """Build a Job from its JSON form. Raises ValidationError on bad input."""
        if not isinstance(data, dict):
            raise ValidationError("job must be an object", details={})
        steps_raw = data.get("steps")
        if not isinstance(steps_raw, list):
            raise ValidationError("job 'steps' must be a list", details={"job": data.get("id")})
        job = cls(
            id=str(data.get("id") or ""),
            repo=str(data.get("repo") or ""),
            commit=str(data.get("commit") or ""),
            branch=str(data.get("branch") or ""),
            steps=[Step.from_dict(s) for s in steps_raw],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            cache_keys=[str(p) for p in (data.get("cache_keys") or [])],
            timeout=int_field(data.get("timeout"), "timeout", data.get("id")),
            priority=int_field(data.get("priority"), "priority", data.get("id")),
        )
        job.validate()
        return job


# ---------------------------------------------------------------------
# Execution records (mutable, owned by the queue)
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: str = "pending"
    output: Optional[str] = None
    exit_code: Optional[int] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    duration: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        return self.status in ("success", "failure", "skipped")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "output": self.output,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StepResult:
        return cls(
            name=data["name"],
            status=data.get("status", "pending"),
            output=data.get("output"),
            exit_code=data.get("exit_code"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration=data.get("duration"),
        )


@dataclass
class JobStatus:
    """
    Status record for one job, stored under `status:{id}`.

    Transitions only move forward: queued -> running -> terminal.
    """
    id: str
    status: str = "queued"
    steps: List[StepResult] = field(default_factory=list)
    current_step: Optional[int] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    duration: Optional[int] = None
    error: Optional[str] = None
    attempt: int = 1
    cache_hit: Optional[bool] = None
    sandbox_id: Optional[str] = None

    @classmethod
    def initial(cls, job: Job, attempt: int = 1) -> JobStatus:
        return cls(
            id=job.id,
            status="queued",
            steps=[StepResult(name=s.name) for s in job.steps],
            attempt=attempt,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(self, now: int) -> None:
        self.finished_at = now
        if self.started_at is not None:
            self.duration = self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "current_step": self.current_step,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration": self.duration,
            "steps": [s.to_dict() for s in self.steps],
            "error": self.error,
            "attempt": self.attempt,
            "cache_hit": self.cache_hit,
            "sandbox_id": self.sandbox_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> JobStatus:
        return cls(
            id=data["id"],
            status=data.get("status", "queued"),
            steps=[StepResult.from_dict(s) for s in data.get("steps", [])],
            current_step=data.get("current_step"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            duration=data.get("duration"),
            error=data.get("error"),
            attempt=data.get("attempt", 1),
            cache_hit=data.get("cache_hit"),
            sandbox_id=data.get("sandbox_id"),
        )


# ---------------------------------------------------------------------
# Cache / snapshot / sandbox records
# ---------------------------------------------------------------------

@dataclass
class CacheKey:
    key: str
    paths: List[str]
    last_used: int
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "paths": list(self.paths), "last_used": self.last_used, "size": self.size}


@dataclass(frozen=True)
class WorkspaceSnapshot:
    job_id: str
    sandbox_id: str
    commit: str
    timestamp: int
    archive_path: str
    size: int


@dataclass(frozen=True)
class ExecResult:
    """Outcome of one sandbox command."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
