# src/ciengine/dsl.py
from __future__ import annotations

import json
import runpy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .model import Job, Step, int_field


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    timeout: int | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        working_dir=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        continue_on_error=continue_on_error,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    repo: str = "",  # filled from git at submit time when empty
    commit: str = "",
    branch: str = "",
    env: Optional[Dict[str, str]] = None,
    cache_keys: Optional[List[str]] = None,
    timeout: int | None = None,
    priority: int | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing one
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.working_dir is not None else replace(s, working_dir=cwd) for s in steps_final]

    return Job(
        id=id,
        repo=repo,
        commit=commit,
        branch=branch,
        steps=steps_final,
        env={k: str(v) for k, v in (env or {}).items()},
        cache_keys=list(cache_keys or []),
        timeout=timeout,
        priority=priority,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._cache_keys: list[str] = []
        self._timeout: int | None = None
        self._priority: int | None = None

    def define_step(
        self,
        name: str,
        run: str,
        cwd: str | None = None,
        *,
        continue_on_error: bool = False,
        timeout: int | None = None,
    ):
        self._steps.append(
            Step(name=name, run=run, working_dir=cwd, continue_on_error=continue_on_error, timeout=timeout)
        )
        return self

    def with_env(self, **env):
        # values forced to str; they end up in a process environment
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def cache_on(self, *manifests: str):
        """Lockfiles whose contents key the dependency cache (order matters)."""
        self._cache_keys.extend(manifests)
        return self

    def with_timeout(self, seconds: int):
        self._timeout = seconds
        return self

    def with_priority(self, priority: int):
        self._priority = priority
        return self

    def build(self, repo: str = "", commit: str = "", branch: str = "") -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")

        return Job(
            id=self.id,
            repo=repo,
            commit=commit,
            branch=branch,
            steps=list(self._steps),
            env=dict(self._env),
            cache_keys=list(self._cache_keys),
            timeout=self._timeout,
            priority=self._priority,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper:

        from ciengine import wf, job, sh

        def workflow():
            return wf(job(...), job(...))
    """
    return list(jobs)


# ---------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------

def load_workflow(path: str | Path) -> List[Job]:
    """
    Load jobs from a file.

    A `.py` file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]

    A `.json` file holds one job object or a list of them.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".json":
        data: Any = json.loads(wf_path.read_text(encoding="utf-8"))
        items = data if isinstance(data, list) else [data]
        return [_job_from_json(item) for item in items]

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .py or .json file, got: {wf_path.name}")

    module_name = f"ciengine_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        jobs = globals_dict["workflow"]()
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise TypeError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )
    return jobs


def _job_from_json(data: Dict[str, Any]) -> Job:
    # repo/commit may be left to the caller, so skip Job.from_dict's validation
    if not isinstance(data, dict):
        raise TypeError("each job in a JSON workflow must be an object")
    return Job(
        id=str(data.get("id") or ""),
        repo=str(data.get("repo") or ""),
        commit=str(data.get("commit") or ""),
        branch=str(data.get("branch") or ""),
        steps=[Step.from_dict(s) for s in data.get("steps") or []],
        env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        cache_keys=[str(p) for p in (data.get("cache_keys") or [])],
        timeout=int_field(data.get("timeout"), "timeout", data.get("id")),
        priority=int_field(data.get("priority"), "priority", data.get("id")),
    )
