# services.py
# Wiring for the long-lived objects shared by the API and the worker.
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .cache import CacheManager
from .model import Job
from .queue import JobQueue
from .sandbox.local import LocalSandbox
from .scheduler import SandboxFactory, Scheduler
from .settings import Settings, get_settings
from .snapshots import StateManager
from .storage import MetadataStore, build_blob_store, build_metadata_store

LOCAL_WORK_ROOT = ".ciengine/work"
# relative, so it lands inside each LocalSandbox's own directory
LOCAL_WORKSPACE_DIR = "workspace"


def local_sandbox_factory(root: str | Path = LOCAL_WORK_ROOT) -> SandboxFactory:
    """One LocalSandbox per job, rooted at {root}/{job_id}."""
    base = Path(root)

    def factory(job: Job) -> LocalSandbox:
        safe = re.sub(r"[^A-Za-z0-9._-]", "_", job.id)
        return LocalSandbox(base / safe)

    return factory


@dataclass
class Services:
    settings: Settings
    store: MetadataStore
    queue: JobQueue
    cache_manager: CacheManager
    state_manager: StateManager
    scheduler: Scheduler


def build_services(
    settings: Optional[Settings] = None,
    sandbox_factory: Optional[SandboxFactory] = None,
    workspace_dir: Optional[str] = None,
) -> Services:
    settings = settings or get_settings()
    store = build_metadata_store(settings)
    queue = JobQueue(store, settings)
    cache_manager = CacheManager(build_blob_store(settings, "cache"), store, settings)
    state_manager = StateManager(build_blob_store(settings, "state"), settings)

    if sandbox_factory is None:
        sandbox_factory = local_sandbox_factory()
        workspace_dir = workspace_dir or LOCAL_WORKSPACE_DIR

    scheduler = Scheduler(
        queue,
        cache_manager,
        state_manager,
        sandbox_factory,
        settings=settings,
        workspace_dir=workspace_dir,
    )
    return Services(
        settings=settings,
        store=store,
        queue=queue,
        cache_manager=cache_manager,
        state_manager=state_manager,
        scheduler=scheduler,
    )
