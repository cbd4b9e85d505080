from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Tuple

DAY = 24 * 60 * 60


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


@dataclass(frozen=True)
class Settings:
    redis_url: str = "redis://localhost:6379/0"
    # memory backends are private to one process (tests, embedding)
    metadata_backend: str = "redis"   # redis|memory
    blob_backend: str = "local"       # local|memory
    blob_root: str = ".ciengine/blobs"

    max_concurrent: int = 10
    default_priority: int = 5
    max_retries: int = 3
    default_step_timeout: int = 300
    setup_timeout: int = 600  # per workspace setup command (clone, checkout)

    workspace_dir: str = "/workspace"
    scratch_dir: str = "/tmp"

    poll_interval: float = 5.0
    log_poll_interval: float = 1.0
    maintenance_interval: float = 3600.0

    queue_entry_ttl: int = DAY
    status_ttl: int = 7 * DAY
    job_config_ttl: int = 7 * DAY
    cache_ttl: int = 30 * DAY

    job_max_age: int = 7 * DAY
    cache_max_age: int = 30 * DAY
    snapshot_max_age: int = 7 * DAY
    # timeout is deliberately absent: timed-out jobs are kept for audit
    prune_statuses: Tuple[str, ...] = field(default=("success", "failure", "cancelled"))

    @classmethod
    def from_env(cls) -> Settings:
        d = cls()
        prune = os.environ.get("CIENGINE_PRUNE_STATUSES")
        return cls(
            redis_url=os.environ.get("CIENGINE_REDIS_URL", d.redis_url),
            metadata_backend=os.environ.get("CIENGINE_METADATA_BACKEND", d.metadata_backend),
            blob_backend=os.environ.get("CIENGINE_BLOB_BACKEND", d.blob_backend),
            blob_root=os.environ.get("CIENGINE_BLOB_ROOT", d.blob_root),
            max_concurrent=_env_int("CIENGINE_MAX_CONCURRENT", d.max_concurrent),
            default_priority=_env_int("CIENGINE_DEFAULT_PRIORITY", d.default_priority),
            max_retries=_env_int("CIENGINE_MAX_RETRIES", d.max_retries),
            default_step_timeout=_env_int("CIENGINE_DEFAULT_STEP_TIMEOUT", d.default_step_timeout),
            setup_timeout=_env_int("CIENGINE_SETUP_TIMEOUT", d.setup_timeout),
            workspace_dir=os.environ.get("CIENGINE_WORKSPACE_DIR", d.workspace_dir),
            scratch_dir=os.environ.get("CIENGINE_SCRATCH_DIR", d.scratch_dir),
            poll_interval=_env_float("CIENGINE_POLL_INTERVAL", d.poll_interval),
            log_poll_interval=_env_float("CIENGINE_LOG_POLL_INTERVAL", d.log_poll_interval),
            maintenance_interval=_env_float("CIENGINE_MAINTENANCE_INTERVAL", d.maintenance_interval),
            job_max_age=_env_int("CIENGINE_JOB_MAX_AGE", d.job_max_age),
            cache_max_age=_env_int("CIENGINE_CACHE_MAX_AGE", d.cache_max_age),
            snapshot_max_age=_env_int("CIENGINE_SNAPSHOT_MAX_AGE", d.snapshot_max_age),
            prune_statuses=tuple(s.strip() for s in prune.split(",") if s.strip()) if prune else d.prune_statuses,
        )

    def with_overrides(self, **changes) -> Settings:
        return replace(self, **changes)


_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, read from the environment on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def set_settings(settings: Settings) -> None:
    global _settings
    _settings = settings
