# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - a human-readable `error` string on the job status
      - debugging without full tracebacks
    """
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    kind: ClassVar[str] = "ci_error"

    def __str__(self) -> str:
        return self.message

    def describe(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ValidationError(CIError):
    """Malformed job submitted."""
    kind = "validation_error"


class JobNotFound(CIError):
    """Raised only where a missing job is a caller protocol violation."""
    kind = "job_not_found"


class StepTimeout(CIError):
    kind = "step_timeout"


class JobTimeout(CIError):
    """The whole-job budget ran out."""
    kind = "job_timeout"


class WorkspaceSetupError(CIError):
    kind = "workspace_setup_failed"


class CacheError(CIError):
    kind = "cache_error"


class NoCacheableDirectories(CacheError):
    kind = "no_cacheable_directories"


class StorageError(CIError):
    """Metadata or blob store operation failed."""
    kind = "storage_error"


class SnapshotNotFound(CIError):
    kind = "snapshot_not_found"
