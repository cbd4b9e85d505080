from .dsl import job, sh, wf, JobBuilder, build, load_workflow
from .model import Job, Step, JobStatus, StepResult
from .queue import JobQueue
from .orchestrator import Orchestrator, stream_job_logs
from .cache import CacheManager
from .snapshots import StateManager
from .scheduler import Scheduler

__all__ = [
    "job",
    "sh",
    "wf",
    "JobBuilder",
    "build",
    "load_workflow",
    "Job",
    "Step",
    "JobStatus",
    "StepResult",
    "JobQueue",
    "Orchestrator",
    "stream_job_logs",
    "CacheManager",
    "StateManager",
    "Scheduler",
]
